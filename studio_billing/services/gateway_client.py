"""MercadoPago client: fetches authoritative payment detail by id."""

import logging
from typing import Protocol

import httpx
from pydantic import ValidationError

from studio_billing.constants import (
    GATEWAY_TIMEOUT,
    HTTP_CONNECT_TIMEOUT,
    HTTP_TOTAL_TIMEOUT,
    MERCADOPAGO_API_URL,
    MERCADOPAGO_PAYMENT_PATH,
)
from studio_billing.errors import GatewayError, GatewayTimeoutError
from studio_billing.schemas.gateway import PaymentDetail

logger = logging.getLogger(__name__)


class PaymentGateway(Protocol):
    """What the billing core needs from the payment gateway."""

    async def fetch_payment_detail(self, payment_id: str) -> PaymentDetail:
        ...


def build_http_client() -> httpx.AsyncClient:
    """Create a pooled httpx client. Owned and closed by the service container."""
    return httpx.AsyncClient(timeout=httpx.Timeout(HTTP_TOTAL_TIMEOUT, connect=HTTP_CONNECT_TIMEOUT))


class MercadoPagoClient:
    """Thin MercadoPago REST client, constructed once at startup and injected."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        access_token: str,
        base_url: str = MERCADOPAGO_API_URL,
        timeout: float = GATEWAY_TIMEOUT,
    ):
        self._http = http_client
        self._access_token = access_token
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout

    async def fetch_payment_detail(self, payment_id: str) -> PaymentDetail:
        """Fetch a payment from the gateway.

        Raises GatewayTimeoutError when the bounded fetch times out and
        GatewayError for any other failure.
        """
        url = self._base_url + MERCADOPAGO_PAYMENT_PATH.format(payment_id=payment_id)
        try:
            resp = await self._http.get(
                url,
                headers={"Authorization": f"Bearer {self._access_token}"},
                timeout=self._timeout,
            )
        except httpx.TimeoutException as e:
            logger.error("Timed out fetching payment %s after %ss", payment_id, self._timeout)
            raise GatewayTimeoutError(f"Timed out fetching payment {payment_id}") from e
        except httpx.HTTPError as e:
            logger.error("Transport error fetching payment %s: %s", payment_id, e)
            raise GatewayError(f"Could not reach gateway for payment {payment_id}: {e}") from e

        if resp.status_code != 200:
            logger.error("Gateway returned %d for payment %s", resp.status_code, payment_id)
            raise GatewayError(f"Gateway returned {resp.status_code} for payment {payment_id}")

        try:
            detail = PaymentDetail.model_validate(resp.json())
        except (ValueError, ValidationError) as e:
            raise GatewayError(f"Unusable payment body for {payment_id}: {e}") from e

        logger.info(
            "Fetched payment %s: status=%s amount=%s %s",
            detail.id, detail.status, detail.transaction_amount, detail.currency_id,
        )
        return detail
