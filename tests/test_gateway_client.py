"""Tests for MercadoPagoClient using httpx.MockTransport."""

import httpx
import pytest

from studio_billing.errors import GatewayError, GatewayTimeoutError
from studio_billing.services.gateway_client import MercadoPagoClient


def _client(handler) -> MercadoPagoClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return MercadoPagoClient(http, access_token="APP_USR-token", base_url="https://mp.test/")


class TestFetchPaymentDetail:
    @pytest.mark.asyncio
    async def test_returns_payment_detail(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            return httpx.Response(
                200,
                json={
                    "id": 987654,
                    "status": "approved",
                    "external_reference": "42-basic-monthly",
                    "transaction_amount": 999000,
                    "currency_id": "CLP",
                    "date_approved": "2026-03-10T12:00:00.000-03:00",
                    "payer": {"email": "someone@example.com"},
                },
            )

        detail = await _client(handler).fetch_payment_detail("987654")

        assert seen["url"] == "https://mp.test/v1/payments/987654"
        assert seen["auth"] == "Bearer APP_USR-token"
        assert detail.id == "987654"
        assert detail.status == "approved"
        assert detail.external_reference == "42-basic-monthly"
        assert detail.transaction_amount == 999000
        assert detail.date_approved.utcoffset().total_seconds() == -3 * 3600

    @pytest.mark.asyncio
    async def test_error_status(self):
        client = _client(lambda request: httpx.Response(404, json={"message": "not found"}))
        with pytest.raises(GatewayError, match="404"):
            await client.fetch_payment_detail("1")

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(GatewayTimeoutError):
            await _client(handler).fetch_payment_detail("1")

    @pytest.mark.asyncio
    async def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(GatewayError) as exc_info:
            await _client(handler).fetch_payment_detail("1")
        assert not isinstance(exc_info.value, GatewayTimeoutError)

    @pytest.mark.asyncio
    async def test_unusable_body(self):
        client = _client(lambda request: httpx.Response(200, content=b"<html>oops</html>"))
        with pytest.raises(GatewayError, match="Unusable"):
            await client.fetch_payment_detail("1")

    @pytest.mark.asyncio
    async def test_body_missing_status(self):
        client = _client(lambda request: httpx.Response(200, json={"id": 1}))
        with pytest.raises(GatewayError):
            await client.fetch_payment_detail("1")
