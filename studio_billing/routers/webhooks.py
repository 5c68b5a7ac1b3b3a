"""Webhook routes: MercadoPago."""

import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from pydantic import ValidationError

from studio_billing.container import Services
from studio_billing.errors import WebhookSignatureError
from studio_billing.schemas.webhook import EventKind, WebhookNotification
from studio_billing.services.webhook_security import should_skip_validation, verify_signature

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def get_services(request: Request) -> Services:
    return request.app.state.services


@router.post("/mercadopago")
async def mercadopago_webhook(
    request: Request,
    x_signature: str | None = Header(default=None, alias="x-signature"),
    services: Services = Depends(get_services),
):
    try:
        event = WebhookNotification.model_validate(await request.json())
    except (ValueError, ValidationError) as e:
        logger.warning("Rejected unparseable webhook body: %s", e)
        raise HTTPException(status_code=400, detail="Invalid webhook body")

    settings = services.settings
    if should_skip_validation(settings.mercadopago_webhook_secret, settings.debug):
        logger.warning("Webhook signature validation skipped (debug mode, no secret configured)")
    else:
        try:
            verify_signature(x_signature, event.data.id, event.type, settings.mercadopago_webhook_secret)
        except WebhookSignatureError as e:
            logger.warning("Rejected webhook %s: %s", event.event_id, e)
            raise HTTPException(status_code=401, detail="Invalid signature")

    # Past this point the gateway always gets a 200; an unprocessed ledger row
    # is picked up again on its own redelivery.
    try:
        outcome = await services.ingestor.handle(event)
    except Exception as e:
        logger.error("Webhook %s processing failed: %s", event.event_id, e, exc_info=True)
        return {"success": False, "error": "Processing failed", "event_id": event.event_id}

    return {"success": True, "outcome": outcome.value, "event_id": event.event_id}


@router.get("/mercadopago")
async def mercadopago_webhook_info(services: Services = Depends(get_services)):
    return {
        "endpoint": "/webhooks/mercadopago",
        "method": "POST",
        "events": [kind.value for kind in EventKind if kind is not EventKind.UNHANDLED],
        "signature_validation": bool(services.settings.mercadopago_webhook_secret),
        "idempotency": True,
    }
