"""Webhook ingestion: ledger, dispatch by event kind, payment-updated handling."""

import logging
from collections.abc import Awaitable, Callable
from enum import StrEnum

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from studio_billing.clock import Clock, SystemClock
from studio_billing.errors import InvalidExternalReferenceError
from studio_billing.models.payment import PaymentStatus
from studio_billing.schemas.webhook import EventKind, WebhookNotification
from studio_billing.services.billing_notifications import notify_transition
from studio_billing.services.gateway_client import PaymentGateway
from studio_billing.services.idempotency_store import ClaimResult, IdempotencyStore
from studio_billing.services.notification_service import NotificationDispatcher
from studio_billing.services.subscription_state import SubscriptionStateMachine

logger = logging.getLogger(__name__)


class IngestOutcome(StrEnum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"


def parse_external_reference(reference: str | None) -> tuple[int, str]:
    """Split ``"{userId}-{planId}"`` on the first dash.

    Plan ids are slugs and may contain dashes themselves.
    """
    if not reference:
        raise InvalidExternalReferenceError("Payment has no external_reference")
    user_part, sep, plan_id = reference.partition("-")
    if not sep or not user_part.strip().isdigit() or not plan_id.strip():
        raise InvalidExternalReferenceError(f"Invalid external_reference format: {reference!r}")
    return int(user_part), plan_id.strip()


class WebhookIngestor:
    """Processes each gateway notification at most once.

    The ledger row is written before any side effect and flagged processed
    only after the handler returns. Any exception leaves it unprocessed so the
    gateway's redelivery runs the handler again from the top.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: PaymentGateway,
        notifier: NotificationDispatcher,
        clock: Clock | None = None,
        state_machine: SubscriptionStateMachine | None = None,
        store: IdempotencyStore | None = None,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.notifier = notifier
        self.clock = clock or SystemClock()
        self.state_machine = state_machine or SubscriptionStateMachine()
        self.store = store or IdempotencyStore(session_factory, self.clock)
        self._handlers: dict[EventKind, Callable[[WebhookNotification], Awaitable[None]]] = {
            EventKind.PAYMENT_CREATED: self._handle_payment_created,
            EventKind.PAYMENT_UPDATED: self._handle_payment_updated,
            EventKind.SUBSCRIPTION_CREATED: self._handle_subscription_created,
            EventKind.SUBSCRIPTION_UPDATED: self._handle_subscription_updated,
            EventKind.UNHANDLED: self._handle_unhandled,
        }

    async def handle(self, event: WebhookNotification) -> IngestOutcome:
        event_id = event.event_id
        kind = event.kind
        logger.info("Webhook event %s: %s (resource %s)", event_id, event.event_type, event.data.id)

        claim = await self.store.claim(event_id, event.event_type, event.model_dump(mode="json"))
        if not claim.should_process:
            logger.info("Event %s skipped (%s)", event_id, claim)
            return IngestOutcome.DUPLICATE
        if claim is ClaimResult.RETRY:
            logger.info("Retrying event %s left unprocessed by an earlier attempt", event_id)

        try:
            await self._handlers[kind](event)
        except Exception as e:
            logger.error("Event %s failed, leaving it unprocessed: %s", event_id, e)
            raise

        await self.store.mark_processed(event_id)
        logger.info("Event %s processed", event_id)
        return IngestOutcome.PROCESSED

    async def _handle_payment_updated(self, event: WebhookNotification) -> None:
        # The notification is only a pointer; the gateway holds the real status.
        detail = await self.gateway.fetch_payment_detail(event.data.id)

        try:
            user_id, plan_id = parse_external_reference(detail.external_reference)
        except InvalidExternalReferenceError as e:
            logger.warning("Skipping payment %s: %s", detail.id, e)
            return

        if detail.status not in (PaymentStatus.APPROVED, PaymentStatus.REJECTED):
            logger.info("Payment %s has status %s; nothing to apply", detail.id, detail.status)
            return

        now = self.clock.now()
        async with self.session_factory() as db:
            async with db.begin():
                subscription = await self.state_machine.lock_subscription_for_user(db, user_id)
                if subscription is None:
                    logger.warning("No subscription for user %s (payment %s); skipping", user_id, detail.id)
                    return
                if subscription.plan_id != plan_id:
                    logger.warning(
                        "Payment %s references plan %s but subscription %s is on %s",
                        detail.id, plan_id, subscription.id, subscription.plan_id,
                    )

                if detail.status == PaymentStatus.APPROVED:
                    transition = await self.state_machine.apply_approved(db, subscription, detail, now)
                else:
                    transition = await self.state_machine.apply_rejected(db, subscription, detail, now)

        # State is committed; email failures from here on are only logged.
        if transition.changed:
            await notify_transition(self.notifier, subscription, transition, detail)

    async def _handle_payment_created(self, event: WebhookNotification) -> None:
        logger.info("Payment %s created; waiting for its update", event.data.id)

    async def _handle_subscription_created(self, event: WebhookNotification) -> None:
        logger.info("Gateway subscription %s created", event.data.id)

    async def _handle_subscription_updated(self, event: WebhookNotification) -> None:
        logger.info("Gateway subscription %s updated", event.data.id)

    async def _handle_unhandled(self, event: WebhookNotification) -> None:
        logger.info("Unhandled webhook %s.%s for event %s", event.type, event.action, event.event_id)
