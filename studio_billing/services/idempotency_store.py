"""Webhook idempotency ledger: records inbound event ids and a processed flag."""

import logging
from enum import StrEnum

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from studio_billing.clock import Clock, SystemClock
from studio_billing.models.webhook_event import WebhookEvent

logger = logging.getLogger(__name__)


class ClaimResult(StrEnum):
    NEW = "new"  # first sighting, ledger row inserted
    RETRY = "retry"  # row exists but a previous attempt did not finish
    PROCESSED = "processed"  # already handled; redelivery is a no-op
    CONFLICT = "conflict"  # a concurrent request inserted the row first

    @property
    def should_process(self) -> bool:
        return self in (ClaimResult.NEW, ClaimResult.RETRY)


class IdempotencyStore:
    """Ledger over the webhook_events table.

    Each call runs in its own short session so ledger writes never share a
    transaction with the state changes they guard.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], clock: Clock | None = None):
        self._session_factory = session_factory
        self._clock = clock or SystemClock()

    async def is_processed(self, event_id: str) -> bool:
        async with self._session_factory() as db:
            result = await db.execute(select(WebhookEvent.processed).where(WebhookEvent.event_id == event_id))
            return bool(result.scalar_one_or_none())

    async def claim(self, event_id: str, event_type: str, payload: dict) -> ClaimResult:
        """Record an inbound event before any side effect is attempted."""
        async with self._session_factory() as db:
            result = await db.execute(select(WebhookEvent).where(WebhookEvent.event_id == event_id))
            existing = result.scalar_one_or_none()
            if existing is not None:
                return ClaimResult.PROCESSED if existing.processed else ClaimResult.RETRY

            db.add(
                WebhookEvent(
                    event_id=event_id,
                    event_type=event_type,
                    data=payload,
                    processed=False,
                    created_at=self._clock.now(),
                )
            )
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                logger.info("Event %s is already being handled by another request", event_id)
                return ClaimResult.CONFLICT
            return ClaimResult.NEW

    async def mark_processed(self, event_id: str) -> None:
        async with self._session_factory() as db:
            result = await db.execute(select(WebhookEvent).where(WebhookEvent.event_id == event_id))
            event = result.scalar_one()
            event.processed = True
            event.processed_at = self._clock.now()
            await db.commit()
