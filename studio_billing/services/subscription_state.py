"""Subscription billing state machine.

Every write to ``Subscription.status`` goes through this module, whether it
comes from a webhook (approved / rejected payment) or from a scheduled worker
(penalty applied, grace period expired). Methods run inside the caller's
transaction and re-read the row's status at write time; they never commit.

Dunning policy for consecutive rejected payments:

    1 failure   -> past_due, grace period set to now + 3 days
    2 failures  -> past_due, grace period left as it is
    3+ failures -> suspended, grace period cleared

A subscription that is already suspended (or cancelled) is never moved back
into past_due, whichever path got there first.
"""

import calendar
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from enum import StrEnum

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from studio_billing.constants import (
    BILLING_PERIOD_MONTHS,
    FAILURE_SCAN_WINDOW,
    SUBSCRIPTION_GRACE_DAYS,
    SUSPEND_AFTER_FAILURES,
)
from studio_billing.models.payment import Payment, PaymentStatus
from studio_billing.models.subscription import Subscription, SubscriptionStatus
from studio_billing.schemas.gateway import PaymentDetail

logger = logging.getLogger(__name__)

# Statuses a rejected payment or a penalty must never pull back into past_due
_TERMINAL_FOR_DUNNING = {SubscriptionStatus.SUSPENDED, SubscriptionStatus.CANCELLED}


@dataclass(frozen=True)
class DunningPolicy:
    grace_days: int = SUBSCRIPTION_GRACE_DAYS
    suspend_after: int = SUSPEND_AFTER_FAILURES
    scan_window: int = FAILURE_SCAN_WINDOW

    @classmethod
    def from_settings(cls, settings) -> "DunningPolicy":
        return cls(
            grace_days=settings.subscription_grace_days,
            scan_window=settings.failure_scan_window,
        )


class TransitionKind(StrEnum):
    ACTIVATED = "activated"
    PAYMENT_FAILED = "payment_failed"
    PAST_DUE = "past_due"
    SUSPENDED = "suspended"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class Transition:
    """What a state-machine call did, for logging and post-commit notifications."""

    kind: TransitionKind
    subscription_id: int
    user_id: int
    previous_status: str
    new_status: str
    grace_period_end: datetime | None = None
    failures: int = 0
    reason: str | None = None
    payment_id: int | None = None

    @property
    def changed(self) -> bool:
        return self.kind is not TransitionKind.SKIPPED


@dataclass(frozen=True)
class Escalation:
    status: SubscriptionStatus
    grace_period_end: datetime | None


def count_consecutive_failures(statuses: Iterable[str]) -> int:
    """Count rejections in a row, newest first, since the last approved payment.

    ``statuses`` must be ordered newest-first. Pending (and any other
    non-terminal) statuses are skipped over without breaking the run.
    """
    failures = 0
    for status in statuses:
        if status == PaymentStatus.REJECTED:
            failures += 1
        elif status == PaymentStatus.APPROVED:
            break
    return failures


def decide_escalation(
    failures: int,
    current_grace_end: datetime | None,
    now: datetime,
    policy: DunningPolicy = DunningPolicy(),
) -> Escalation | None:
    """Apply the dunning table to a consecutive-failure count."""
    if failures <= 0:
        return None
    if failures >= policy.suspend_after:
        return Escalation(SubscriptionStatus.SUSPENDED, None)
    if failures == 1:
        return Escalation(SubscriptionStatus.PAST_DUE, now + timedelta(days=policy.grace_days))
    # The grace window is anchored to the first failure and never extended.
    if current_grace_end is None:
        return Escalation(SubscriptionStatus.PAST_DUE, now + timedelta(days=policy.grace_days))
    return Escalation(SubscriptionStatus.PAST_DUE, current_grace_end)


def add_months(value: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the target month's length."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def _to_amount(value: float | None) -> int:
    return int(Decimal(str(value or 0)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class SubscriptionStateMachine:
    def __init__(self, policy: DunningPolicy = DunningPolicy()):
        self.policy = policy

    # --- reads -----------------------------------------------------------

    async def lock_subscription_for_user(self, db: AsyncSession, user_id: int) -> Subscription | None:
        """Load a user's subscription for update, bypassing any cached copy."""
        result = await db.execute(
            select(Subscription)
            .where(Subscription.user_id == user_id)
            .options(selectinload(Subscription.user), selectinload(Subscription.plan))
            .with_for_update(of=Subscription)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def lock_subscription(self, db: AsyncSession, subscription_id: int) -> Subscription | None:
        result = await db.execute(
            select(Subscription)
            .where(Subscription.id == subscription_id)
            .options(selectinload(Subscription.user), selectinload(Subscription.plan))
            .with_for_update(of=Subscription)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def current_status(self, db: AsyncSession, subscription: Subscription) -> str:
        """Re-read status at write time and refresh the row if it moved underneath us."""
        result = await db.execute(select(Subscription.status).where(Subscription.id == subscription.id))
        status = result.scalar_one()
        if status != subscription.status:
            logger.info(
                "Subscription %s changed from %s to %s since it was read",
                subscription.id, subscription.status, status,
            )
            await db.refresh(subscription, attribute_names=["status", "grace_period_end", "cancelled_at"])
        return status

    async def recent_payment_statuses(self, db: AsyncSession, subscription_id: int) -> list[str]:
        result = await db.execute(
            select(Payment.status)
            .where(Payment.subscription_id == subscription_id)
            .order_by(Payment.created_at.desc(), Payment.id.desc())
            .limit(self.policy.scan_window)
        )
        return list(result.scalars().all())

    async def consecutive_failures(self, db: AsyncSession, subscription_id: int) -> int:
        return count_consecutive_failures(await self.recent_payment_statuses(db, subscription_id))

    # --- payments --------------------------------------------------------

    async def upsert_payment(
        self,
        db: AsyncSession,
        subscription: Subscription,
        detail: PaymentDetail,
        status: PaymentStatus,
        now: datetime,
    ) -> tuple[Payment, str | None]:
        """Create or update the Payment row keyed by gateway transaction id.

        Returns the row and the status it had before this call (None if new).
        """
        result = await db.execute(select(Payment).where(Payment.mercadopago_id == detail.id))
        payment = result.scalar_one_or_none()
        amount = _to_amount(detail.transaction_amount)
        metadata = detail.model_dump(mode="json")

        if payment is not None:
            previous = payment.status
            payment.status = status
            payment.gateway_metadata = metadata
            if status == PaymentStatus.APPROVED:
                payment.paid_at = detail.date_approved or now
                payment.total_amount = amount
            logger.info("Updated payment %s (%s -> %s)", payment.id, previous, status)
            return payment, previous

        payment = Payment(
            user_id=subscription.user_id,
            subscription_id=subscription.id,
            mercadopago_id=detail.id,
            amount=amount,
            penalty_fee=0,
            total_amount=amount,
            status=status,
            due_date=now,
            paid_at=(detail.date_approved or now) if status == PaymentStatus.APPROVED else None,
            gateway_metadata=metadata,
            created_at=now,
            updated_at=now,
        )
        db.add(payment)
        await db.flush()
        logger.info("Created %s payment %s for subscription %s", status, payment.id, subscription.id)
        return payment, None

    # --- webhook transitions ---------------------------------------------

    async def apply_approved(
        self, db: AsyncSession, subscription: Subscription, detail: PaymentDetail, now: datetime
    ) -> Transition:
        payment, previous = await self.upsert_payment(db, subscription, detail, PaymentStatus.APPROVED, now)
        status = await self.current_status(db, subscription)

        if previous == PaymentStatus.APPROVED:
            logger.info("Payment %s was already approved; subscription %s left as is", detail.id, subscription.id)
            return self._skipped(subscription, status, "replay", payment)

        period_start = now
        period_end = add_months(now, BILLING_PERIOD_MONTHS)
        subscription.status = SubscriptionStatus.ACTIVE
        subscription.current_period_start = period_start
        subscription.current_period_end = period_end
        subscription.next_billing_date = period_end
        subscription.grace_period_end = None
        subscription.cancelled_at = None
        subscription.updated_at = now

        logger.info(
            "Subscription %s activated (%s -> active), period %s - %s",
            subscription.id, status, period_start.isoformat(), period_end.isoformat(),
        )
        return Transition(
            kind=TransitionKind.ACTIVATED,
            subscription_id=subscription.id,
            user_id=subscription.user_id,
            previous_status=status,
            new_status=SubscriptionStatus.ACTIVE,
            payment_id=payment.id,
        )

    async def apply_rejected(
        self, db: AsyncSession, subscription: Subscription, detail: PaymentDetail, now: datetime
    ) -> Transition:
        payment, previous = await self.upsert_payment(db, subscription, detail, PaymentStatus.REJECTED, now)

        if previous == PaymentStatus.REJECTED:
            logger.info("Payment %s was already counted as rejected; skipping escalation", detail.id)
            return self._skipped(subscription, subscription.status, "replay", payment)

        failures = await self.consecutive_failures(db, subscription.id)

        # TOCTOU guard: the grace-expiry worker may have suspended this row
        # after the webhook started.
        status = await self.current_status(db, subscription)
        if status in _TERMINAL_FOR_DUNNING:
            logger.warning(
                "Subscription %s is %s; not applying failure #%d", subscription.id, status, failures
            )
            return self._skipped(subscription, status, f"already_{status}", payment, failures)

        decision = decide_escalation(failures, subscription.grace_period_end, now, self.policy)
        if decision is None:
            logger.info("No consecutive failures for subscription %s; status unchanged", subscription.id)
            return self._skipped(subscription, status, "no_failures", payment, failures)

        subscription.status = decision.status
        subscription.grace_period_end = decision.grace_period_end
        subscription.updated_at = now

        kind = (
            TransitionKind.SUSPENDED
            if decision.status == SubscriptionStatus.SUSPENDED
            else TransitionKind.PAYMENT_FAILED
        )
        logger.info(
            "Subscription %s: failure #%d, %s -> %s, grace period end %s",
            subscription.id, failures, status, decision.status, decision.grace_period_end,
        )
        return Transition(
            kind=kind,
            subscription_id=subscription.id,
            user_id=subscription.user_id,
            previous_status=status,
            new_status=decision.status,
            grace_period_end=decision.grace_period_end,
            failures=failures,
            reason="payment_failed" if kind is TransitionKind.SUSPENDED else None,
            payment_id=payment.id,
        )

    # --- worker transitions ----------------------------------------------

    async def mark_past_due(self, db: AsyncSession, subscription: Subscription, now: datetime) -> Transition:
        """Penalty path: move to past_due, keeping any grace period already running."""
        status = await self.current_status(db, subscription)
        if status in _TERMINAL_FOR_DUNNING:
            logger.warning("Subscription %s is %s; not marking past_due", subscription.id, status)
            return self._skipped(subscription, status, f"already_{status}")

        grace_period_end = subscription.grace_period_end or now + timedelta(days=self.policy.grace_days)
        subscription.status = SubscriptionStatus.PAST_DUE
        subscription.grace_period_end = grace_period_end
        subscription.updated_at = now

        logger.info(
            "Subscription %s marked past_due (was %s), grace period end %s",
            subscription.id, status, grace_period_end.isoformat(),
        )
        return Transition(
            kind=TransitionKind.PAST_DUE,
            subscription_id=subscription.id,
            user_id=subscription.user_id,
            previous_status=status,
            new_status=SubscriptionStatus.PAST_DUE,
            grace_period_end=grace_period_end,
        )

    async def suspend_if_expired(self, db: AsyncSession, subscription: Subscription, now: datetime) -> Transition:
        """Grace-expiry path: suspend only if still past_due with an expired grace period."""
        status = await self.current_status(db, subscription)
        grace_period_end = subscription.grace_period_end
        if status != SubscriptionStatus.PAST_DUE or grace_period_end is None or grace_period_end > now:
            logger.info(
                "Subscription %s no longer eligible for suspension (status=%s, grace=%s)",
                subscription.id, status, grace_period_end,
            )
            return self._skipped(subscription, status, "not_expired")

        subscription.status = SubscriptionStatus.SUSPENDED
        subscription.grace_period_end = None
        subscription.updated_at = now

        logger.info("Subscription %s suspended: grace period ended %s", subscription.id, grace_period_end.isoformat())
        return Transition(
            kind=TransitionKind.SUSPENDED,
            subscription_id=subscription.id,
            user_id=subscription.user_id,
            previous_status=status,
            new_status=SubscriptionStatus.SUSPENDED,
            reason="grace_period_expired",
        )

    @staticmethod
    def _skipped(
        subscription: Subscription,
        status: str,
        reason: str,
        payment: Payment | None = None,
        failures: int = 0,
    ) -> Transition:
        return Transition(
            kind=TransitionKind.SKIPPED,
            subscription_id=subscription.id,
            user_id=subscription.user_id,
            previous_status=status,
            new_status=status,
            grace_period_end=subscription.grace_period_end,
            failures=failures,
            reason=reason,
            payment_id=payment.id if payment else None,
        )
