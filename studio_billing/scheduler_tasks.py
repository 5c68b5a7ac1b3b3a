"""Scheduler tasks: the daily billing batches.

Each batch snapshots its candidate ids first and then handles every row in
its own session and transaction, so one bad row is logged, counted as
failed and retried on the next run without touching the others.
"""

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from studio_billing.clock import Clock, local_date, start_of_day
from studio_billing.config import Settings
from studio_billing.constants import NOTIFICATION_TYPE_PAYMENT_REMINDER
from studio_billing.models.notification_log import NotificationLog, NotificationStatus
from studio_billing.models.payment import Payment, PaymentStatus
from studio_billing.models.subscription import Subscription, SubscriptionStatus
from studio_billing.services.billing_notifications import (
    notify_payment_overdue,
    notify_subscription_suspended,
    send_payment_reminder,
)
from studio_billing.services.notification_service import NotificationDispatcher
from studio_billing.services.penalty_service import PenaltyPolicy, calculate_penalty, penalty_cutoff
from studio_billing.services.subscription_state import DunningPolicy, SubscriptionStateMachine

logger = logging.getLogger(__name__)


@dataclass
class BatchResult:
    """Counts for one batch run. ``applied`` means sent, penalised or suspended."""

    checked: int = 0
    applied: int = 0
    skipped: int = 0
    failed: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


# --- Payment reminders ---------------------------------------------------


async def _reminder_already_sent(
    db: AsyncSession, user_id: int, days_until_due: int, since: datetime
) -> bool:
    result = await db.execute(
        select(NotificationLog).where(
            NotificationLog.user_id == user_id,
            NotificationLog.type == NOTIFICATION_TYPE_PAYMENT_REMINDER,
            NotificationLog.created_at >= since,
            NotificationLog.status != NotificationStatus.FAILED,
        )
    )
    return any(
        (entry.details or {}).get("days_until_due") == days_until_due
        for entry in result.scalars().all()
    )


async def check_payment_reminders(
    session_factory: async_sessionmaker[AsyncSession],
    dispatcher: NotificationDispatcher,
    clock: Clock,
    settings: Settings,
) -> BatchResult:
    """Remind active subscribers whose next billing date is N local days away."""
    tz = ZoneInfo(settings.billing_timezone)
    now = clock.now()
    today = local_date(now, tz)
    today_start = start_of_day(today, tz)
    batch = BatchResult()

    for days_until_due in settings.reminder_days:
        window_start = start_of_day(today + timedelta(days=days_until_due), tz)
        window_end = start_of_day(today + timedelta(days=days_until_due + 1), tz)

        async with session_factory() as db:
            result = await db.execute(
                select(Subscription)
                .where(
                    Subscription.status == SubscriptionStatus.ACTIVE,
                    Subscription.next_billing_date >= window_start,
                    Subscription.next_billing_date < window_end,
                )
                .options(selectinload(Subscription.user), selectinload(Subscription.plan))
                .order_by(Subscription.id)
            )
            subscriptions = list(result.scalars().all())

        logger.info("Found %d subscriptions due in %d days", len(subscriptions), days_until_due)
        batch.checked += len(subscriptions)

        for subscription in subscriptions:
            try:
                async with session_factory() as db:
                    if await _reminder_already_sent(db, subscription.user_id, days_until_due, today_start):
                        logger.debug(
                            "Reminder (%d days) already sent today to user %s", days_until_due, subscription.user_id
                        )
                        batch.skipped += 1
                        continue

                sent = await send_payment_reminder(dispatcher, subscription, days_until_due)
                if sent.success:
                    batch.applied += 1
                    logger.info("Reminder sent to %s (%d days)", subscription.user.email, days_until_due)
                else:
                    batch.failed += 1
                    logger.warning("Reminder to user %s failed: %s", subscription.user_id, sent.error)
            except Exception as e:
                batch.failed += 1
                logger.error("Reminder for subscription %s failed: %s", subscription.id, e, exc_info=True)

    logger.info("Payment reminders: %s", batch.as_dict())
    return batch


# --- Late-payment penalties ----------------------------------------------


async def _apply_penalty(
    session_factory: async_sessionmaker[AsyncSession],
    dispatcher: NotificationDispatcher,
    state_machine: SubscriptionStateMachine,
    policy: PenaltyPolicy,
    tz: ZoneInfo,
    payment_id: int,
    now: datetime,
) -> bool:
    async with session_factory() as db:
        async with db.begin():
            result = await db.execute(
                select(Payment)
                .where(Payment.id == payment_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            payment = result.scalar_one_or_none()
            # Re-checked under the row lock; a concurrent run may have got here first
            if payment is None or payment.status != PaymentStatus.PENDING or payment.penalty_fee != 0:
                logger.info("Payment %s no longer needs a penalty", payment_id)
                return False

            penalty = calculate_penalty(payment.amount, payment.due_date, now, policy, tz)
            if penalty.penalty_amount <= 0:
                logger.info("Payment %s is within the penalty grace period", payment_id)
                return False

            payment.penalty_fee = penalty.penalty_amount
            payment.total_amount = payment.amount + penalty.penalty_amount
            payment.updated_at = now

            subscription = await state_machine.lock_subscription(db, payment.subscription_id)
            if subscription is None:
                raise LookupError(f"Subscription {payment.subscription_id} for payment {payment_id} not found")
            await state_machine.mark_past_due(db, subscription, now)

    logger.info(
        "Penalty of %d applied to payment %s (%d days late, rate %s)",
        penalty.penalty_amount, payment_id, penalty.days_late, penalty.penalty_rate,
    )
    await notify_payment_overdue(dispatcher, subscription, payment, penalty)
    return True


async def apply_penalties(
    session_factory: async_sessionmaker[AsyncSession],
    dispatcher: NotificationDispatcher,
    clock: Clock,
    settings: Settings,
    state_machine: SubscriptionStateMachine | None = None,
) -> BatchResult:
    """Add a one-time late fee to pending payments past the penalty grace window."""
    state_machine = state_machine or SubscriptionStateMachine(DunningPolicy.from_settings(settings))
    policy = PenaltyPolicy.from_settings(settings)
    tz = ZoneInfo(settings.billing_timezone)
    now = clock.now()
    cutoff = penalty_cutoff(now, policy.grace_days, tz)

    async with session_factory() as db:
        result = await db.execute(
            select(Payment.id)
            .where(
                Payment.status == PaymentStatus.PENDING,
                Payment.due_date < cutoff,
                Payment.penalty_fee == 0,
            )
            .order_by(Payment.due_date, Payment.id)
        )
        payment_ids = list(result.scalars().all())

    logger.info("Found %d overdue payments due before %s", len(payment_ids), cutoff.isoformat())
    batch = BatchResult(checked=len(payment_ids))

    for payment_id in payment_ids:
        try:
            applied = await _apply_penalty(session_factory, dispatcher, state_machine, policy, tz, payment_id, now)
        except Exception as e:
            batch.failed += 1
            logger.error("Penalty for payment %s failed: %s", payment_id, e, exc_info=True)
            continue
        if applied:
            batch.applied += 1
        else:
            batch.skipped += 1

    logger.info("Penalties: %s", batch.as_dict())
    return batch


# --- Grace period expiry -------------------------------------------------


async def _outstanding_amount(db: AsyncSession, subscription_id: int) -> int:
    result = await db.execute(
        select(func.coalesce(func.sum(Payment.total_amount), 0)).where(
            Payment.subscription_id == subscription_id,
            Payment.status == PaymentStatus.PENDING,
        )
    )
    return int(result.scalar_one())


async def check_grace_periods(
    session_factory: async_sessionmaker[AsyncSession],
    dispatcher: NotificationDispatcher,
    clock: Clock,
    settings: Settings,
    state_machine: SubscriptionStateMachine | None = None,
) -> BatchResult:
    """Suspend past_due subscriptions whose grace period has run out."""
    state_machine = state_machine or SubscriptionStateMachine(DunningPolicy.from_settings(settings))
    now = clock.now()

    async with session_factory() as db:
        result = await db.execute(
            select(Subscription.id)
            .where(
                Subscription.status == SubscriptionStatus.PAST_DUE,
                Subscription.grace_period_end <= now,
            )
            .order_by(Subscription.id)
        )
        subscription_ids = list(result.scalars().all())

    logger.info("Found %d subscriptions with an expired grace period", len(subscription_ids))
    batch = BatchResult(checked=len(subscription_ids))

    for subscription_id in subscription_ids:
        try:
            async with session_factory() as db:
                async with db.begin():
                    subscription = await state_machine.lock_subscription(db, subscription_id)
                    if subscription is None:
                        batch.skipped += 1
                        continue
                    transition = await state_machine.suspend_if_expired(db, subscription, now)
                    outstanding = await _outstanding_amount(db, subscription_id) if transition.changed else 0
        except Exception as e:
            batch.failed += 1
            logger.error("Grace check for subscription %s failed: %s", subscription_id, e, exc_info=True)
            continue

        if not transition.changed:
            batch.skipped += 1
            continue

        batch.applied += 1
        await notify_subscription_suspended(
            dispatcher, subscription, transition.reason or "grace_period_expired", outstanding or None
        )

    logger.info("Grace periods: %s", batch.as_dict())
    return batch
