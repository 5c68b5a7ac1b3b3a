"""Billing notifications: subject, template and metadata for each business event."""

import logging
from datetime import datetime

from studio_billing.constants import (
    NOTIFICATION_TYPE_PAYMENT_FAILED,
    NOTIFICATION_TYPE_PAYMENT_OVERDUE,
    NOTIFICATION_TYPE_PAYMENT_REMINDER,
    NOTIFICATION_TYPE_PAYMENT_SUCCESS,
    NOTIFICATION_TYPE_SUBSCRIPTION_ACTIVATED,
    NOTIFICATION_TYPE_SUBSCRIPTION_SUSPENDED,
)
from studio_billing.models.payment import Payment
from studio_billing.models.subscription import Subscription
from studio_billing.schemas.gateway import PaymentDetail
from studio_billing.services.notification_service import NotificationDispatcher, NotificationResult
from studio_billing.services.penalty_service import PenaltyResult
from studio_billing.services.subscription_state import Transition, TransitionKind

logger = logging.getLogger(__name__)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def reminder_subject(days_until_due: int) -> str:
    if days_until_due == 1:
        return "Your payment is due tomorrow"
    if days_until_due == 3:
        return "Your payment is due in 3 days"
    return "Payment reminder"


async def notify_transition(
    dispatcher: NotificationDispatcher,
    subscription: Subscription,
    transition: Transition,
    detail: PaymentDetail | None = None,
) -> list[NotificationResult]:
    """Send whatever the webhook path owes the user for a committed transition."""
    if transition.kind is TransitionKind.ACTIVATED:
        return await notify_payment_approved(dispatcher, subscription, detail)
    if transition.kind is TransitionKind.PAYMENT_FAILED:
        return [await notify_payment_failed(dispatcher, subscription, transition)]
    if transition.kind is TransitionKind.SUSPENDED:
        return [await notify_subscription_suspended(dispatcher, subscription, transition.reason or "payment_failed")]
    return []


async def notify_payment_approved(
    dispatcher: NotificationDispatcher,
    subscription: Subscription,
    detail: PaymentDetail | None,
) -> list[NotificationResult]:
    user, plan = subscription.user, subscription.plan
    paid_at = (detail.date_approved if detail else None) or subscription.current_period_start
    success = await dispatcher.notify(
        user_id=user.id,
        type=NOTIFICATION_TYPE_PAYMENT_SUCCESS,
        recipient=user.email,
        subject="Payment received",
        template="payment-success",
        metadata={
            "name": user.name,
            "plan_name": plan.name,
            "amount": round(detail.transaction_amount or 0) if detail else plan.price,
            "payment_id": detail.id if detail else None,
            "payment_date": _iso(paid_at),
            "next_billing_date": _iso(subscription.next_billing_date),
        },
    )
    activated = await dispatcher.notify(
        user_id=user.id,
        type=NOTIFICATION_TYPE_SUBSCRIPTION_ACTIVATED,
        recipient=user.email,
        subject="Your subscription is active",
        template="subscription-activated",
        metadata={
            "name": user.name,
            "plan_name": plan.name,
            "plan_price": plan.price,
            "billing_period": plan.interval,
            "activated_at": _iso(subscription.current_period_start),
        },
    )
    return [success, activated]


async def notify_payment_failed(
    dispatcher: NotificationDispatcher,
    subscription: Subscription,
    transition: Transition,
) -> NotificationResult:
    user, plan = subscription.user, subscription.plan
    return await dispatcher.notify(
        user_id=user.id,
        type=NOTIFICATION_TYPE_PAYMENT_FAILED,
        recipient=user.email,
        subject="Your payment was declined",
        template="payment-failed",
        metadata={
            "name": user.name,
            "plan_name": plan.name,
            "failures": transition.failures,
            "grace_period_end": _iso(transition.grace_period_end),
        },
    )


async def notify_subscription_suspended(
    dispatcher: NotificationDispatcher,
    subscription: Subscription,
    reason: str,
    outstanding_amount: int | None = None,
) -> NotificationResult:
    user, plan = subscription.user, subscription.plan
    return await dispatcher.notify(
        user_id=user.id,
        type=NOTIFICATION_TYPE_SUBSCRIPTION_SUSPENDED,
        recipient=user.email,
        subject="Your subscription has been suspended",
        template="subscription-suspended",
        metadata={
            "name": user.name,
            "plan_name": plan.name,
            "reason": reason,
            "suspended_at": _iso(subscription.updated_at),
            "outstanding_amount": outstanding_amount,
        },
    )


async def notify_payment_overdue(
    dispatcher: NotificationDispatcher,
    subscription: Subscription,
    payment: Payment,
    penalty: PenaltyResult,
) -> NotificationResult:
    user, plan = subscription.user, subscription.plan
    return await dispatcher.notify(
        user_id=user.id,
        type=NOTIFICATION_TYPE_PAYMENT_OVERDUE,
        recipient=user.email,
        subject="Your payment is overdue",
        template="payment-overdue",
        metadata={
            "name": user.name,
            "plan_name": plan.name,
            "payment_id": payment.id,
            "base_amount": payment.amount,
            "penalty_fee": payment.penalty_fee,
            "total_amount": payment.total_amount,
            "days_late": penalty.days_late,
            "penalty_rate": str(penalty.penalty_rate),
            "grace_period_end": _iso(subscription.grace_period_end),
        },
    )


async def send_payment_reminder(
    dispatcher: NotificationDispatcher,
    subscription: Subscription,
    days_until_due: int,
) -> NotificationResult:
    user, plan = subscription.user, subscription.plan
    return await dispatcher.notify(
        user_id=user.id,
        type=NOTIFICATION_TYPE_PAYMENT_REMINDER,
        recipient=user.email,
        subject=reminder_subject(days_until_due),
        template="payment-reminder",
        metadata={
            "name": user.name,
            "plan_name": plan.name,
            "amount": plan.price,
            "subscription_id": subscription.id,
            "days_until_due": days_until_due,
            "due_date": _iso(subscription.next_billing_date),
        },
    )
