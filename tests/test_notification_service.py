"""Tests for the notification dispatcher and billing notification builders."""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select
from sqlalchemy.orm import selectinload

from studio_billing.models import NotificationStatus, Subscription
from studio_billing.services.billing_notifications import (
    notify_subscription_suspended,
    reminder_subject,
    send_payment_reminder,
)
from studio_billing.services.email_service import ResendEmailSender
from studio_billing.services.notification_service import NotificationDispatcher, render_template, retry_delay


async def _load(session_factory, subscription_id):
    async with session_factory() as db:
        result = await db.execute(
            select(Subscription)
            .options(selectinload(Subscription.user), selectinload(Subscription.plan))
            .where(Subscription.id == subscription_id)
        )
        return result.scalar_one()


async def _notify(dispatcher, user_id):
    return await dispatcher.notify(
        user_id=user_id,
        type="payment_reminder",
        recipient="user1@example.com",
        subject="Payment reminder",
        template="payment-reminder",
        metadata={"name": "User 1", "plan_name": "Plan Pro", "amount": 1999000, "days_until_due": 7},
    )


class TestDispatcher:
    @pytest.mark.asyncio
    async def test_inline_delivery(self, dispatcher, make_subscriber, sender, fetch, clock):
        subscription = await make_subscriber()
        result = await _notify(dispatcher, subscription.user_id)

        assert result.success
        [entry] = await fetch.notifications()
        assert entry.id == result.log_id
        assert entry.status == NotificationStatus.SENT
        assert entry.attempts == 1
        assert entry.sent_at == clock.now()

        to_email, subject, html = sender.await_args.args
        assert to_email == "user1@example.com"
        assert "1,999,000" in html
        assert "https://studio.test/dashboard/subscription" in html

    @pytest.mark.asyncio
    async def test_provider_refusal_is_logged(self, dispatcher, make_subscriber, sender, fetch):
        subscription = await make_subscriber()
        sender.return_value = False

        result = await _notify(dispatcher, subscription.user_id)
        assert not result.success
        [entry] = await fetch.notifications()
        assert entry.status == NotificationStatus.FAILED
        assert entry.attempts == 1

    @pytest.mark.asyncio
    async def test_never_raises(self, dispatcher, make_subscriber, sender, fetch):
        subscription = await make_subscriber()
        sender.side_effect = ConnectionError("smtp down")

        result = await _notify(dispatcher, subscription.user_id)
        assert not result.success
        assert "smtp down" in result.error
        assert (await fetch.notifications())[0].status == NotificationStatus.FAILED

    @pytest.mark.asyncio
    async def test_deliver_is_idempotent(self, dispatcher, make_subscriber, sender):
        subscription = await make_subscriber()
        result = await _notify(dispatcher, subscription.user_id)

        again = await dispatcher.deliver(result.log_id)
        assert again.success
        assert sender.await_count == 1

    @pytest.mark.asyncio
    async def test_queues_through_arq(self, session_factory, clock, sender, make_subscriber, fetch):
        pool = AsyncMock()
        dispatcher = NotificationDispatcher(session_factory, clock=clock, sender=sender, arq_pool=pool)
        subscription = await make_subscriber()

        result = await _notify(dispatcher, subscription.user_id)
        assert result.success
        pool.enqueue_job.assert_awaited_once_with("send_notification_job", result.log_id)
        sender.assert_not_awaited()
        assert (await fetch.notifications())[0].status == NotificationStatus.QUEUED

    @pytest.mark.asyncio
    async def test_queue_failure_is_reported(self, session_factory, clock, sender, make_subscriber, fetch):
        pool = AsyncMock()
        pool.enqueue_job.side_effect = ConnectionError("redis down")
        dispatcher = NotificationDispatcher(session_factory, clock=clock, sender=sender, arq_pool=pool)
        subscription = await make_subscriber()

        result = await _notify(dispatcher, subscription.user_id)
        assert not result.success
        assert (await fetch.notifications())[0].status == NotificationStatus.FAILED


class TestBillingNotifications:
    def test_reminder_subjects(self):
        assert reminder_subject(1) == "Your payment is due tomorrow"
        assert reminder_subject(3) == "Your payment is due in 3 days"
        assert reminder_subject(7) == "Payment reminder"

    @pytest.mark.asyncio
    async def test_reminder_metadata(self, dispatcher, session_factory, make_subscriber, fetch, clock):
        subscription = await make_subscriber(next_billing_date=clock.now() + timedelta(days=3))
        loaded = await _load(session_factory, subscription.id)

        await send_payment_reminder(dispatcher, loaded, 3)
        [entry] = await fetch.notifications()
        assert entry.details["days_until_due"] == 3
        assert entry.details["amount"] == 999000
        assert entry.details["due_date"] == (clock.now() + timedelta(days=3)).isoformat()

    @pytest.mark.asyncio
    async def test_suspension_reason_in_email(self, dispatcher, session_factory, make_subscriber, sender):
        subscription = await make_subscriber()
        loaded = await _load(session_factory, subscription.id)

        await notify_subscription_suspended(dispatcher, loaded, "grace_period_expired", outstanding_amount=1048950)
        html = sender.await_args.args[2]
        assert "grace period" in html
        assert "1,048,950" in html


class TestTemplates:
    @pytest.mark.parametrize(
        "template",
        [
            "payment-success",
            "subscription-activated",
            "payment-failed",
            "payment-overdue",
            "subscription-suspended",
            "payment-reminder",
        ],
    )
    def test_renders_with_sparse_context(self, template):
        html = render_template(template, {"subject": "Hello", "app_url": ""})
        assert "<html" in html
        assert "Hi there" in html


def test_retry_delay_is_exponential():
    assert [retry_delay(t, 1) for t in (1, 2, 3)] == [1, 2, 4]
    assert retry_delay(2, 5) == 10


class TestResendEmailSender:
    @pytest.mark.asyncio
    async def test_sends_through_resend(self, monkeypatch):
        calls = []

        def fake_send(params):
            calls.append(params)
            return {"id": "email-1"}

        monkeypatch.setattr("resend.Emails.send", fake_send)
        sender = ResendEmailSender("re_test", "billing@studio.test", reply_to="help@studio.test")

        assert await sender("user1@example.com", "Payment received", "<p>hi</p>") is True
        [params] = calls
        assert params["from"] == "billing@studio.test"
        assert params["to"] == ["user1@example.com"]
        assert params["reply_to"] == "help@studio.test"

    @pytest.mark.asyncio
    async def test_provider_error_returns_false(self, monkeypatch):
        def fake_send(params):
            raise RuntimeError("rate limited")

        monkeypatch.setattr("resend.Emails.send", fake_send)
        sender = ResendEmailSender("re_test", "billing@studio.test")
        assert await sender("user1@example.com", "Payment received", "<p>hi</p>") is False

    @pytest.mark.asyncio
    async def test_without_api_key_nothing_is_sent(self, monkeypatch):
        send = AsyncMock()
        monkeypatch.setattr("resend.Emails.send", send)
        assert await ResendEmailSender("", "billing@studio.test")("a@b.c", "s", "h") is False
        send.assert_not_called()
