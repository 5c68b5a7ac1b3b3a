"""Tests for the seed helpers and the operator CLI."""

from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select
from typer.testing import CliRunner

from studio_billing import cli
from studio_billing.models import Subscription, SubscriptionPlan, SubscriptionStatus
from studio_billing.scheduler_tasks import BatchResult
from studio_billing.seed import DEFAULT_PLANS, seed_demo_subscriber, seed_plans

runner = CliRunner()


class TestSeed:
    @pytest.mark.asyncio
    async def test_plans_are_seeded_once(self, session_factory):
        assert await seed_plans(session_factory) == ["basic-monthly", "pro-monthly"]
        assert await seed_plans(session_factory) == []

        async with session_factory() as db:
            plans = (await db.execute(select(SubscriptionPlan).order_by(SubscriptionPlan.price))).scalars().all()
        assert [p.price for p in plans] == [p["price"] for p in DEFAULT_PLANS]

    @pytest.mark.asyncio
    async def test_demo_subscriber(self, session_factory, clock):
        await seed_plans(session_factory)
        user_id = await seed_demo_subscriber(session_factory, clock.now())
        assert await seed_demo_subscriber(session_factory, clock.now()) == user_id

        async with session_factory() as db:
            subscription = (
                await db.execute(select(Subscription).where(Subscription.user_id == user_id))
            ).scalar_one()
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.plan_id == "basic-monthly"
        assert subscription.next_billing_date == clock.now().replace(month=4)


@pytest.fixture
def fake_services(monkeypatch, settings):
    services = SimpleNamespace(
        settings=settings,
        session_factory=object(),
        dispatcher=object(),
        clock=object(),
        state_machine=object(),
        aclose=AsyncMock(),
    )
    monkeypatch.setattr(cli, "build_services", lambda _settings: services)
    return services


class TestCli:
    def test_schedule_lists_cron_jobs(self):
        result = runner.invoke(cli.app, ["schedule"])
        assert result.exit_code == 0
        assert "apply_penalties_job" in result.output
        assert "09:30" in result.output

    def test_batch_summary(self, monkeypatch, fake_services):
        batch = AsyncMock(return_value=BatchResult(checked=4, applied=3, skipped=1))
        monkeypatch.setattr(cli, "check_payment_reminders", batch)

        result = runner.invoke(cli.app, ["reminders"])

        assert result.exit_code == 0
        assert "Payment reminders" in result.output
        batch.assert_awaited_once()
        fake_services.aclose.assert_awaited_once()

    def test_failed_rows_exit_nonzero(self, monkeypatch, fake_services):
        monkeypatch.setattr(cli, "apply_penalties", AsyncMock(return_value=BatchResult(checked=2, failed=1)))
        result = runner.invoke(cli.app, ["penalties"])
        assert result.exit_code == 1

    def test_batch_crash_exits_nonzero(self, monkeypatch, fake_services):
        monkeypatch.setattr(cli, "check_grace_periods", AsyncMock(side_effect=RuntimeError("db down")))
        result = runner.invoke(cli.app, ["grace-periods"])
        assert result.exit_code == 1
        assert "db down" in result.output
        fake_services.aclose.assert_awaited_once()
