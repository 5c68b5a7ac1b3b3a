"""Tests for the arq jobs in studio_billing.worker."""

from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from arq import Retry

from studio_billing.scheduler_tasks import BatchResult
from studio_billing.services.notification_service import NotificationResult
from studio_billing.worker import WorkerSettings, apply_penalties_job, send_notification_job


def _ctx(settings, result, job_try=1):
    dispatcher = SimpleNamespace(deliver=AsyncMock(return_value=result))
    return {"services": SimpleNamespace(settings=settings, dispatcher=dispatcher), "job_try": job_try}


class TestSendNotificationJob:
    @pytest.mark.asyncio
    async def test_delivered(self, settings):
        ctx = _ctx(settings, NotificationResult(success=True, log_id=7))
        assert await send_notification_job(ctx, 7) == {"log_id": 7, "sent": True}
        ctx["services"].dispatcher.deliver.assert_awaited_once_with(7)

    @pytest.mark.asyncio
    async def test_failure_is_retried_with_backoff(self, settings):
        ctx = _ctx(settings, NotificationResult(success=False, error="bounced", log_id=7), job_try=2)
        with pytest.raises(Retry) as exc_info:
            await send_notification_job(ctx, 7)
        assert exc_info.value.defer_score == 2 * settings.notification_retry_base_seconds * 1000

    @pytest.mark.asyncio
    async def test_gives_up_on_last_try(self, settings):
        last = settings.notification_max_tries
        ctx = _ctx(settings, NotificationResult(success=False, error="bounced", log_id=7), job_try=last)
        assert await send_notification_job(ctx, 7) == {"log_id": 7, "sent": False, "error": "bounced"}


class TestCronJobs:
    @pytest.mark.asyncio
    async def test_penalties_job_returns_batch_summary(self, settings, monkeypatch):
        apply = AsyncMock(return_value=BatchResult(checked=3, applied=2, skipped=1))
        monkeypatch.setattr("studio_billing.worker.apply_penalties", apply)
        services = SimpleNamespace(
            session_factory=object(), dispatcher=object(), clock=object(), settings=settings, state_machine=object()
        )

        summary = await apply_penalties_job({"services": services})
        assert summary == {"checked": 3, "applied": 2, "skipped": 1, "failed": 0}
        apply.assert_awaited_once_with(
            services.session_factory, services.dispatcher, services.clock, settings, services.state_machine
        )

    def test_schedule(self):
        names = {job.name for job in WorkerSettings.cron_jobs}
        assert names == {
            "cron:payment_reminders_job",
            "cron:apply_penalties_job",
            "cron:grace_periods_job",
        }
        assert [f.name for f in WorkerSettings.functions] == ["send_notification_job"]
