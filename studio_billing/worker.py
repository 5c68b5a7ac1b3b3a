"""ARQ worker: notification delivery and the daily billing batches."""

import logging
from zoneinfo import ZoneInfo

from arq import Retry, cron
from arq.connections import RedisSettings
from arq.worker import func

from studio_billing.config import get_settings
from studio_billing.constants import (
    ARQ_JOB_TIMEOUT,
    ARQ_MAX_JOBS,
    GRACE_PERIODS_CRON,
    PENALTIES_CRON,
    REMINDERS_CRON,
)
from studio_billing.container import Services, build_services
from studio_billing.scheduler_tasks import apply_penalties, check_grace_periods, check_payment_reminders
from studio_billing.services.notification_service import retry_delay
from studio_billing.utils import setup_logging

logger = logging.getLogger(__name__)


async def startup(ctx: dict) -> None:
    setup_logging()
    ctx["services"] = build_services(get_settings(), arq_pool=ctx["redis"])


async def shutdown(ctx: dict) -> None:
    services: Services | None = ctx.get("services")
    if services is not None:
        await services.aclose()


async def send_notification_job(ctx: dict, log_id: int) -> dict:
    """ARQ job: deliver one logged notification, retrying with backoff."""
    services: Services = ctx["services"]
    settings = services.settings
    job_try = ctx.get("job_try", 1)

    result = await services.dispatcher.deliver(log_id)
    if result.success:
        return {"log_id": log_id, "sent": True}

    if job_try < settings.notification_max_tries:
        delay = retry_delay(job_try, settings.notification_retry_base_seconds)
        logger.warning("Notification %s attempt %d failed, retrying in %ds", log_id, job_try, delay)
        raise Retry(defer=delay)

    logger.error("Notification %s gave up after %d attempts: %s", log_id, job_try, result.error)
    return {"log_id": log_id, "sent": False, "error": result.error}


async def payment_reminders_job(ctx: dict) -> dict:
    """Cron job: remind subscribers of upcoming billing dates."""
    s: Services = ctx["services"]
    batch = await check_payment_reminders(s.session_factory, s.dispatcher, s.clock, s.settings)
    return batch.as_dict()


async def apply_penalties_job(ctx: dict) -> dict:
    """Cron job: add late fees to overdue pending payments."""
    s: Services = ctx["services"]
    batch = await apply_penalties(s.session_factory, s.dispatcher, s.clock, s.settings, s.state_machine)
    return batch.as_dict()


async def grace_periods_job(ctx: dict) -> dict:
    """Cron job: suspend subscriptions whose grace period expired."""
    s: Services = ctx["services"]
    batch = await check_grace_periods(s.session_factory, s.dispatcher, s.clock, s.settings, s.state_machine)
    return batch.as_dict()


class WorkerSettings:
    """ARQ worker configuration."""

    functions = [func(send_notification_job, max_tries=get_settings().notification_max_tries)]
    cron_jobs = [
        cron(payment_reminders_job, **REMINDERS_CRON),
        cron(apply_penalties_job, **PENALTIES_CRON),
        cron(grace_periods_job, **GRACE_PERIODS_CRON),
    ]
    on_startup = startup
    on_shutdown = shutdown

    redis_settings = RedisSettings.from_dsn(get_settings().redis_url)
    # Cron hours above are local billing time
    timezone = ZoneInfo(get_settings().billing_timezone)

    max_jobs = ARQ_MAX_JOBS
    job_timeout = ARQ_JOB_TIMEOUT
