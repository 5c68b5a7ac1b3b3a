"""Notification dispatcher: best-effort side channel for billing email.

``notify`` never raises: a notification that cannot be logged, queued or sent
is reported in the returned result and in the logs, and nothing that was
already committed is rolled back. With an arq pool configured, delivery runs
in the worker's ``send_notification_job`` with its own retry/backoff; without
one it happens inline.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from arq import ArqRedis
from jinja2 import Environment, FileSystemLoader
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from studio_billing.clock import Clock, SystemClock
from studio_billing.models.notification_log import NotificationLog, NotificationStatus

logger = logging.getLogger(__name__)

EmailSender = Callable[[str, str, str], Awaitable[bool]]

# Load email templates
_template_dir = Path(__file__).parent.parent / "templates" / "email"
_jinja_env = Environment(loader=FileSystemLoader(str(_template_dir)), autoescape=True)


@dataclass(frozen=True)
class NotificationResult:
    success: bool
    error: str | None = None
    log_id: int | None = None


def retry_delay(job_try: int, base_seconds: int) -> int:
    """Exponential backoff: base, 2*base, 4*base, ..."""
    return base_seconds * 2 ** max(0, job_try - 1)


def render_template(template: str, context: dict[str, Any]) -> str:
    return _jinja_env.get_template(f"{template}.html").render(**context)


class NotificationDispatcher:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        sender: EmailSender,
        clock: Clock | None = None,
        arq_pool: ArqRedis | None = None,
        app_url: str = "",
    ):
        self._session_factory = session_factory
        self._clock = clock or SystemClock()
        self._sender = sender
        self._arq_pool = arq_pool
        self._app_url = app_url

    async def notify(
        self,
        user_id: int,
        type: str,
        recipient: str,
        subject: str,
        template: str,
        metadata: dict[str, Any],
    ) -> NotificationResult:
        """Record and dispatch one notification. Never raises."""
        try:
            log_id = await self._record(user_id, type, recipient, subject, template, metadata)
        except Exception as e:
            logger.error("Could not log %s notification for user %s: %s", type, user_id, e, exc_info=True)
            return NotificationResult(success=False, error=str(e))

        if self._arq_pool is not None:
            try:
                await self._arq_pool.enqueue_job("send_notification_job", log_id)
                logger.info("Queued %s notification %s for %s", type, log_id, recipient)
                return NotificationResult(success=True, log_id=log_id)
            except Exception as e:
                logger.error("Could not queue notification %s: %s", log_id, e)
                await self._mark(log_id, NotificationStatus.FAILED, error=f"queue: {e}")
                return NotificationResult(success=False, error=str(e), log_id=log_id)

        return await self.deliver(log_id)

    async def deliver(self, log_id: int) -> NotificationResult:
        """Render and send a logged notification. Safe to call again after success."""
        try:
            async with self._session_factory() as db:
                result = await db.execute(select(NotificationLog).where(NotificationLog.id == log_id))
                entry = result.scalar_one_or_none()
                if entry is None:
                    logger.error("Notification %s not found", log_id)
                    return NotificationResult(success=False, error="not found", log_id=log_id)
                if entry.status == NotificationStatus.SENT:
                    return NotificationResult(success=True, log_id=log_id)

                html_body = render_template(
                    entry.template,
                    {**entry.details, "subject": entry.subject, "app_url": self._app_url},
                )
                sent = await self._sender(entry.recipient, entry.subject, html_body)

                entry.attempts += 1
                if sent:
                    entry.status = NotificationStatus.SENT
                    entry.sent_at = self._clock.now()
                    entry.error = None
                else:
                    entry.status = NotificationStatus.FAILED
                    entry.error = "Email delivery failed"
                await db.commit()
        except Exception as e:
            logger.error("Notification %s delivery error: %s", log_id, e, exc_info=True)
            await self._mark(log_id, NotificationStatus.FAILED, error=str(e))
            return NotificationResult(success=False, error=str(e), log_id=log_id)

        if not sent:
            logger.warning("Notification %s to %s was not delivered", log_id, entry.recipient)
            return NotificationResult(success=False, error="Email delivery failed", log_id=log_id)
        return NotificationResult(success=True, log_id=log_id)

    async def _record(
        self,
        user_id: int,
        type: str,
        recipient: str,
        subject: str,
        template: str,
        metadata: dict[str, Any],
    ) -> int:
        async with self._session_factory() as db:
            entry = NotificationLog(
                user_id=user_id,
                type=type,
                recipient=recipient,
                subject=subject,
                template=template,
                details=metadata,
                status=NotificationStatus.QUEUED,
                created_at=self._clock.now(),
            )
            db.add(entry)
            await db.commit()
            return entry.id

    async def _mark(self, log_id: int, status: NotificationStatus, error: str | None = None) -> None:
        try:
            async with self._session_factory() as db:
                result = await db.execute(select(NotificationLog).where(NotificationLog.id == log_id))
                entry = result.scalar_one_or_none()
                if entry is not None:
                    entry.status = status
                    entry.error = error
                    await db.commit()
        except Exception as e:
            logger.error("Could not update notification %s: %s", log_id, e)
