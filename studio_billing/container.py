"""Service container: everything a process needs, built once at startup."""

import logging
from dataclasses import dataclass

import httpx
from arq import ArqRedis
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from studio_billing.clock import Clock, SystemClock
from studio_billing.config import Settings
from studio_billing.db.session import create_engine, create_session_factory
from studio_billing.services.email_service import ResendEmailSender
from studio_billing.services.gateway_client import MercadoPagoClient, PaymentGateway, build_http_client
from studio_billing.services.notification_service import NotificationDispatcher
from studio_billing.services.subscription_state import DunningPolicy, SubscriptionStateMachine
from studio_billing.services.webhook_service import WebhookIngestor

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    clock: Clock
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    http_client: httpx.AsyncClient
    gateway: PaymentGateway
    dispatcher: NotificationDispatcher
    state_machine: SubscriptionStateMachine
    ingestor: WebhookIngestor

    async def aclose(self) -> None:
        await self.http_client.aclose()
        await self.engine.dispose()
        logger.info("Services closed")


def build_services(
    settings: Settings,
    clock: Clock | None = None,
    arq_pool: ArqRedis | None = None,
) -> Services:
    """Wire the billing core. The caller owns the result and must ``aclose()`` it."""
    clock = clock or SystemClock()

    engine = create_engine(settings.database_url, echo=settings.debug)
    session_factory = create_session_factory(engine)
    http_client = build_http_client()
    gateway = MercadoPagoClient(
        http_client,
        access_token=settings.mercadopago_access_token,
        base_url=settings.mercadopago_api_url,
        timeout=settings.gateway_timeout_seconds,
    )
    dispatcher = NotificationDispatcher(
        session_factory,
        sender=ResendEmailSender(settings.resend_api_key, settings.email_from, settings.email_reply_to or None),
        clock=clock,
        arq_pool=arq_pool if settings.notification_queue_enabled else None,
        app_url=settings.app_url,
    )
    state_machine = SubscriptionStateMachine(DunningPolicy.from_settings(settings))
    ingestor = WebhookIngestor(
        session_factory,
        gateway=gateway,
        notifier=dispatcher,
        clock=clock,
        state_machine=state_machine,
    )

    logger.info("Services built (database=%s, queue=%s)", engine.url.get_backend_name(), arq_pool is not None)
    return Services(
        settings=settings,
        clock=clock,
        engine=engine,
        session_factory=session_factory,
        http_client=http_client,
        gateway=gateway,
        dispatcher=dispatcher,
        state_machine=state_machine,
        ingestor=ingestor,
    )
