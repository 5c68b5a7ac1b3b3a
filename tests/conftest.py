"""
Pytest configuration for studio-billing tests.
Every test gets its own SQLite file database, a frozen clock and a fake gateway.
"""

import itertools
import os

# Settings are read at import time by the worker module - must be set before any imports
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("NOTIFICATION_QUEUE_ENABLED", "false")

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy import select

from studio_billing.clock import FrozenClock
from studio_billing.config import Settings
from studio_billing.db.session import create_engine, create_session_factory
from studio_billing.models import (
    Base,
    NotificationLog,
    Payment,
    PaymentStatus,
    Subscription,
    SubscriptionPlan,
    SubscriptionStatus,
    User,
    WebhookEvent,
)
from studio_billing.schemas.gateway import PaymentDetail
from studio_billing.schemas.webhook import WebhookNotification
from studio_billing.services.notification_service import NotificationDispatcher
from studio_billing.services.subscription_state import SubscriptionStateMachine
from studio_billing.services.webhook_service import WebhookIngestor

T0 = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)
WEBHOOK_SECRET = "test-webhook-secret"


class FakeGateway:
    """In-memory stand-in for MercadoPagoClient."""

    def __init__(self):
        self.payments: dict[str, PaymentDetail] = {}
        self.calls: list[str] = []
        self.before_fetch = None  # optional async hook run on every fetch
        self.error: Exception | None = None

    def add(
        self,
        payment_id: str,
        status: str,
        user_id: int,
        plan_id: str = "basic-monthly",
        amount: float = 999000,
        external_reference: str | None = None,
    ) -> PaymentDetail:
        detail = PaymentDetail(
            id=payment_id,
            status=status,
            external_reference=external_reference if external_reference is not None else f"{user_id}-{plan_id}",
            transaction_amount=amount,
            currency_id="CLP",
            date_approved=T0 if status == "approved" else None,
        )
        self.payments[payment_id] = detail
        return detail

    async def fetch_payment_detail(self, payment_id: str) -> PaymentDetail:
        self.calls.append(payment_id)
        if self.before_fetch is not None:
            await self.before_fetch()
        if self.error is not None:
            raise self.error
        return self.payments[payment_id]


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        debug=True,
        database_url=f"sqlite+aiosqlite:///{tmp_path}/billing.db",
        mercadopago_webhook_secret=WEBHOOK_SECRET,
        billing_timezone="UTC",
        notification_queue_enabled=False,
        app_url="https://studio.test",
    )


@pytest_asyncio.fixture
async def engine(settings):
    engine = create_engine(settings.database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(T0)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def sender() -> AsyncMock:
    return AsyncMock(return_value=True)


@pytest.fixture
def dispatcher(session_factory, clock, sender) -> NotificationDispatcher:
    return NotificationDispatcher(session_factory, clock=clock, sender=sender, app_url="https://studio.test")


@pytest.fixture
def state_machine() -> SubscriptionStateMachine:
    return SubscriptionStateMachine()


@pytest.fixture
def ingestor(session_factory, gateway, dispatcher, clock, state_machine) -> WebhookIngestor:
    return WebhookIngestor(session_factory, gateway, dispatcher, clock=clock, state_machine=state_machine)


@pytest.fixture
def make_event():
    counter = itertools.count(1000)

    def _make(payment_id: str, event_id: int | None = None, type: str = "payment", action: str = "payment.updated"):
        return WebhookNotification.model_validate(
            {
                "id": event_id if event_id is not None else next(counter),
                "type": type,
                "action": action,
                "data": {"id": payment_id},
                "live_mode": False,
            }
        )

    return _make


@pytest.fixture
def make_subscriber(session_factory, clock):
    counter = itertools.count(1)

    async def _make(
        status: str = SubscriptionStatus.ACTIVE,
        grace_period_end: datetime | None = None,
        next_billing_date: datetime | None = None,
        plan_id: str = "basic-monthly",
    ) -> Subscription:
        n = next(counter)
        now = clock.now()
        async with session_factory() as db:
            if await db.get(SubscriptionPlan, plan_id) is None:
                db.add(SubscriptionPlan(id=plan_id, name="Plan Básico", price=999000, interval="monthly"))
            user = User(email=f"user{n}@example.com", name=f"User {n}", created_at=now)
            db.add(user)
            await db.flush()
            subscription = Subscription(
                user_id=user.id,
                plan_id=plan_id,
                status=status,
                grace_period_end=grace_period_end,
                current_period_start=now - timedelta(days=30),
                current_period_end=now,
                next_billing_date=next_billing_date or now + timedelta(days=20),
                created_at=now,
                updated_at=now,
            )
            db.add(subscription)
            await db.commit()
            return subscription

    return _make


@pytest.fixture
def add_payment(session_factory, clock):
    async def _add(
        subscription: Subscription,
        status: str = PaymentStatus.PENDING,
        amount: int = 999000,
        due_date: datetime | None = None,
        created_at: datetime | None = None,
        mercadopago_id: str | None = None,
        penalty_fee: int = 0,
    ) -> Payment:
        now = clock.now()
        async with session_factory() as db:
            payment = Payment(
                user_id=subscription.user_id,
                subscription_id=subscription.id,
                mercadopago_id=mercadopago_id,
                amount=amount,
                penalty_fee=penalty_fee,
                total_amount=amount + penalty_fee,
                status=status,
                due_date=due_date or now,
                created_at=created_at or now,
                updated_at=now,
            )
            db.add(payment)
            await db.commit()
            return payment

    return _add


@pytest.fixture
def fetch(session_factory):
    """Read rows back in a fresh session."""

    class _Fetch:
        async def subscription(self, subscription_id: int) -> Subscription:
            async with session_factory() as db:
                return await db.get(Subscription, subscription_id)

        async def payment(self, payment_id: int) -> Payment:
            async with session_factory() as db:
                return await db.get(Payment, payment_id)

        async def payments(self, subscription_id: int) -> list[Payment]:
            async with session_factory() as db:
                result = await db.execute(
                    select(Payment).where(Payment.subscription_id == subscription_id).order_by(Payment.id)
                )
                return list(result.scalars().all())

        async def webhook_event(self, event_id: str) -> WebhookEvent | None:
            async with session_factory() as db:
                result = await db.execute(select(WebhookEvent).where(WebhookEvent.event_id == event_id))
                return result.scalar_one_or_none()

        async def notifications(self, user_id: int | None = None) -> list[NotificationLog]:
            async with session_factory() as db:
                stmt = select(NotificationLog).order_by(NotificationLog.id)
                if user_id is not None:
                    stmt = stmt.where(NotificationLog.user_id == user_id)
                result = await db.execute(stmt)
                return list(result.scalars().all())

    return _Fetch()
