"""Seed script: default subscription plans and an optional demo subscriber.

Usage:
    python -m studio_billing.seed
    studio-billing seed --demo
"""

import asyncio
import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from studio_billing.models.plan import SubscriptionPlan
from studio_billing.models.subscription import Subscription, SubscriptionStatus
from studio_billing.models.user import User
from studio_billing.services.subscription_state import add_months

logger = logging.getLogger(__name__)

DEFAULT_PLANS = [
    {
        "id": "basic-monthly",
        "name": "Plan Básico",
        "description": "Monthly plan with the essential studio features",
        "price": 999000,
        "interval": "monthly",
    },
    {
        "id": "pro-monthly",
        "name": "Plan Pro",
        "description": "Monthly plan with every advanced feature",
        "price": 1999000,
        "interval": "monthly",
    },
]

DEMO_EMAIL = "demo@localhost"


async def seed_plans(session_factory: async_sessionmaker[AsyncSession]) -> list[str]:
    """Insert the default plans that do not exist yet. Returns the ids created."""
    created = []
    async with session_factory() as db:
        for data in DEFAULT_PLANS:
            if await db.get(SubscriptionPlan, data["id"]) is not None:
                continue
            db.add(SubscriptionPlan(is_active=True, **data))
            created.append(data["id"])
        await db.commit()
    logger.info("Seeded plans: %s", created or "none (already present)")
    return created


async def seed_demo_subscriber(session_factory: async_sessionmaker[AsyncSession], now: datetime) -> int:
    """Create a demo user on the basic plan, active for one billing period."""
    async with session_factory() as db:
        result = await db.execute(select(User).where(User.email == DEMO_EMAIL))
        user = result.scalar_one_or_none()
        if user is not None:
            logger.info("Demo user already exists (id=%s)", user.id)
            return user.id

        user = User(email=DEMO_EMAIL, name="Demo Subscriber", created_at=now)
        db.add(user)
        await db.flush()

        period_end = add_months(now, 1)
        db.add(
            Subscription(
                user_id=user.id,
                plan_id=DEFAULT_PLANS[0]["id"],
                status=SubscriptionStatus.ACTIVE,
                current_period_start=now,
                current_period_end=period_end,
                next_billing_date=period_end,
                created_at=now,
                updated_at=now,
            )
        )
        await db.commit()
        logger.info("Demo user created (id=%s), external_reference %s-%s", user.id, user.id, DEFAULT_PLANS[0]["id"])
        return user.id


async def main():
    # Ensure .env is loaded before importing settings
    from dotenv import load_dotenv
    load_dotenv()

    from studio_billing.config import get_settings
    from studio_billing.db.session import create_engine, create_session_factory
    from studio_billing.models import Base

    engine = create_engine(get_settings().database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        created = await seed_plans(create_session_factory(engine))
        print(f"Plans created: {', '.join(created) or 'none (already present)'}")
    finally:
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
