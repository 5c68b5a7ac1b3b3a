"""FastAPI application factory: entry point for the webhook receiver.

Run with:
    uvicorn studio_billing.app:create_app --factory
"""

import logging
from contextlib import asynccontextmanager

from arq import create_pool
from arq.connections import RedisSettings
from fastapi import Depends, FastAPI
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from studio_billing.config import Settings, get_settings
from studio_billing.container import build_services
from studio_billing.db.session import get_db
from studio_billing.models import Base
from studio_billing.routers import webhooks
from studio_billing.utils import setup_logging

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    settings: Settings = app.state.settings

    arq_pool = None
    if settings.notification_queue_enabled:
        try:
            arq_pool = await create_pool(RedisSettings.from_dsn(settings.redis_url))
        except Exception as e:
            logger.warning("Redis unavailable (%s); notifications will be delivered inline", e)

    services = build_services(settings, arq_pool=arq_pool)
    app.state.services = services

    # Auto-create tables for SQLite (dev mode); PostgreSQL uses Alembic
    if settings.database_url.startswith("sqlite"):
        async with services.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    yield

    await services.aclose()
    if arq_pool is not None:
        await arq_pool.aclose()


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    setup_logging(settings.debug)

    app = FastAPI(
        title=settings.app_name,
        debug=settings.debug,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url=None,
    )
    app.state.settings = settings

    @app.get("/health")
    async def health(db: AsyncSession = Depends(get_db)):
        await db.execute(text("SELECT 1"))
        return {"status": "ok"}

    # --- Routers ---
    app.include_router(webhooks.router)

    return app
