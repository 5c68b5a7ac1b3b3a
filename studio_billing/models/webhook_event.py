"""WebhookEvent model: the idempotency ledger for inbound gateway notifications."""

from datetime import datetime

from sqlalchemy import Boolean, Integer, JSON, String
from sqlalchemy.orm import Mapped, mapped_column

from studio_billing.clock import now_utc
from .base import Base, UTCDateTime


class WebhookEvent(Base):
    __tablename__ = "webhook_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    data: Mapped[dict] = mapped_column(JSON, nullable=False)
    # Flips to True only after the handler completed without error
    processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=now_utc)
    processed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
