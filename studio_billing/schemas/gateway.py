"""Outbound gateway payload schemas."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, field_validator


class PaymentDetail(BaseModel):
    """Authoritative payment state as reported by MercadoPago."""

    model_config = ConfigDict(extra="allow")

    id: str
    status: str
    external_reference: str | None = None
    transaction_amount: float | None = None
    currency_id: str | None = None
    date_approved: datetime | None = None

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, v):
        if isinstance(v, int):
            return str(v)
        return v
