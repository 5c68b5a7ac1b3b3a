"""Inbound MercadoPago webhook schemas and event-kind decoding."""

from enum import StrEnum

from pydantic import BaseModel, ConfigDict, field_validator


class EventKind(StrEnum):
    PAYMENT_CREATED = "payment.created"
    PAYMENT_UPDATED = "payment.updated"
    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_UPDATED = "subscription.updated"
    UNHANDLED = "unhandled"

    @classmethod
    def decode(cls, event_type: str, action: str) -> "EventKind":
        """Map a (type, action) pair to a closed event kind.

        MercadoPago sends actions both bare ("updated") and prefixed
        ("payment.updated"); both decode to the same kind.
        """
        action = action.strip()
        prefix = f"{event_type}."
        if action.startswith(prefix):
            action = action[len(prefix):]
        try:
            return cls(f"{event_type}.{action}")
        except ValueError:
            return cls.UNHANDLED


class WebhookData(BaseModel):
    id: str

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, v):
        # Some notification versions send the resource id as a number
        if isinstance(v, int):
            return str(v)
        return v


class WebhookNotification(BaseModel):
    """Notification body. It only points at a resource; truth comes from the gateway."""

    model_config = ConfigDict(extra="allow")

    id: int
    type: str
    action: str
    data: WebhookData
    api_version: str | None = None
    date_created: str | None = None
    live_mode: bool | None = None
    user_id: str | int | None = None

    @property
    def event_id(self) -> str:
        return str(self.id)

    @property
    def kind(self) -> EventKind:
        return EventKind.decode(self.type, self.action)

    @property
    def event_type(self) -> str:
        """Ledger label: the decoded kind, or the raw pair for unhandled events."""
        kind = self.kind
        if kind is EventKind.UNHANDLED:
            return f"{self.type}.{self.action}"
        return kind.value
