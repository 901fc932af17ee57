"""Data models for webhook registrations and delivery records."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import UTC, datetime

from pydantic import BaseModel, Field, HttpUrl

from localpay_webhooks.webhooks.events import WebhookEventType
from localpay_webhooks.webhooks.security import generate_webhook_secret


class WebhookRegistration(BaseModel):
    """A merchant's subscription to a set of event types.

    ``id``, ``owner_id`` and ``secret`` never change after creation. Rotating
    a secret means creating a new registration.
    """

    id: str = Field(
        default_factory=lambda: f"wh_{uuid.uuid4().hex}",
        description="Unique registration identifier",
        frozen=True,
    )
    owner_id: str = Field(
        ..., description="Party that registered the webhook", min_length=1, frozen=True
    )
    url: HttpUrl = Field(
        ..., description="Endpoint receiving POST deliveries"
    )
    secret: str = Field(
        default_factory=generate_webhook_secret,
        description="Secret key for HMAC signatures",
        min_length=1,
        frozen=True,
    )
    events: set[WebhookEventType] = Field(
        ..., description="Subscribed event types", min_length=1
    )
    enabled: bool = Field(
        default=True,
        description="Whether the registration receives deliveries",
    )
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="When the registration was created",
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="When the registration was last updated",
    )

    def should_receive_event(self, event_type: WebhookEventType) -> bool:
        """Check if this registration receives an event type.

        Args:
            event_type: Event type to check.

        Returns:
            True if enabled and subscribed to the event type.
        """
        return self.enabled and event_type in self.events

    def masked_secret(self) -> str:
        """Return the secret with everything after the first 10 characters hidden."""
        return f"{self.secret[:10]}..."


class DeliveryAttempt(BaseModel):
    """One persisted delivery attempt.

    Rows are append-only and reference the registration by ID value, so
    they outlive the registration itself.
    """

    id: str = Field(
        default_factory=lambda: f"dlv_{uuid.uuid4().hex}",
        description="Unique delivery attempt identifier",
    )
    registration_id: str = Field(
        ..., description="Registration the attempt was made for"
    )
    event_id: str = Field(
        ..., description="Event that triggered the delivery"
    )
    event_type: WebhookEventType = Field(
        ..., description="Type of event"
    )
    payload: str = Field(
        ..., description="Exact serialized payload that was sent"
    )
    status_code: int | None = Field(
        default=None,
        description="HTTP status code, absent on transport failure",
    )
    success: bool = Field(
        default=False,
        description="Whether the attempt was acknowledged with 2xx",
    )
    error: str | None = Field(
        default=None,
        description="Error message if the attempt failed",
    )
    duration_ms: int = Field(
        default=0,
        description="Attempt duration in milliseconds",
        ge=0,
    )
    attempt: int = Field(
        ..., description="1-based attempt ordinal", ge=1
    )
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="When the attempt was recorded",
    )


@dataclass(frozen=True)
class DeliveryOutcome:
    """Result of a single HTTP delivery attempt."""

    success: bool
    status_code: int | None = None
    error: str | None = None
    duration_ms: int = 0

    @classmethod
    def succeeded(cls, status_code: int, duration_ms: int) -> DeliveryOutcome:
        return cls(success=True, status_code=status_code, duration_ms=duration_ms)

    @classmethod
    def failed(
        cls,
        error: str,
        duration_ms: int,
        status_code: int | None = None,
    ) -> DeliveryOutcome:
        return cls(
            success=False,
            status_code=status_code,
            error=error,
            duration_ms=duration_ms,
        )
