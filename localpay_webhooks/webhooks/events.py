"""Webhook event types and the event envelope.

This module defines the closed vocabulary of events merchants can subscribe
to and the envelope that carries one occurrence of an event to every
subscribed endpoint.
"""

import json
import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, JsonValue

# Version of the event vocabulary and envelope layout
WEBHOOK_API_VERSION = "1.0"


class WebhookEventType(str, Enum):
    """Supported webhook event types.

    Events are organized by category:
    - payment.*: Payment lifecycle events
    - wallet.*: Consumer wallet events
    - merchant.*: Merchant account events
    - user.*: User lifecycle events
    - voucher.*: Voucher events
    """

    # Payment events
    PAYMENT_COMPLETED = "payment.completed"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_REFUNDED = "payment.refunded"

    # Wallet events
    WALLET_CHARGED = "wallet.charged"
    WALLET_LOW_BALANCE = "wallet.low_balance"

    # Merchant events
    MERCHANT_SETTLEMENT = "merchant.settlement"

    # User events
    USER_REGISTERED = "user.registered"
    USER_VERIFIED = "user.verified"

    # Voucher events
    VOUCHER_REDEEMED = "voucher.redeemed"
    VOUCHER_EXPIRED = "voucher.expired"


EVENT_DESCRIPTIONS: dict[WebhookEventType, str] = {
    WebhookEventType.PAYMENT_COMPLETED: "Triggered when a payment is successfully completed",
    WebhookEventType.PAYMENT_FAILED: "Triggered when a payment fails",
    WebhookEventType.PAYMENT_REFUNDED: "Triggered when a payment is refunded",
    WebhookEventType.WALLET_CHARGED: "Triggered when a wallet is charged",
    WebhookEventType.WALLET_LOW_BALANCE: "Triggered when wallet balance falls below threshold",
    WebhookEventType.MERCHANT_SETTLEMENT: "Triggered when a settlement is processed",
    WebhookEventType.USER_REGISTERED: "Triggered when a new user registers",
    WebhookEventType.USER_VERIFIED: "Triggered when a user completes verification",
    WebhookEventType.VOUCHER_REDEEMED: "Triggered when a voucher is redeemed",
    WebhookEventType.VOUCHER_EXPIRED: "Triggered when a voucher expires",
}


def describe_event(event_type: WebhookEventType) -> str:
    """Return the human-readable description of an event type."""
    return EVENT_DESCRIPTIONS.get(event_type, "No description available")


def _format_timestamp(value: datetime) -> str:
    return value.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class EventEnvelope(BaseModel):
    """One emitted occurrence of a domain event.

    The envelope is immutable: every registration that receives the event
    gets the same ID and the same serialized bytes. The ``data`` body is
    opaque to the delivery core.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(
        default_factory=lambda: f"evt_{uuid.uuid4().hex}",
        description="Unique event identifier",
    )
    event: WebhookEventType = Field(
        ..., description="Event type"
    )
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="When the event was emitted",
    )
    data: dict[str, JsonValue] = Field(
        default_factory=dict,
        description="Event-specific data",
    )

    def to_json_dict(self) -> dict[str, Any]:
        """Convert to the wire representation.

        Returns:
            Dictionary with ISO-8601 timestamp.
        """
        return {
            "id": self.id,
            "event": self.event.value,
            "timestamp": _format_timestamp(self.timestamp),
            "data": self.data,
        }

    def to_bytes(self) -> bytes:
        """Serialize to the exact UTF-8 JSON bytes that are signed and sent."""
        return json.dumps(
            self.to_json_dict(),
            separators=(",", ":"),
            ensure_ascii=False,
        ).encode("utf-8")


def create_webhook_event(
    event_type: WebhookEventType,
    data: dict[str, Any],
    *,
    event_id: str | None = None,
    timestamp: datetime | None = None,
) -> EventEnvelope:
    """Create an event envelope.

    Args:
        event_type: Type of event.
        data: Event-specific data, wrapped unmodified.
        event_id: Optional custom event ID.
        timestamp: Optional custom timestamp.

    Returns:
        EventEnvelope ready for delivery.
    """
    fields: dict[str, Any] = {"event": event_type, "data": data}
    if event_id:
        fields["id"] = event_id
    if timestamp:
        fields["timestamp"] = timestamp
    return EventEnvelope(**fields)
