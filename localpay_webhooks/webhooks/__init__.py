"""Webhook notification system for merchant integrations.

This module provides:
- WebhookEventType / EventEnvelope: Event vocabulary and payload envelope
- WebhookRegistry: Owner-scoped registration management
- DeliveryExecutor: Single signed HTTP delivery attempt
- RetryScheduler: Bounded fixed-delay retry state machine
- WebhookDispatcher: Event fan-out entry point
- DeliveryRecorder: Append-only delivery history
- HMAC signature generation and verification
"""

from localpay_webhooks.webhooks.dispatcher import WebhookDispatcher
from localpay_webhooks.webhooks.events import (
    EVENT_DESCRIPTIONS,
    EventEnvelope,
    WebhookEventType,
    create_webhook_event,
)
from localpay_webhooks.webhooks.executor import DeliveryExecutor
from localpay_webhooks.webhooks.models import (
    DeliveryAttempt,
    DeliveryOutcome,
    WebhookRegistration,
)
from localpay_webhooks.webhooks.recorder import DeliveryRecorder
from localpay_webhooks.webhooks.registry import WebhookNotFoundError, WebhookRegistry
from localpay_webhooks.webhooks.scheduler import (
    DEFAULT_RETRY_POLICY,
    DeliveryState,
    DeliveryStateMachine,
    InvalidTransitionError,
    RetryPolicy,
    RetryScheduler,
)
from localpay_webhooks.webhooks.security import (
    generate_signature,
    generate_webhook_secret,
    verify_from_headers,
    verify_signature,
)
from localpay_webhooks.webhooks.storage import (
    InMemoryWebhookStore,
    SQLiteWebhookStore,
    TransientStoreError,
    WebhookStore,
)

__all__ = [
    # Events
    "EVENT_DESCRIPTIONS",
    "EventEnvelope",
    "WebhookEventType",
    "create_webhook_event",
    # Models
    "DeliveryAttempt",
    "DeliveryOutcome",
    "WebhookRegistration",
    # Storage
    "InMemoryWebhookStore",
    "SQLiteWebhookStore",
    "TransientStoreError",
    "WebhookStore",
    # Registry
    "WebhookNotFoundError",
    "WebhookRegistry",
    # Delivery
    "DEFAULT_RETRY_POLICY",
    "DeliveryExecutor",
    "DeliveryRecorder",
    "DeliveryState",
    "DeliveryStateMachine",
    "InvalidTransitionError",
    "RetryPolicy",
    "RetryScheduler",
    "WebhookDispatcher",
    # Security
    "generate_signature",
    "generate_webhook_secret",
    "verify_from_headers",
    "verify_signature",
]
