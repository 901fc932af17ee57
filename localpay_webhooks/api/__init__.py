"""FastAPI surface for webhook management.

This module contains:
- Webhook registration, rotation, test and delivery-history endpoints
- Application factory
"""

from localpay_webhooks.api.routes import ErrorResponse, create_app
from localpay_webhooks.api.webhooks import (
    DeliveryAttemptResponse,
    WebhookCreateRequest,
    WebhookResponse,
    WebhookUpdateRequest,
    router,
)

__all__ = [
    "DeliveryAttemptResponse",
    "ErrorResponse",
    "WebhookCreateRequest",
    "WebhookResponse",
    "WebhookUpdateRequest",
    "create_app",
    "router",
]
