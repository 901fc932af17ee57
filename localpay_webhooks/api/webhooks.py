"""Webhook management API endpoints.

Provides REST API for managing webhook registrations and viewing delivery
history. Authentication happens upstream; the authenticated owner is passed
in the ``X-Owner-Id`` header.
"""

from datetime import datetime
from typing import Annotated

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from pydantic import BaseModel, Field, HttpUrl, field_validator

from localpay_webhooks.webhooks.dispatcher import WebhookDispatcher
from localpay_webhooks.webhooks.events import WebhookEventType, describe_event
from localpay_webhooks.webhooks.models import DeliveryAttempt, WebhookRegistration
from localpay_webhooks.webhooks.registry import WebhookNotFoundError
from localpay_webhooks.webhooks.scheduler import DeliveryState

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


# ============================================================================
# Dependencies
# ============================================================================


def get_dispatcher(request: Request) -> WebhookDispatcher:
    """Return the dispatcher attached to the application."""
    dispatcher: WebhookDispatcher | None = getattr(request.app.state, "webhook_dispatcher", None)
    if dispatcher is None:
        raise HTTPException(status_code=503, detail="Webhook service not initialized")
    return dispatcher


def get_owner_id(x_owner_id: Annotated[str | None, Header()] = None) -> str:
    """Return the authenticated owner identifier."""
    if not x_owner_id:
        raise HTTPException(status_code=401, detail="Owner identity required")
    return x_owner_id


DispatcherDep = Annotated[WebhookDispatcher, Depends(get_dispatcher)]
OwnerDep = Annotated[str, Depends(get_owner_id)]


def _not_found(registration_id: str) -> HTTPException:
    return HTTPException(status_code=404, detail=f"Webhook {registration_id} not found")


# ============================================================================
# Request Models
# ============================================================================


class WebhookCreateRequest(BaseModel):
    """Request to register a new webhook."""

    url: HttpUrl = Field(
        ..., description="Webhook endpoint URL"
    )
    events: list[WebhookEventType] = Field(
        ..., description="Event types to subscribe to", min_length=1
    )


class WebhookUpdateRequest(BaseModel):
    """Request to update a webhook."""

    url: HttpUrl | None = Field(
        default=None, description="New URL"
    )
    events: list[WebhookEventType] | None = Field(
        default=None, description="New event subscriptions"
    )
    enabled: bool | None = Field(
        default=None, description="Enable/disable webhook"
    )

    @field_validator("events")
    @classmethod
    def events_not_empty(cls, v: list[WebhookEventType] | None) -> list[WebhookEventType] | None:
        if v is not None and not v:
            raise ValueError("at least one event type is required")
        return v


# ============================================================================
# Response Models
# ============================================================================


class WebhookResponse(BaseModel):
    """Webhook details response."""

    id: str
    owner_id: str
    url: str
    secret: str
    events: list[WebhookEventType]
    enabled: bool
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_registration(
        cls,
        registration: WebhookRegistration,
        *,
        reveal_secret: bool = False,
    ) -> "WebhookResponse":
        """Create response from a registration; the secret is masked unless revealed."""
        return cls(
            id=registration.id,
            owner_id=registration.owner_id,
            url=str(registration.url),
            secret=registration.secret if reveal_secret else registration.masked_secret(),
            events=sorted(registration.events, key=lambda e: e.value),
            enabled=registration.enabled,
            created_at=registration.created_at,
            updated_at=registration.updated_at,
        )


class DeliveryAttemptResponse(BaseModel):
    """Delivery attempt details response."""

    id: str
    event_id: str
    event_type: WebhookEventType
    status_code: int | None
    success: bool
    error: str | None
    duration_ms: int
    attempt: int
    created_at: datetime

    @classmethod
    def from_attempt(cls, attempt: DeliveryAttempt) -> "DeliveryAttemptResponse":
        return cls(
            id=attempt.id,
            event_id=attempt.event_id,
            event_type=attempt.event_type,
            status_code=attempt.status_code,
            success=attempt.success,
            error=attempt.error,
            duration_ms=attempt.duration_ms,
            attempt=attempt.attempt,
            created_at=attempt.created_at,
        )


class TestWebhookResponse(BaseModel):
    """Response from test webhook endpoint."""

    success: bool
    event_id: str
    state: DeliveryState
    attempts: int
    status_code: int | None
    error: str | None


class EventTypeResponse(BaseModel):
    """One entry of the event vocabulary."""

    type: WebhookEventType
    description: str


# ============================================================================
# Endpoints
# ============================================================================


@router.get(
    "/events",
    response_model=list[EventTypeResponse],
)
async def list_event_types() -> list[EventTypeResponse]:
    """List the event types a webhook can subscribe to."""
    return [
        EventTypeResponse(type=event_type, description=describe_event(event_type))
        for event_type in WebhookEventType
    ]


@router.get(
    "",
    response_model=list[WebhookResponse],
)
async def list_webhooks(dispatcher: DispatcherDep, owner_id: OwnerDep) -> list[WebhookResponse]:
    """List the caller's webhooks. Secrets are masked."""
    registrations = await dispatcher.registry.list_for_owner(owner_id)
    return [WebhookResponse.from_registration(r) for r in registrations]


@router.post(
    "",
    response_model=WebhookResponse,
    responses={
        201: {"description": "Webhook created"},
        422: {"description": "Invalid request"},
    },
    status_code=201,
)
async def create_webhook(
    request: WebhookCreateRequest,
    dispatcher: DispatcherDep,
    owner_id: OwnerDep,
) -> WebhookResponse:
    """Register a new webhook.

    The full signing secret is returned only in this response.
    """
    registration = await dispatcher.registry.register(
        owner_id,
        str(request.url),
        request.events,
    )
    return WebhookResponse.from_registration(registration, reveal_secret=True)


@router.patch(
    "/{webhook_id}",
    response_model=WebhookResponse,
    responses={
        404: {"description": "Webhook not found"},
    },
)
async def update_webhook(
    webhook_id: str,
    request: WebhookUpdateRequest,
    dispatcher: DispatcherDep,
    owner_id: OwnerDep,
) -> WebhookResponse:
    """Update a webhook's URL, event subscriptions or enabled flag."""
    try:
        registration = await dispatcher.registry.update(
            webhook_id,
            owner_id,
            url=str(request.url) if request.url else None,
            events=request.events,
            enabled=request.enabled,
        )
    except WebhookNotFoundError as e:
        raise _not_found(webhook_id) from e

    return WebhookResponse.from_registration(registration)


@router.delete(
    "/{webhook_id}",
    responses={
        204: {"description": "Webhook deleted"},
        404: {"description": "Webhook not found"},
    },
    status_code=204,
)
async def delete_webhook(
    webhook_id: str,
    dispatcher: DispatcherDep,
    owner_id: OwnerDep,
) -> None:
    """Delete a webhook. Its delivery history is kept."""
    try:
        await dispatcher.registry.delete(webhook_id, owner_id)
    except WebhookNotFoundError as e:
        raise _not_found(webhook_id) from e


@router.post(
    "/{webhook_id}/rotate",
    response_model=WebhookResponse,
    responses={
        404: {"description": "Webhook not found"},
    },
)
async def rotate_webhook_secret(
    webhook_id: str,
    dispatcher: DispatcherDep,
    owner_id: OwnerDep,
) -> WebhookResponse:
    """Replace a webhook with a new one carrying a fresh secret.

    The old webhook ID and secret stop working immediately.
    """
    try:
        registration = await dispatcher.registry.replace(webhook_id, owner_id)
    except WebhookNotFoundError as e:
        raise _not_found(webhook_id) from e

    return WebhookResponse.from_registration(registration, reveal_secret=True)


@router.post(
    "/{webhook_id}/test",
    response_model=TestWebhookResponse,
    responses={
        404: {"description": "Webhook not found"},
    },
)
async def test_webhook(
    webhook_id: str,
    dispatcher: DispatcherDep,
    owner_id: OwnerDep,
) -> TestWebhookResponse:
    """Send a test event to a webhook and report the final outcome."""
    try:
        machine = await dispatcher.send_test_event(webhook_id, owner_id)
    except WebhookNotFoundError as e:
        raise _not_found(webhook_id) from e

    outcome = machine.last_outcome

    logger.info(
        "webhook_tested",
        registration_id=webhook_id,
        event_id=machine.event_id,
        state=machine.state.value,
    )

    return TestWebhookResponse(
        success=machine.state is DeliveryState.SUCCESS,
        event_id=machine.event_id,
        state=machine.state,
        attempts=machine.attempt_number,
        status_code=outcome.status_code if outcome else None,
        error=outcome.error if outcome else None,
    )


@router.get(
    "/{webhook_id}/deliveries",
    response_model=list[DeliveryAttemptResponse],
    responses={
        404: {"description": "Webhook not found"},
    },
)
async def list_webhook_deliveries(
    webhook_id: str,
    dispatcher: DispatcherDep,
    owner_id: OwnerDep,
    limit: Annotated[int, Query(ge=1, le=100)] = 50,
) -> list[DeliveryAttemptResponse]:
    """List delivery attempts for a webhook, newest first."""
    try:
        await dispatcher.registry.get(webhook_id, owner_id)
    except WebhookNotFoundError as e:
        raise _not_found(webhook_id) from e

    attempts = await dispatcher.recorder.query(webhook_id, limit)
    return [DeliveryAttemptResponse.from_attempt(a) for a in attempts]
