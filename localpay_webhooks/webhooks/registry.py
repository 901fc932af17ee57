"""Webhook registration and management.

Every mutating operation is scoped to the owning party: a registration
that exists but belongs to someone else is reported exactly like one that
does not exist.
"""

from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any

import structlog

from localpay_webhooks.webhooks.events import WebhookEventType
from localpay_webhooks.webhooks.models import WebhookRegistration
from localpay_webhooks.webhooks.storage import WebhookStore

logger = structlog.get_logger(__name__)


class WebhookNotFoundError(Exception):
    """No registration matches the given ID for the given owner."""

    def __init__(self, registration_id: str) -> None:
        super().__init__(f"Webhook {registration_id} not found")
        self.registration_id = registration_id


class WebhookRegistry:
    """Owns the set of webhook subscriptions.

    Provides CRUD operations for registrations and the subscription lookup
    used by the dispatcher.
    """

    def __init__(self, store: WebhookStore) -> None:
        """Initialize the registry.

        Args:
            store: Record store holding registrations.
        """
        self._store = store
        self._logger = logger.bind(component="webhook_registry")

    async def register(
        self,
        owner_id: str,
        url: str,
        events: Iterable[WebhookEventType | str],
    ) -> WebhookRegistration:
        """Register a new webhook.

        Args:
            owner_id: Party registering the webhook.
            url: Endpoint URL.
            events: Event types to subscribe to (at least one).

        Returns:
            Created registration, including its secret.

        Raises:
            pydantic.ValidationError: If the URL or event set is invalid.
        """
        registration = WebhookRegistration(
            owner_id=owner_id,
            url=url,  # type: ignore[arg-type]
            events=set(events),  # type: ignore[arg-type]
        )

        await self._store.save_registration(registration)

        self._logger.info(
            "webhook_registered",
            registration_id=registration.id,
            owner_id=owner_id,
            events=sorted(e.value for e in registration.events),
        )

        return registration

    async def get(self, registration_id: str, owner_id: str) -> WebhookRegistration:
        """Get a registration owned by ``owner_id``.

        Raises:
            WebhookNotFoundError: If missing or owned by someone else.
        """
        registration = await self._store.get_registration(registration_id)
        if registration is None or registration.owner_id != owner_id:
            raise WebhookNotFoundError(registration_id)
        return registration

    async def update(
        self,
        registration_id: str,
        owner_id: str,
        *,
        url: str | None = None,
        events: Iterable[WebhookEventType | str] | None = None,
        enabled: bool | None = None,
    ) -> WebhookRegistration:
        """Update a registration.

        Only the URL, event set and enabled flag can change.

        Args:
            registration_id: Registration identifier.
            owner_id: Party that must own the registration.
            url: New URL.
            events: New event subscriptions.
            enabled: New enabled state.

        Returns:
            Updated registration.

        Raises:
            WebhookNotFoundError: If missing or owned by someone else.
            pydantic.ValidationError: If the new values are invalid.
        """
        registration = await self.get(registration_id, owner_id)

        changes: dict[str, Any] = {}
        if url is not None:
            changes["url"] = url
        if events is not None:
            changes["events"] = set(events)
        if enabled is not None:
            changes["enabled"] = enabled

        if not changes:
            return registration

        # Re-validate so a bad URL or empty event set is rejected
        updated = WebhookRegistration.model_validate(
            {
                **registration.model_dump(),
                **changes,
                "updated_at": datetime.now(UTC),
            }
        )

        await self._store.save_registration(updated)

        self._logger.info(
            "webhook_updated",
            registration_id=registration_id,
            fields=sorted(changes),
        )

        return updated

    async def delete(self, registration_id: str, owner_id: str) -> None:
        """Delete a registration.

        Past delivery records are kept.

        Raises:
            WebhookNotFoundError: If missing or owned by someone else.
        """
        deleted = await self._store.delete_registration(registration_id, owner_id)
        if not deleted:
            raise WebhookNotFoundError(registration_id)

        self._logger.info("webhook_deleted", registration_id=registration_id)

    async def replace(self, registration_id: str, owner_id: str) -> WebhookRegistration:
        """Rotate a registration's secret by replacing the registration.

        A new registration with a fresh ID and secret takes over the URL,
        event set and enabled flag; the old one is deleted and its secret
        stops being used.

        Raises:
            WebhookNotFoundError: If missing or owned by someone else.
        """
        current = await self.get(registration_id, owner_id)

        replacement = WebhookRegistration(
            owner_id=owner_id,
            url=current.url,
            events=current.events,
            enabled=current.enabled,
        )
        await self._store.save_registration(replacement)
        await self.delete(registration_id, owner_id)

        self._logger.info(
            "webhook_secret_rotated",
            old_registration_id=registration_id,
            registration_id=replacement.id,
        )

        return replacement

    async def list_for_owner(self, owner_id: str) -> list[WebhookRegistration]:
        """List all registrations owned by ``owner_id``."""
        return await self._store.list_registrations(owner_id=owner_id)

    async def find_matching(
        self,
        event_type: WebhookEventType,
        owner_id: str | None = None,
    ) -> list[WebhookRegistration]:
        """Get enabled registrations subscribed to an event type.

        Args:
            event_type: Event type.
            owner_id: Restrict to one owner's registrations.

        Returns:
            Matching registrations.
        """
        registrations = await self._store.list_registrations(
            owner_id=owner_id,
            enabled_only=True,
        )
        return [r for r in registrations if r.should_receive_event(event_type)]
