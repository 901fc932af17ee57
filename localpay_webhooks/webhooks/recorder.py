"""Append-only delivery history."""

import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from localpay_webhooks.webhooks.events import WebhookEventType
from localpay_webhooks.webhooks.models import DeliveryAttempt, DeliveryOutcome
from localpay_webhooks.webhooks.storage import TransientStoreError, WebhookStore

logger = structlog.get_logger(__name__)


class DeliveryRecorder:
    """Persists one row per delivery attempt and serves delivery history.

    Rows are only ever inserted. Concurrent appends from independent
    deliveries need no coordination beyond what the store provides.
    """

    def __init__(self, store: WebhookStore) -> None:
        self._store = store
        self._logger = logger.bind(component="delivery_recorder")

    async def append(
        self,
        registration_id: str,
        event_type: WebhookEventType,
        payload: bytes | str,
        outcome: DeliveryOutcome,
        attempt_number: int,
        *,
        event_id: str,
    ) -> DeliveryAttempt:
        """Record a delivery attempt.

        Args:
            registration_id: Registration the attempt was made for.
            event_type: Type of event delivered.
            payload: Serialized payload that was sent.
            outcome: Result of the attempt.
            attempt_number: 1-based ordinal within the (event, registration) pair.
            event_id: Event identifier.

        Returns:
            The persisted record.
        """
        record = DeliveryAttempt(
            registration_id=registration_id,
            event_id=event_id,
            event_type=event_type,
            payload=payload.decode("utf-8") if isinstance(payload, bytes) else payload,
            status_code=outcome.status_code,
            success=outcome.success,
            error=outcome.error,
            duration_ms=outcome.duration_ms,
            attempt=attempt_number,
        )

        await self._insert(record)

        self._logger.debug(
            "delivery_recorded",
            delivery_id=record.id,
            registration_id=registration_id,
            event_id=event_id,
            attempt=attempt_number,
            success=outcome.success,
        )

        return record

    @retry(
        retry=retry_if_exception_type(TransientStoreError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.05, min=0.05, max=1),
        reraise=True,
    )
    async def _insert(self, record: DeliveryAttempt) -> None:
        await self._store.append_delivery(record)

    async def query(self, registration_id: str, limit: int = 50) -> list[DeliveryAttempt]:
        """List delivery attempts for a registration, newest first.

        Args:
            registration_id: Registration identifier.
            limit: Maximum results.

        Returns:
            List of delivery attempts.
        """
        return await self._store.list_deliveries(registration_id, limit=limit)
