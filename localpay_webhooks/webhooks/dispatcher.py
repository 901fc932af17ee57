"""Webhook event dispatcher.

Entry point for domain code: ``emit`` finds the registrations subscribed
to an event and runs one retry sequence per registration.
"""

import asyncio
from typing import Any

import structlog

from localpay_webhooks.webhooks.events import (
    EventEnvelope,
    WebhookEventType,
    create_webhook_event,
)
from localpay_webhooks.webhooks.executor import DeliveryExecutor
from localpay_webhooks.webhooks.models import WebhookRegistration
from localpay_webhooks.webhooks.recorder import DeliveryRecorder
from localpay_webhooks.webhooks.registry import WebhookRegistry
from localpay_webhooks.webhooks.scheduler import (
    DEFAULT_RETRY_POLICY,
    AttemptExecutor,
    DeliveryStateMachine,
    RetryPolicy,
    RetryScheduler,
    SleepFunc,
)

logger = structlog.get_logger(__name__)


class WebhookDispatcher:
    """Dispatches events to registered endpoints.

    Features:
    - Fan-out of one envelope (same ID, same bytes) to every match
    - Independent retry sequence per registration
    - Fire-and-forget by default, with tracked background tasks
    - Delivery failures never reach the emitting caller
    """

    def __init__(
        self,
        registry: WebhookRegistry,
        recorder: DeliveryRecorder,
        *,
        executor: AttemptExecutor | None = None,
        policy: RetryPolicy = DEFAULT_RETRY_POLICY,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        """Initialize the dispatcher.

        Args:
            registry: Registration lookup.
            recorder: Delivery history.
            executor: Single-attempt executor (a DeliveryExecutor if not provided).
            policy: Retry policy for every sequence.
            sleep: Coroutine used to wait between attempts.
        """
        self._registry = registry
        self._recorder = recorder
        self._executor = executor or DeliveryExecutor()
        self._scheduler = RetryScheduler(
            self._executor,
            recorder,
            policy=policy,
            sleep=sleep,
        )
        self._background_tasks: set[asyncio.Task[DeliveryStateMachine]] = set()
        self._logger = logger.bind(component="webhook_dispatcher")

    @property
    def registry(self) -> WebhookRegistry:
        return self._registry

    @property
    def recorder(self) -> DeliveryRecorder:
        return self._recorder

    @property
    def pending_count(self) -> int:
        """Number of delivery sequences still running in the background."""
        return len(self._background_tasks)

    async def emit(
        self,
        event_type: WebhookEventType | str,
        data: dict[str, Any],
        owner_id: str | None = None,
        *,
        wait: bool = False,
    ) -> None:
        """Emit an event to all subscribed, enabled registrations.

        Args:
            event_type: Type of event, as an enum member or its wire tag.
            data: Event data, passed through unmodified.
            owner_id: Only deliver to this owner's registrations.
            wait: If True, wait for every delivery sequence to finish.
        """
        try:
            event_type = WebhookEventType(event_type)
        except ValueError:
            self._logger.error(
                "unknown_event_type",
                event_type=str(event_type),
                owner_id=owner_id,
            )
            return

        try:
            registrations = await self._registry.find_matching(event_type, owner_id)
        except Exception as e:
            self._logger.error(
                "webhook_lookup_failed",
                event_type=event_type.value,
                owner_id=owner_id,
                error=str(e),
            )
            return

        if not registrations:
            self._logger.debug(
                "no_webhooks_subscribed",
                event_type=event_type.value,
                owner_id=owner_id,
            )
            return

        envelope = create_webhook_event(event_type, data)
        # Serialized once; every registration receives identical bytes
        body = envelope.to_bytes()

        tasks = [
            asyncio.create_task(self._scheduler.run(registration, envelope, body))
            for registration in registrations
        ]

        for task in tasks:
            self._background_tasks.add(task)
            task.add_done_callback(self._on_task_done)

        self._logger.info(
            "event_dispatched",
            event_id=envelope.id,
            event_type=event_type.value,
            registration_count=len(registrations),
        )

        if wait:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _on_task_done(self, task: asyncio.Task[DeliveryStateMachine]) -> None:
        self._background_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._logger.error("delivery_task_crashed", error=str(exc))

    async def send_test_event(
        self,
        registration_id: str,
        owner_id: str,
    ) -> DeliveryStateMachine:
        """Send a test event to one registration and wait for the result.

        Args:
            registration_id: Registration to test.
            owner_id: Party that must own the registration.

        Returns:
            The finished delivery state machine.

        Raises:
            WebhookNotFoundError: If missing or owned by someone else.
        """
        registration = await self._registry.get(registration_id, owner_id)
        envelope = self._build_test_event(registration)

        self._logger.info(
            "sending_test_event",
            registration_id=registration_id,
            event_id=envelope.id,
        )

        return await self._scheduler.run(registration, envelope)

    def _build_test_event(self, registration: WebhookRegistration) -> EventEnvelope:
        if WebhookEventType.PAYMENT_COMPLETED in registration.events:
            event_type = WebhookEventType.PAYMENT_COMPLETED
        else:
            event_type = min(registration.events, key=lambda e: e.value)

        envelope = create_webhook_event(
            event_type,
            {
                "test": True,
                "message": "This is a test webhook delivery",
                "owner_id": registration.owner_id,
                "registration_id": registration.id,
            },
        )
        return envelope.model_copy(update={"id": f"test_{envelope.id}"})

    async def shutdown(self) -> None:
        """Wait for pending deliveries and close the executor."""
        if self._background_tasks:
            self._logger.info(
                "waiting_for_pending_deliveries",
                count=len(self._background_tasks),
            )
            await asyncio.gather(*self._background_tasks, return_exceptions=True)

        close = getattr(self._executor, "aclose", None)
        if close is not None:
            await close()
