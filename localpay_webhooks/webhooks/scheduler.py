"""Bounded retry schedule for webhook deliveries.

Each (event, registration) pair is driven through an explicit state
machine:

    PENDING -> ATTEMPTING -> SUCCESS
                          -> RETRY_WAIT -> ATTEMPTING ...
                          -> FAILED

Waiting is done through an injected ``sleep`` coroutine so the schedule
can be exercised without real delays.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

import structlog

from localpay_webhooks.webhooks.events import EventEnvelope
from localpay_webhooks.webhooks.models import DeliveryOutcome, WebhookRegistration
from localpay_webhooks.webhooks.recorder import DeliveryRecorder

logger = structlog.get_logger(__name__)

SleepFunc = Callable[[float], Awaitable[None]]

MAX_RETRIES = 3
RETRY_DELAYS_SECONDS = (1.0, 5.0, 30.0)


class DeliveryState(str, Enum):
    """State of one delivery sequence."""

    PENDING = "pending"
    ATTEMPTING = "attempting"
    RETRY_WAIT = "retry_wait"
    SUCCESS = "success"
    FAILED = "failed"


_TRANSITIONS: dict[DeliveryState, frozenset[DeliveryState]] = {
    DeliveryState.PENDING: frozenset({DeliveryState.ATTEMPTING}),
    DeliveryState.ATTEMPTING: frozenset(
        {DeliveryState.SUCCESS, DeliveryState.RETRY_WAIT, DeliveryState.FAILED}
    ),
    DeliveryState.RETRY_WAIT: frozenset({DeliveryState.ATTEMPTING}),
    DeliveryState.SUCCESS: frozenset(),
    DeliveryState.FAILED: frozenset(),
}


class InvalidTransitionError(Exception):
    """Raised when a delivery state machine is driven out of order."""

    def __init__(self, current: DeliveryState, target: DeliveryState) -> None:
        super().__init__(f"Cannot transition from {current.value} to {target.value}")
        self.current = current
        self.target = target


@dataclass(frozen=True)
class RetryPolicy:
    """Fixed-delay retry policy.

    Attributes:
        max_retries: Retries after the first attempt.
        delays: Wait before attempt ``n + 1`` is ``delays[n - 1]``.
    """

    max_retries: int = MAX_RETRIES
    delays: tuple[float, ...] = RETRY_DELAYS_SECONDS

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if len(self.delays) < self.max_retries:
            raise ValueError("delays must cover every retry")
        if any(d < 0 for d in self.delays):
            raise ValueError("delays must be non-negative")

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def delay_after(self, attempt_number: int) -> float:
        """Seconds to wait after a failed attempt before the next one."""
        return self.delays[attempt_number - 1]


DEFAULT_RETRY_POLICY = RetryPolicy()


@dataclass
class DeliveryStateMachine:
    """Tracks one (event, registration) delivery sequence."""

    registration_id: str
    event_id: str
    policy: RetryPolicy = DEFAULT_RETRY_POLICY
    state: DeliveryState = DeliveryState.PENDING
    attempt_number: int = 0
    last_outcome: DeliveryOutcome | None = None
    history: list[DeliveryState] = field(default_factory=lambda: [DeliveryState.PENDING])

    @property
    def is_terminal(self) -> bool:
        return self.state in (DeliveryState.SUCCESS, DeliveryState.FAILED)

    def _transition(self, target: DeliveryState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise InvalidTransitionError(self.state, target)
        self.state = target
        self.history.append(target)

    def start_attempt(self) -> int:
        """Enter ATTEMPTING and return the new attempt ordinal."""
        self._transition(DeliveryState.ATTEMPTING)
        self.attempt_number += 1
        return self.attempt_number

    def finish_attempt(self, outcome: DeliveryOutcome) -> DeliveryState:
        """Apply an attempt's outcome and return the resulting state."""
        self.last_outcome = outcome
        if outcome.success:
            self._transition(DeliveryState.SUCCESS)
        elif self.attempt_number > self.policy.max_retries:
            self._transition(DeliveryState.FAILED)
        else:
            self._transition(DeliveryState.RETRY_WAIT)
        return self.state

    def next_delay(self) -> float:
        """Wait before the next attempt. Only valid in RETRY_WAIT."""
        if self.state is not DeliveryState.RETRY_WAIT:
            raise InvalidTransitionError(self.state, DeliveryState.ATTEMPTING)
        return self.policy.delay_after(self.attempt_number)


class AttemptExecutor(Protocol):
    """Anything that can perform one delivery attempt."""

    async def attempt(
        self,
        registration: WebhookRegistration,
        envelope: EventEnvelope,
        body: bytes | None = None,
    ) -> DeliveryOutcome: ...


class RetryScheduler:
    """Drives an executor through the retry policy, recording every attempt."""

    def __init__(
        self,
        executor: AttemptExecutor,
        recorder: DeliveryRecorder,
        *,
        policy: RetryPolicy = DEFAULT_RETRY_POLICY,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        """Initialize the scheduler.

        Args:
            executor: Performs single delivery attempts.
            recorder: Persists each attempt.
            policy: Retry count and delay schedule.
            sleep: Coroutine used to wait between attempts.
        """
        self._executor = executor
        self._recorder = recorder
        self._policy = policy
        self._sleep = sleep
        self._logger = logger.bind(component="retry_scheduler")

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    async def run(
        self,
        registration: WebhookRegistration,
        envelope: EventEnvelope,
        body: bytes | None = None,
    ) -> DeliveryStateMachine:
        """Deliver an event to one registration until success or exhaustion.

        Args:
            registration: Target registration.
            envelope: Event being delivered.
            body: Serialized envelope (serialized here if omitted).

        Returns:
            The state machine in its terminal state.
        """
        payload = body if body is not None else envelope.to_bytes()
        machine = DeliveryStateMachine(
            registration_id=registration.id,
            event_id=envelope.id,
            policy=self._policy,
        )

        while True:
            attempt_number = machine.start_attempt()
            outcome = await self._attempt(registration, envelope, payload, attempt_number)
            await self._record(registration, envelope, payload, outcome, attempt_number)

            state = machine.finish_attempt(outcome)

            if state is DeliveryState.SUCCESS:
                self._logger.info(
                    "webhook_delivered",
                    registration_id=registration.id,
                    event_id=envelope.id,
                    event_type=envelope.event.value,
                    attempt=attempt_number,
                    duration_ms=outcome.duration_ms,
                )
                return machine

            if state is DeliveryState.FAILED:
                self._logger.error(
                    "webhook_delivery_exhausted",
                    registration_id=registration.id,
                    event_id=envelope.id,
                    event_type=envelope.event.value,
                    attempts=attempt_number,
                    error=outcome.error,
                    status_code=outcome.status_code,
                )
                return machine

            delay = machine.next_delay()
            self._logger.debug(
                "scheduling_retry",
                registration_id=registration.id,
                event_id=envelope.id,
                delay_seconds=delay,
                next_attempt=attempt_number + 1,
            )
            await self._sleep(delay)

    async def _attempt(
        self,
        registration: WebhookRegistration,
        envelope: EventEnvelope,
        payload: bytes,
        attempt_number: int,
    ) -> DeliveryOutcome:
        """Run one attempt; an executor error becomes a failed outcome."""
        try:
            return await self._executor.attempt(registration, envelope, payload)
        except Exception as e:
            self._logger.error(
                "delivery_attempt_crashed",
                registration_id=registration.id,
                event_id=envelope.id,
                attempt=attempt_number,
                error=str(e),
                error_type=type(e).__name__,
            )
            return DeliveryOutcome.failed(str(e) or type(e).__name__, 0)

    async def _record(
        self,
        registration: WebhookRegistration,
        envelope: EventEnvelope,
        payload: bytes,
        outcome: DeliveryOutcome,
        attempt_number: int,
    ) -> None:
        """Record an attempt; a failed write is logged and the sequence continues."""
        try:
            await self._recorder.append(
                registration.id,
                envelope.event,
                payload,
                outcome,
                attempt_number,
                event_id=envelope.id,
            )
        except Exception as e:
            self._logger.error(
                "delivery_record_failed",
                registration_id=registration.id,
                event_id=envelope.id,
                attempt=attempt_number,
                success=outcome.success,
                error=str(e),
            )
