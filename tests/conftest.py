"""Shared fixtures for webhook tests."""

from collections.abc import Callable

import pytest

from localpay_webhooks.webhooks.events import EventEnvelope
from localpay_webhooks.webhooks.models import DeliveryOutcome, WebhookRegistration
from localpay_webhooks.webhooks.recorder import DeliveryRecorder
from localpay_webhooks.webhooks.registry import WebhookRegistry
from localpay_webhooks.webhooks.storage import InMemoryWebhookStore


class FakeExecutor:
    """Executor returning scripted outcomes and remembering every call."""

    def __init__(self, outcome_for_call: Callable[[int], DeliveryOutcome]) -> None:
        self.outcome_for_call = outcome_for_call
        self.calls: list[tuple[WebhookRegistration, EventEnvelope, bytes | None]] = []

    @classmethod
    def failing(cls) -> "FakeExecutor":
        return cls(lambda _call: DeliveryOutcome.failed("HTTP 503", 5, status_code=503))

    @classmethod
    def succeeding(cls) -> "FakeExecutor":
        return cls(lambda _call: DeliveryOutcome.succeeded(200, 5))

    @classmethod
    def succeeding_on(cls, n: int) -> "FakeExecutor":
        """Fail every call before the n-th, then succeed."""

        def outcome(call: int) -> DeliveryOutcome:
            if call >= n:
                return DeliveryOutcome.succeeded(200, 5)
            return DeliveryOutcome.failed("Connection refused", 5)

        return cls(outcome)

    async def attempt(
        self,
        registration: WebhookRegistration,
        envelope: EventEnvelope,
        body: bytes | None = None,
    ) -> DeliveryOutcome:
        self.calls.append((registration, envelope, body))
        return self.outcome_for_call(len(self.calls))

    def calls_for(self, registration_id: str) -> int:
        return sum(1 for r, _, _ in self.calls if r.id == registration_id)


class RecordingSleep:
    """Stand-in for asyncio.sleep that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def fake_executor():
    """Expose the scripted executor class."""
    return FakeExecutor


@pytest.fixture
def store():
    """Create an in-memory store."""
    return InMemoryWebhookStore()


@pytest.fixture
def registry(store):
    """Create a registry over the in-memory store."""
    return WebhookRegistry(store)


@pytest.fixture
def recorder(store):
    """Create a recorder over the in-memory store."""
    return DeliveryRecorder(store)


@pytest.fixture
def recording_sleep():
    """Create a sleep stand-in that records delays."""
    return RecordingSleep()
