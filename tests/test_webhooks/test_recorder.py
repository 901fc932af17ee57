"""Tests for the delivery recorder."""

import pytest

from localpay_webhooks.webhooks.events import WebhookEventType
from localpay_webhooks.webhooks.models import DeliveryOutcome
from localpay_webhooks.webhooks.recorder import DeliveryRecorder
from localpay_webhooks.webhooks.storage import InMemoryWebhookStore, TransientStoreError


class FlakyStore(InMemoryWebhookStore):
    """In-memory store whose first appends fail."""

    def __init__(self, failures: int, error: Exception) -> None:
        super().__init__()
        self.failures = failures
        self.error = error
        self.append_calls = 0

    async def append_delivery(self, attempt):
        self.append_calls += 1
        if self.append_calls <= self.failures:
            raise self.error
        await super().append_delivery(attempt)


# ============================================================================
# DeliveryRecorder Tests
# ============================================================================


class TestDeliveryRecorder:
    """Tests for DeliveryRecorder class."""

    @pytest.mark.asyncio
    async def test_append_success(self, recorder):
        """Test recording a successful attempt."""
        record = await recorder.append(
            "wh_1",
            WebhookEventType.PAYMENT_COMPLETED,
            b'{"id":"evt_1"}',
            DeliveryOutcome.succeeded(200, 42),
            1,
            event_id="evt_1",
        )

        assert record.id.startswith("dlv_")
        assert record.success is True
        assert record.status_code == 200
        assert record.error is None
        assert record.duration_ms == 42
        assert record.attempt == 1
        assert record.payload == '{"id":"evt_1"}'

    @pytest.mark.asyncio
    async def test_append_transport_failure(self, recorder):
        """Test recording an attempt that got no response."""
        record = await recorder.append(
            "wh_1",
            WebhookEventType.PAYMENT_COMPLETED,
            "{}",
            DeliveryOutcome.failed("Request timeout after 30s", 30000),
            2,
            event_id="evt_1",
        )

        assert record.success is False
        assert record.status_code is None
        assert record.error == "Request timeout after 30s"
        assert record.attempt == 2

    @pytest.mark.asyncio
    async def test_query_newest_first(self, recorder):
        """Test that history reads back newest first."""
        for n in (1, 2, 3):
            await recorder.append(
                "wh_1",
                WebhookEventType.PAYMENT_COMPLETED,
                "{}",
                DeliveryOutcome.failed("HTTP 500", 1, status_code=500),
                n,
                event_id="evt_1",
            )

        history = await recorder.query("wh_1")

        assert [r.attempt for r in history] == [3, 2, 1]

    @pytest.mark.asyncio
    async def test_query_limit(self, recorder):
        """Test limiting history."""
        for n in (1, 2, 3):
            await recorder.append(
                "wh_1",
                WebhookEventType.PAYMENT_COMPLETED,
                "{}",
                DeliveryOutcome.succeeded(200, 1),
                n,
                event_id=f"evt_{n}",
            )

        history = await recorder.query("wh_1", limit=1)

        assert len(history) == 1
        assert history[0].event_id == "evt_3"

    @pytest.mark.asyncio
    async def test_query_unknown_registration(self, recorder):
        """Test history for a registration with no attempts."""
        assert await recorder.query("wh_unknown") == []

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self):
        """Test that a locked database is retried."""
        store = FlakyStore(failures=2, error=TransientStoreError("database is locked"))
        recorder = DeliveryRecorder(store)

        await recorder.append(
            "wh_1",
            WebhookEventType.PAYMENT_COMPLETED,
            "{}",
            DeliveryOutcome.succeeded(200, 1),
            1,
            event_id="evt_1",
        )

        assert store.append_calls == 3
        assert len(await recorder.query("wh_1")) == 1

    @pytest.mark.asyncio
    async def test_transient_failure_gives_up(self):
        """Test that the error surfaces once retries run out."""
        store = FlakyStore(failures=10, error=TransientStoreError("database is locked"))
        recorder = DeliveryRecorder(store)

        with pytest.raises(TransientStoreError):
            await recorder.append(
                "wh_1",
                WebhookEventType.PAYMENT_COMPLETED,
                "{}",
                DeliveryOutcome.succeeded(200, 1),
                1,
                event_id="evt_1",
            )

        assert store.append_calls == 3

    @pytest.mark.asyncio
    async def test_other_errors_not_retried(self):
        """Test that non-transient errors propagate immediately."""
        store = FlakyStore(failures=1, error=RuntimeError("disk gone"))
        recorder = DeliveryRecorder(store)

        with pytest.raises(RuntimeError, match="disk gone"):
            await recorder.append(
                "wh_1",
                WebhookEventType.PAYMENT_COMPLETED,
                "{}",
                DeliveryOutcome.succeeded(200, 1),
                1,
                event_id="evt_1",
            )

        assert store.append_calls == 1
