"""Tests for webhook dispatcher."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from localpay_webhooks.webhooks.dispatcher import WebhookDispatcher
from localpay_webhooks.webhooks.events import WebhookEventType
from localpay_webhooks.webhooks.registry import WebhookNotFoundError
from localpay_webhooks.webhooks.scheduler import DeliveryState

# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def make_dispatcher(registry, recorder, recording_sleep):
    """Build a dispatcher around a scripted executor."""

    def _make(executor):
        return WebhookDispatcher(
            registry,
            recorder,
            executor=executor,
            sleep=recording_sleep,
        )

    return _make


# ============================================================================
# emit Tests
# ============================================================================


class TestEmit:
    """Tests for WebhookDispatcher.emit."""

    @pytest.mark.asyncio
    async def test_fan_out_to_subscribers_only(
        self, fake_executor, make_dispatcher, registry, recorder
    ):
        """Test that only registrations subscribed to the event are called."""
        executor = fake_executor.succeeding()
        dispatcher = make_dispatcher(executor)
        payments = await registry.register(
            "merchant-1", "https://example.com/payments", ["payment.completed"]
        )
        vouchers = await registry.register(
            "merchant-1", "https://example.com/vouchers", ["voucher.expired"]
        )

        await dispatcher.emit(
            WebhookEventType.PAYMENT_COMPLETED,
            {"payment_id": "pay_1", "amount": 1000},
            wait=True,
        )

        assert executor.calls_for(payments.id) == 1
        assert executor.calls_for(vouchers.id) == 0
        assert len(await recorder.query(payments.id)) == 1
        assert await recorder.query(vouchers.id) == []

    @pytest.mark.asyncio
    async def test_disabled_registration_skipped(
        self, fake_executor, make_dispatcher, registry, recorder
    ):
        """Test that disabled registrations receive nothing."""
        executor = fake_executor.succeeding()
        dispatcher = make_dispatcher(executor)
        registration = await registry.register(
            "merchant-1", "https://example.com/webhook", ["payment.completed"]
        )
        await registry.update(registration.id, "merchant-1", enabled=False)

        await dispatcher.emit(WebhookEventType.PAYMENT_COMPLETED, {}, wait=True)

        assert executor.calls == []
        assert await recorder.query(registration.id) == []

    @pytest.mark.asyncio
    async def test_owner_filter(self, fake_executor, make_dispatcher, registry):
        """Test restricting delivery to one owner."""
        executor = fake_executor.succeeding()
        dispatcher = make_dispatcher(executor)
        mine = await registry.register(
            "merchant-1", "https://example.com/mine", ["payment.completed"]
        )
        theirs = await registry.register(
            "merchant-2", "https://example.com/theirs", ["payment.completed"]
        )

        await dispatcher.emit(
            WebhookEventType.PAYMENT_COMPLETED, {}, owner_id="merchant-1", wait=True
        )

        assert executor.calls_for(mine.id) == 1
        assert executor.calls_for(theirs.id) == 0

    @pytest.mark.asyncio
    async def test_no_subscribers(self, fake_executor, make_dispatcher):
        """Test emitting with nothing subscribed."""
        executor = fake_executor.succeeding()
        dispatcher = make_dispatcher(executor)

        await dispatcher.emit(WebhookEventType.USER_VERIFIED, {"user_id": "u1"}, wait=True)

        assert executor.calls == []
        assert dispatcher.pending_count == 0

    @pytest.mark.asyncio
    async def test_one_envelope_for_all(self, fake_executor, make_dispatcher, registry):
        """Test that every registration receives the same event ID and bytes."""
        executor = fake_executor.succeeding()
        dispatcher = make_dispatcher(executor)
        for n in range(3):
            await registry.register(
                "merchant-1", f"https://example.com/hook{n}", ["payment.completed"]
            )

        await dispatcher.emit(WebhookEventType.PAYMENT_COMPLETED, {"amount": 1}, wait=True)

        assert len(executor.calls) == 3
        assert len({envelope.id for _, envelope, _ in executor.calls}) == 1
        assert len({body for _, _, body in executor.calls}) == 1

    @pytest.mark.asyncio
    async def test_data_passed_through(self, fake_executor, make_dispatcher, registry):
        """Test that event data reaches the envelope unmodified."""
        executor = fake_executor.succeeding()
        dispatcher = make_dispatcher(executor)
        await registry.register("merchant-1", "https://example.com/hook", ["wallet.charged"])
        data = {"wallet_id": "w1", "amount": 50000, "meta": {"channel": "app"}}

        await dispatcher.emit(WebhookEventType.WALLET_CHARGED, data, wait=True)

        _, envelope, _ = executor.calls[0]
        assert envelope.event is WebhookEventType.WALLET_CHARGED
        assert envelope.data == data

    @pytest.mark.asyncio
    async def test_failing_endpoint_does_not_delay_others(
        self, fake_executor, make_dispatcher, registry, recorder, recording_sleep
    ):
        """Test that each registration runs its own retry sequence."""
        executor = fake_executor.failing()
        dispatcher = make_dispatcher(executor)
        a = await registry.register("merchant-1", "https://a.example.com/hook", ["payment.failed"])
        b = await registry.register("merchant-1", "https://b.example.com/hook", ["payment.failed"])

        await dispatcher.emit(WebhookEventType.PAYMENT_FAILED, {}, wait=True)

        assert executor.calls_for(a.id) == 4
        assert executor.calls_for(b.id) == 4
        assert sorted(r.attempt for r in await recorder.query(a.id)) == [1, 2, 3, 4]
        assert sorted(r.attempt for r in await recorder.query(b.id)) == [1, 2, 3, 4]
        assert sorted(recording_sleep.delays) == [1.0, 1.0, 5.0, 5.0, 30.0, 30.0]

    @pytest.mark.asyncio
    async def test_fire_and_forget(self, fake_executor, make_dispatcher, registry, recorder):
        """Test that emit returns before delivery and shutdown drains it."""
        executor = fake_executor.succeeding()
        dispatcher = make_dispatcher(executor)
        registration = await registry.register(
            "merchant-1", "https://example.com/hook", ["payment.completed"]
        )

        await dispatcher.emit(WebhookEventType.PAYMENT_COMPLETED, {})

        assert dispatcher.pending_count == 1

        await dispatcher.shutdown()

        assert dispatcher.pending_count == 0
        assert len(await recorder.query(registration.id)) == 1

    @pytest.mark.asyncio
    async def test_lookup_failure_not_raised(self, fake_executor, recorder, recording_sleep):
        """Test that a broken registry never reaches the emitting caller."""
        registry = AsyncMock()
        registry.find_matching.side_effect = RuntimeError("database unavailable")
        executor = fake_executor.succeeding()
        dispatcher = WebhookDispatcher(
            registry, recorder, executor=executor, sleep=recording_sleep
        )

        await dispatcher.emit(WebhookEventType.PAYMENT_COMPLETED, {}, wait=True)

        assert executor.calls == []

    @pytest.mark.asyncio
    async def test_executor_crash_recorded_as_failures(
        self, make_dispatcher, registry, recorder, recording_sleep
    ):
        """Test that an executor bug is recorded and retried like a transport failure."""

        class CrashingExecutor:
            async def attempt(self, registration, envelope, body=None):
                raise RuntimeError("bug")

        dispatcher = make_dispatcher(CrashingExecutor())
        registration = await registry.register(
            "merchant-1", "https://example.com/hook", ["payment.completed"]
        )

        await dispatcher.emit(WebhookEventType.PAYMENT_COMPLETED, {}, wait=True)
        await asyncio.sleep(0)

        assert dispatcher.pending_count == 0
        history = await recorder.query(registration.id)
        assert sorted(r.attempt for r in history) == [1, 2, 3, 4]
        assert all(not r.success and r.error == "bug" for r in history)
        assert recording_sleep.delays == [1.0, 5.0, 30.0]

    @pytest.mark.asyncio
    async def test_wire_tag_accepted(self, fake_executor, make_dispatcher, registry):
        """Test emitting with the event's string tag."""
        executor = fake_executor.succeeding()
        dispatcher = make_dispatcher(executor)
        registration = await registry.register(
            "merchant-1", "https://example.com/hook", ["payment.completed"]
        )

        await dispatcher.emit("payment.completed", {"payment_id": "pay_1"}, wait=True)

        assert executor.calls_for(registration.id) == 1
        _, envelope, _ = executor.calls[0]
        assert envelope.event is WebhookEventType.PAYMENT_COMPLETED

    @pytest.mark.asyncio
    async def test_wire_tag_without_subscribers(self, fake_executor, make_dispatcher):
        """Test emitting a string tag nobody subscribed to."""
        executor = fake_executor.succeeding()
        dispatcher = make_dispatcher(executor)

        await dispatcher.emit("voucher.redeemed", {"voucher_id": "v1"}, wait=True)

        assert executor.calls == []

    @pytest.mark.asyncio
    async def test_unknown_tag_not_raised(self, fake_executor, make_dispatcher, registry):
        """Test that an unknown event tag is dropped without raising."""
        executor = fake_executor.succeeding()
        dispatcher = make_dispatcher(executor)
        await registry.register("merchant-1", "https://example.com/hook", ["payment.completed"])

        await dispatcher.emit("payment.teleported", {}, wait=True)

        assert executor.calls == []
        assert dispatcher.pending_count == 0


# ============================================================================
# send_test_event Tests
# ============================================================================


class TestSendTestEvent:
    """Tests for WebhookDispatcher.send_test_event."""

    @pytest.mark.asyncio
    async def test_success(self, fake_executor, make_dispatcher, registry, recorder):
        """Test a successful test delivery."""
        executor = fake_executor.succeeding()
        dispatcher = make_dispatcher(executor)
        registration = await registry.register(
            "merchant-1", "https://example.com/hook", ["payment.completed", "voucher.expired"]
        )

        machine = await dispatcher.send_test_event(registration.id, "merchant-1")

        assert machine.state is DeliveryState.SUCCESS
        assert machine.event_id.startswith("test_evt_")
        _, envelope, _ = executor.calls[0]
        assert envelope.event is WebhookEventType.PAYMENT_COMPLETED
        assert envelope.data["test"] is True
        assert envelope.data["registration_id"] == registration.id
        [record] = await recorder.query(registration.id)
        assert record.event_id == envelope.id

    @pytest.mark.asyncio
    async def test_uses_subscribed_event(self, fake_executor, make_dispatcher, registry):
        """Test that the test event is one the endpoint subscribed to."""
        executor = fake_executor.succeeding()
        dispatcher = make_dispatcher(executor)
        registration = await registry.register(
            "merchant-1", "https://example.com/hook", ["voucher.redeemed", "voucher.expired"]
        )

        await dispatcher.send_test_event(registration.id, "merchant-1")

        _, envelope, _ = executor.calls[0]
        assert envelope.event is WebhookEventType.VOUCHER_EXPIRED

    @pytest.mark.asyncio
    async def test_failure_runs_full_schedule(
        self, fake_executor, make_dispatcher, registry, recording_sleep
    ):
        """Test that a test delivery retries like any other."""
        executor = fake_executor.failing()
        dispatcher = make_dispatcher(executor)
        registration = await registry.register(
            "merchant-1", "https://example.com/hook", ["payment.completed"]
        )

        machine = await dispatcher.send_test_event(registration.id, "merchant-1")

        assert machine.state is DeliveryState.FAILED
        assert machine.attempt_number == 4
        assert machine.last_outcome.status_code == 503
        assert recording_sleep.delays == [1.0, 5.0, 30.0]

    @pytest.mark.asyncio
    async def test_other_owner(self, fake_executor, make_dispatcher, registry):
        """Test that another owner's registration cannot be tested."""
        executor = fake_executor.succeeding()
        dispatcher = make_dispatcher(executor)
        registration = await registry.register(
            "merchant-1", "https://example.com/hook", ["payment.completed"]
        )

        with pytest.raises(WebhookNotFoundError):
            await dispatcher.send_test_event(registration.id, "merchant-2")

        assert executor.calls == []


# ============================================================================
# shutdown Tests
# ============================================================================


class TestShutdown:
    """Tests for WebhookDispatcher.shutdown."""

    @pytest.mark.asyncio
    async def test_closes_executor(self, make_dispatcher):
        """Test that the executor is closed on shutdown."""
        executor = AsyncMock()
        dispatcher = make_dispatcher(executor)

        await dispatcher.shutdown()

        executor.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_executor_without_aclose(self, fake_executor, make_dispatcher):
        """Test shutting down with an executor that holds no resources."""
        dispatcher = make_dispatcher(fake_executor.succeeding())

        await dispatcher.shutdown()
