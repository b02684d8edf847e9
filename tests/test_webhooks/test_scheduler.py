"""Tests for the retry scheduler."""

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import httpx
import pytest

from orderhooks.webhooks.dispatcher import WebhookDispatcher
from orderhooks.webhooks.emitter import WebhookEmitter
from orderhooks.webhooks.models import WebhookDeliveryStatus
from orderhooks.webhooks.registry import SubscriptionRegistry
from orderhooks.webhooks.retry import RetryPolicy
from orderhooks.webhooks.scheduler import RetryScheduler
from orderhooks.webhooks.store import InMemoryDeliveryStore, InMemorySubscriptionStore

NOW = datetime(2026, 6, 1, 9, 0, tzinfo=UTC)


class Clock:
    """Manually advanced clock."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def clock():
    return Clock(NOW)


@pytest.fixture
def statuses():
    """Status codes the mock endpoint returns, last one repeats."""
    return [500]


@pytest.fixture
def requests():
    return []


@pytest.fixture
def subscriptions():
    return InMemorySubscriptionStore()


@pytest.fixture
def deliveries():
    return InMemoryDeliveryStore()


@pytest.fixture
def registry(subscriptions):
    return SubscriptionRegistry(subscriptions)


@pytest.fixture
def dispatcher(subscriptions, deliveries, statuses, requests, clock):
    """Create dispatcher posting to a scripted endpoint."""

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        status = statuses.pop(0) if len(statuses) > 1 else statuses[0]
        return httpx.Response(status)

    return WebhookDispatcher(
        subscriptions,
        deliveries,
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        retry_policy=RetryPolicy(),
        clock=clock,
    )


@pytest.fixture
def emitter(subscriptions, deliveries, dispatcher, clock):
    return WebhookEmitter(subscriptions, deliveries, dispatcher, clock=clock)


@pytest.fixture
def scheduler(deliveries, dispatcher, clock):
    return RetryScheduler(deliveries, dispatcher, poll_interval_seconds=0.01, batch_size=50, clock=clock)


# ============================================================================
# Run Once Tests
# ============================================================================


class TestRunOnce:
    """Tests for a single scheduler pass."""

    @pytest.mark.asyncio
    async def test_nothing_due(self, scheduler):
        """Test an empty ledger does nothing."""
        assert await scheduler.run_once() == 0

    @pytest.mark.asyncio
    async def test_not_due_yet(self, scheduler, emitter, registry, requests, clock):
        """Test a retrying delivery is left alone before its retry time."""
        await registry.create("tenant-a", "ERP", "https://erp.example.com", ["order.created"])
        await emitter.emit("tenant-a", "order.created", {}, wait=True)

        clock.advance(seconds=30)

        assert await scheduler.run_once() == 0
        assert len(requests) == 1

    @pytest.mark.asyncio
    async def test_exhausts_retries(
        self, scheduler, emitter, registry, subscriptions, deliveries, requests, clock
    ):
        """Test an always-failing endpoint ends failed after max_retries + 1 attempts."""
        subscription = await registry.create(
            "tenant-a", "ERP", "https://erp.example.com", ["order.created"], max_retries=3
        )
        created = await emitter.emit("tenant-a", "order.created", {"order_id": "o-1"}, wait=True)
        delivery_id = created[0].id

        retry_times = []
        for _ in range(5):
            stored = await deliveries.get(delivery_id)
            if stored.is_terminal:
                break
            retry_times.append(stored.next_retry_at)
            clock.now = stored.next_retry_at
            await scheduler.run_once()

        stored = await deliveries.get(delivery_id)
        assert stored.status == WebhookDeliveryStatus.FAILED
        assert stored.attempt_count == 4
        assert stored.next_retry_at is None
        assert len(requests) == 4

        gaps = [b - a for a, b in zip(retry_times, retry_times[1:], strict=False)]
        assert gaps == [timedelta(minutes=2), timedelta(minutes=4)]

        sub = await subscriptions.get(subscription.id)
        assert sub.failed_deliveries == 1
        assert sub.successful_deliveries == 0
        assert sub.total_deliveries == 1

    @pytest.mark.asyncio
    async def test_retry_succeeds(
        self, scheduler, emitter, registry, subscriptions, deliveries, statuses, clock
    ):
        """Test 500 then 200 ends delivered on the scheduled retry."""
        statuses[:] = [500, 200]
        subscription = await registry.create(
            "tenant-a", "ERP", "https://erp.example.com", ["order.created"]
        )
        created = await emitter.emit("tenant-a", "order.created", {}, wait=True)

        clock.advance(minutes=1)
        assert await scheduler.run_once() == 1

        stored = await deliveries.get(created[0].id)
        assert stored.status == WebhookDeliveryStatus.DELIVERED
        assert stored.attempt_count == 2
        assert (await subscriptions.get(subscription.id)).successful_deliveries == 1

    @pytest.mark.asyncio
    async def test_deactivated_subscription(
        self, scheduler, emitter, registry, subscriptions, deliveries, requests, clock
    ):
        """Test a retry for a deactivated subscription fails without a request."""
        subscription = await registry.create(
            "tenant-a", "ERP", "https://erp.example.com", ["order.created"]
        )
        created = await emitter.emit("tenant-a", "order.created", {}, wait=True)
        before = await subscriptions.get(subscription.id)
        await registry.toggle("tenant-a", subscription.id, False)

        clock.advance(hours=1)
        await scheduler.run_once()

        stored = await deliveries.get(created[0].id)
        assert stored.status == WebhookDeliveryStatus.FAILED
        assert stored.error_message == "Subscription is inactive"
        assert stored.attempt_count == 1
        assert len(requests) == 1

        after = await subscriptions.get(subscription.id)
        assert after.total_deliveries == before.total_deliveries
        assert after.failed_deliveries == before.failed_deliveries

    @pytest.mark.asyncio
    async def test_pending_recovered_after_grace(
        self, scheduler, subscriptions, deliveries, registry, statuses, requests, clock
    ):
        """Test a delivery whose first attempt never ran is picked up later."""
        statuses[:] = [200]
        await registry.create("tenant-a", "ERP", "https://erp.example.com", ["order.created"])
        crashed = AsyncMock(spec=WebhookDispatcher)
        crashed.attempt.side_effect = RuntimeError("process died")
        emitter = WebhookEmitter(subscriptions, deliveries, crashed, clock=clock)
        created = await emitter.emit("tenant-a", "order.created", {}, wait=True)

        assert await scheduler.run_once() == 0

        clock.advance(minutes=3)
        assert await scheduler.run_once() == 1
        assert (await deliveries.get(created[0].id)).status == WebhookDeliveryStatus.DELIVERED
        assert len(requests) == 1

    @pytest.mark.asyncio
    async def test_overlapping_runs(self, scheduler, emitter, registry, deliveries, requests, clock):
        """Test two concurrent passes attempt each delivery once."""
        await registry.create("tenant-a", "A", "https://a.example.com", ["order.created"])
        await registry.create("tenant-a", "B", "https://b.example.com", ["order.created"])
        await emitter.emit("tenant-a", "order.created", {}, wait=True)
        assert len(requests) == 2

        clock.advance(minutes=1)
        first, second = await asyncio.gather(scheduler.run_once(), scheduler.run_once())

        assert first + second == 2
        assert len(requests) == 4

    @pytest.mark.asyncio
    async def test_queued_delivery_not_posted_twice(
        self, subscriptions, deliveries, registry, requests, clock
    ):
        """Test a delivery waiting for a free slot is posted once, even past its lease."""
        gate = asyncio.Event()

        async def slow_handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            await gate.wait()
            return httpx.Response(200)

        dispatcher = WebhookDispatcher(
            subscriptions,
            deliveries,
            client=httpx.AsyncClient(transport=httpx.MockTransport(slow_handler)),
            retry_policy=RetryPolicy(),
            max_concurrent_deliveries=1,
            clock=clock,
        )
        emitter = WebhookEmitter(subscriptions, deliveries, dispatcher, clock=clock)
        scheduler = RetryScheduler(deliveries, dispatcher, clock=clock)
        await registry.create("tenant-a", "A", "https://a.example.com", ["order.created"])
        await registry.create("tenant-a", "B", "https://b.example.com", ["order.created"])

        created = await emitter.emit("tenant-a", "order.created", {})
        while not requests:
            await asyncio.sleep(0)

        # Both the in-flight lease and the queued delivery's grace run out
        clock.advance(seconds=181)
        run = asyncio.create_task(scheduler.run_once())
        for _ in range(10):
            await asyncio.sleep(0)
        gate.set()
        await run
        await emitter.shutdown()

        assert len(requests) == 2
        assert sorted(r.url.host for r in requests) == ["a.example.com", "b.example.com"]
        for delivery in created:
            stored = await deliveries.get(delivery.id)
            assert stored.status == WebhookDeliveryStatus.DELIVERED
            assert stored.attempt_count == 1

    @pytest.mark.asyncio
    async def test_batch_size(self, deliveries, dispatcher, emitter, registry, clock):
        """Test at most batch_size deliveries are attempted per pass."""
        for i in range(3):
            await registry.create("tenant-a", f"S{i}", f"https://s{i}.example.com", ["order.created"])
        await emitter.emit("tenant-a", "order.created", {}, wait=True)
        scheduler = RetryScheduler(deliveries, dispatcher, batch_size=2, clock=clock)

        clock.advance(minutes=1)

        assert await scheduler.run_once() == 2
        assert await scheduler.run_once() == 1

    @pytest.mark.asyncio
    async def test_attempt_errors_logged(self, deliveries, emitter, registry, clock):
        """Test an exception from one attempt does not abort the pass."""
        await registry.create("tenant-a", "ERP", "https://erp.example.com", ["order.created"])
        await emitter.emit("tenant-a", "order.created", {}, wait=True)
        broken = AsyncMock(spec=WebhookDispatcher)
        broken.attempt.side_effect = RuntimeError("boom")
        scheduler = RetryScheduler(deliveries, broken, clock=clock)

        clock.advance(minutes=1)

        assert await scheduler.run_once() == 0
        broken.attempt.assert_awaited_once()


# ============================================================================
# Loop Tests
# ============================================================================


class TestLoop:
    """Tests for start and stop."""

    @pytest.mark.asyncio
    async def test_start_stop(self, scheduler):
        """Test the loop starts and stops cleanly."""
        scheduler.start()
        assert scheduler.is_running

        await asyncio.sleep(0.03)
        await scheduler.stop()

        assert not scheduler.is_running

    @pytest.mark.asyncio
    async def test_start_twice(self, scheduler):
        """Test starting a running scheduler is a no-op."""
        scheduler.start()
        task = scheduler._task
        scheduler.start()

        assert scheduler._task is task
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_stop_without_start(self, scheduler):
        """Test stopping an idle scheduler."""
        await scheduler.stop()

        assert not scheduler.is_running

    @pytest.mark.asyncio
    async def test_loop_retries_in_background(
        self, scheduler, emitter, registry, deliveries, statuses, clock
    ):
        """Test the running loop delivers a due retry."""
        statuses[:] = [500, 200]
        await registry.create("tenant-a", "ERP", "https://erp.example.com", ["order.created"])
        created = await emitter.emit("tenant-a", "order.created", {}, wait=True)
        clock.advance(minutes=5)

        scheduler.start()
        for _ in range(50):
            await asyncio.sleep(0.01)
            if (await deliveries.get(created[0].id)).status == WebhookDeliveryStatus.DELIVERED:
                break
        await scheduler.stop()

        assert (await deliveries.get(created[0].id)).status == WebhookDeliveryStatus.DELIVERED

    @pytest.mark.asyncio
    async def test_failing_cycle_keeps_loop_alive(self, dispatcher, clock):
        """Test a store error in one pass does not end the loop."""
        store = AsyncMock()
        store.list_due.side_effect = [RuntimeError("db locked"), [], [], [], []]
        scheduler = RetryScheduler(store, dispatcher, poll_interval_seconds=0.01, clock=clock)

        scheduler.start()
        for _ in range(50):
            await asyncio.sleep(0.01)
            if store.list_due.await_count >= 2:
                break
        assert scheduler.is_running
        await scheduler.stop()

        assert store.list_due.await_count >= 2
