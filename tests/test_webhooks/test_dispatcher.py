"""Tests for webhook dispatcher module."""

import asyncio
from datetime import UTC, datetime, timedelta

import httpx
import pytest
import structlog
import structlog.testing

from orderhooks.webhooks.dispatcher import TEST_SECRET, WebhookDispatcher
from orderhooks.webhooks.events import WebhookEvent, create_webhook_event
from orderhooks.webhooks.models import (
    WebhookDelivery,
    WebhookDeliveryStatus,
    WebhookSubscription,
)
from orderhooks.webhooks.retry import RetryPolicy
from orderhooks.webhooks.security import (
    DELIVERY_ID_HEADER,
    EVENT_HEADER,
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
    USER_AGENT,
    verify_signature,
)
from orderhooks.webhooks.store import (
    DeliveryQuery,
    InMemoryDeliveryStore,
    InMemorySubscriptionStore,
)

NOW = datetime(2026, 6, 1, 9, 0, tzinfo=UTC)


# ============================================================================
# Fixtures
# ============================================================================


class Receiver:
    """Scripted webhook receiver backed by httpx.MockTransport."""

    def __init__(self, *responses):
        self.requests: list[httpx.Request] = []
        self._responses = list(responses) or [200]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        outcome = self._responses.pop(0) if len(self._responses) > 1 else self._responses[0]
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, httpx.Response):
            return outcome
        return httpx.Response(outcome, text="ok" if outcome < 300 else "error")

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


@pytest.fixture
def subscriptions():
    """Create in-memory subscription store."""
    return InMemorySubscriptionStore()


@pytest.fixture
def deliveries():
    """Create in-memory delivery store."""
    return InMemoryDeliveryStore()


@pytest.fixture
def make_dispatcher(subscriptions, deliveries):
    """Build a dispatcher around a scripted receiver."""

    def factory(receiver: Receiver, **kwargs) -> WebhookDispatcher:
        kwargs.setdefault("retry_policy", RetryPolicy())
        kwargs.setdefault("clock", lambda: NOW)
        return WebhookDispatcher(subscriptions, deliveries, client=receiver.client(), **kwargs)

    return factory


@pytest.fixture
async def subscription(subscriptions):
    """Create an active subscription with three retries."""
    sub = WebhookSubscription(
        tenant_id="tenant-a",
        name="ERP",
        url="https://erp.example.com/hook",
        events=[WebhookEvent.ORDER_CREATED],
        max_retries=3,
    )
    await subscriptions.add(sub)
    return sub


async def add_delivery(deliveries, subscription, **kwargs) -> WebhookDelivery:
    delivery = WebhookDelivery(
        tenant_id=subscription.tenant_id,
        subscription_id=subscription.id,
        event=WebhookEvent.ORDER_CREATED,
        payload="",
        created_at=NOW,
        next_retry_at=NOW + timedelta(minutes=3),
        **kwargs,
    )
    delivery.payload = create_webhook_event(
        WebhookEvent.ORDER_CREATED,
        {"order_id": "o-1"},
        event_id=delivery.id,
        timestamp=NOW,
    ).to_json()
    await deliveries.add(delivery)
    return delivery


# ============================================================================
# Successful Delivery Tests
# ============================================================================


class TestSuccessfulDelivery:
    """Tests for 2xx outcomes."""

    @pytest.mark.asyncio
    async def test_delivered(self, make_dispatcher, subscriptions, deliveries, subscription):
        """Test a 2xx response marks the delivery delivered."""
        receiver = Receiver(200)
        dispatcher = make_dispatcher(receiver)
        delivery = await add_delivery(deliveries, subscription)

        result = await dispatcher.attempt(delivery)

        assert result is not None
        assert result.success is True
        stored = await deliveries.get(delivery.id)
        assert stored.status == WebhookDeliveryStatus.DELIVERED
        assert stored.attempt_count == 1
        assert stored.http_status_code == 200
        assert stored.response_body == "ok"
        assert stored.delivered_at == NOW
        assert stored.next_retry_at is None
        assert stored.duration_ms is not None

        sub = await subscriptions.get(subscription.id)
        assert sub.total_deliveries == 1
        assert sub.successful_deliveries == 1
        assert sub.last_triggered_at == NOW

    @pytest.mark.asyncio
    async def test_request_shape(self, make_dispatcher, deliveries, subscription):
        """Test the POST carries the stored body and reserved headers."""
        receiver = Receiver(204)
        dispatcher = make_dispatcher(receiver)
        delivery = await add_delivery(deliveries, subscription)

        await dispatcher.attempt(delivery)

        request = receiver.requests[0]
        assert request.method == "POST"
        assert str(request.url) == subscription.url
        assert request.content == delivery.payload.encode("utf-8")
        assert request.headers["Content-Type"] == "application/json"
        assert request.headers["User-Agent"] == USER_AGENT
        assert request.headers[EVENT_HEADER] == "order.created"
        assert request.headers[DELIVERY_ID_HEADER] == delivery.id
        assert request.headers[TIMESTAMP_HEADER] == str(int(NOW.timestamp()))

    @pytest.mark.asyncio
    async def test_signature_verifies(self, make_dispatcher, deliveries, subscription):
        """Test a receiver can verify the body with the subscription secret."""
        receiver = Receiver(200)
        dispatcher = make_dispatcher(receiver)
        delivery = await add_delivery(deliveries, subscription)

        await dispatcher.attempt(delivery)

        request = receiver.requests[0]
        assert verify_signature(request.content, request.headers[SIGNATURE_HEADER], subscription.secret)

    @pytest.mark.asyncio
    async def test_custom_headers_cannot_replace_reserved(
        self, make_dispatcher, subscriptions, deliveries, subscription
    ):
        """Test custom headers are sent but reserved ones win."""
        subscription.headers = {"x-webhook-signature": "forged", "X-Api-Key": "abc"}
        await subscriptions.update(subscription)
        receiver = Receiver(200)
        dispatcher = make_dispatcher(receiver)
        delivery = await add_delivery(deliveries, subscription)

        await dispatcher.attempt(delivery)

        request = receiver.requests[0]
        assert request.headers["X-Api-Key"] == "abc"
        assert request.headers[SIGNATURE_HEADER] != "forged"
        assert verify_signature(request.content, request.headers[SIGNATURE_HEADER], subscription.secret)

    @pytest.mark.asyncio
    async def test_response_body_truncated(self, make_dispatcher, deliveries, subscription):
        """Test long response bodies are cut to the configured limit."""
        receiver = Receiver(httpx.Response(200, text="x" * 100))
        dispatcher = make_dispatcher(receiver, response_body_limit=10)
        delivery = await add_delivery(deliveries, subscription)

        await dispatcher.attempt(delivery)

        assert (await deliveries.get(delivery.id)).response_body == "x" * 10

    @pytest.mark.asyncio
    async def test_response_body_read_is_bounded(self, make_dispatcher, deliveries, subscription):
        """Test a large streamed response is not read past the limit."""
        chunks_read = 0

        async def body():
            nonlocal chunks_read
            for _ in range(1000):
                chunks_read += 1
                yield b"x" * 1024

        receiver = Receiver(httpx.Response(200, content=body()))
        dispatcher = make_dispatcher(receiver, response_body_limit=10)
        delivery = await add_delivery(deliveries, subscription)

        result = await dispatcher.attempt(delivery)

        assert result.success is True
        assert (await deliveries.get(delivery.id)).response_body == "x" * 10
        assert chunks_read < 5

    @pytest.mark.asyncio
    async def test_outcome_logged_with_event_type(self, make_dispatcher, deliveries, subscription):
        """Test the outcome log line carries the event type."""
        capture = structlog.testing.CapturingLogger()
        dispatcher = make_dispatcher(Receiver(200))
        dispatcher._logger = structlog.wrap_logger(
            capture, processors=[], wrapper_class=structlog.BoundLogger
        )
        delivery = await add_delivery(deliveries, subscription)

        result = await dispatcher.attempt(delivery)

        assert result.success is True
        logged = {call.kwargs["event"]: call.kwargs for call in capture.calls}
        assert logged["delivery_success"]["event_type"] == "order.created"
        assert logged["delivery_success"]["delivery_id"] == delivery.id


# ============================================================================
# Failed Attempt Tests
# ============================================================================


class TestFailedAttempts:
    """Tests for non-2xx and transport failures."""

    @pytest.mark.asyncio
    async def test_server_error_schedules_retry(
        self, make_dispatcher, subscriptions, deliveries, subscription
    ):
        """Test a 500 moves the delivery to retrying with backoff."""
        dispatcher = make_dispatcher(Receiver(500))
        delivery = await add_delivery(deliveries, subscription)

        result = await dispatcher.attempt(delivery)

        assert result.status == WebhookDeliveryStatus.RETRYING
        stored = await deliveries.get(delivery.id)
        assert stored.attempt_count == 1
        assert stored.http_status_code == 500
        assert stored.error_message == "HTTP 500"
        assert stored.next_retry_at == NOW + timedelta(seconds=60)

        sub = await subscriptions.get(subscription.id)
        assert sub.total_deliveries == 0
        assert sub.last_triggered_at == NOW

    @pytest.mark.asyncio
    async def test_no_retries_left(self, make_dispatcher, subscriptions, deliveries, subscription):
        """Test a subscription without retries fails after one attempt."""
        subscription.max_retries = 0
        await subscriptions.update(subscription)
        dispatcher = make_dispatcher(Receiver(503))
        delivery = await add_delivery(deliveries, subscription)

        result = await dispatcher.attempt(delivery)

        assert result.status == WebhookDeliveryStatus.FAILED
        stored = await deliveries.get(delivery.id)
        assert stored.next_retry_at is None
        sub = await subscriptions.get(subscription.id)
        assert sub.failed_deliveries == 1
        assert sub.total_deliveries == 1

    @pytest.mark.asyncio
    async def test_timeout(self, make_dispatcher, deliveries, subscription):
        """Test timeouts are recorded and retried."""
        dispatcher = make_dispatcher(Receiver(httpx.ReadTimeout("read timed out")))
        delivery = await add_delivery(deliveries, subscription)

        result = await dispatcher.attempt(delivery)

        assert result.status == WebhookDeliveryStatus.RETRYING
        assert result.status_code is None
        assert "timed out" in result.error_message

    @pytest.mark.asyncio
    async def test_connection_error(self, make_dispatcher, deliveries, subscription):
        """Test connection errors are recorded and retried."""
        dispatcher = make_dispatcher(Receiver(httpx.ConnectError("Connection refused")))
        delivery = await add_delivery(deliveries, subscription)

        result = await dispatcher.attempt(delivery)

        assert result.status == WebhookDeliveryStatus.RETRYING
        assert "connection" in result.error_message.lower()

    @pytest.mark.asyncio
    async def test_overall_timeout(self, make_dispatcher, subscriptions, deliveries, subscription):
        """Test timeout_seconds bounds the whole request, not each phase."""
        subscription.timeout_seconds = 1

        async def stalled(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(5)
            return httpx.Response(200)

        await subscriptions.update(subscription)
        dispatcher = WebhookDispatcher(
            subscriptions,
            deliveries,
            client=httpx.AsyncClient(transport=httpx.MockTransport(stalled)),
            retry_policy=RetryPolicy(),
            clock=lambda: NOW,
        )
        delivery = await add_delivery(deliveries, subscription)

        result = await dispatcher.attempt(delivery)

        assert result.status == WebhookDeliveryStatus.RETRYING
        assert result.error_message == "Request timed out after 1s"

    @pytest.mark.asyncio
    async def test_unencodable_header_counts_as_attempt(
        self, make_dispatcher, subscriptions, deliveries, subscription
    ):
        """Test a request that cannot be built still ends in a terminal state."""
        subscription.headers = {"X-Client": "café"}
        subscription.max_retries = 1
        await subscriptions.update(subscription)
        receiver = Receiver(200)
        dispatcher = make_dispatcher(receiver)
        delivery = await add_delivery(deliveries, subscription)

        first = await dispatcher.attempt(delivery)
        second = await dispatcher.attempt(await deliveries.get(delivery.id))

        assert first.status == WebhookDeliveryStatus.RETRYING
        assert second.status == WebhookDeliveryStatus.FAILED
        assert second.error_message.startswith("Request failed: UnicodeEncodeError")
        stored = await deliveries.get(delivery.id)
        assert stored.attempt_count == 2
        assert stored.next_retry_at is None
        assert receiver.requests == []
        assert (await subscriptions.get(subscription.id)).failed_deliveries == 1

    @pytest.mark.asyncio
    async def test_unexpected_transport_error_counts_as_attempt(
        self, make_dispatcher, deliveries, subscription
    ):
        """Test errors outside httpx's hierarchy are recorded and retried."""
        dispatcher = make_dispatcher(Receiver(httpx.InvalidURL("Invalid port: 'x'")))
        delivery = await add_delivery(deliveries, subscription)

        result = await dispatcher.attempt(delivery)

        assert result.status == WebhookDeliveryStatus.RETRYING
        assert result.attempt_count == 1
        assert result.error_message == "Request failed: InvalidURL: Invalid port: 'x'"

    @pytest.mark.asyncio
    async def test_client_error_retried_by_default(self, make_dispatcher, deliveries, subscription):
        """Test 4xx is retried under the uniform policy."""
        dispatcher = make_dispatcher(Receiver(404))
        delivery = await add_delivery(deliveries, subscription)

        result = await dispatcher.attempt(delivery)

        assert result.status == WebhookDeliveryStatus.RETRYING
        assert result.status_code == 404

    @pytest.mark.asyncio
    async def test_client_error_fails_fast_when_configured(
        self, make_dispatcher, deliveries, subscription
    ):
        """Test 4xx fails immediately when client errors are not retried."""
        dispatcher = make_dispatcher(
            Receiver(422),
            retry_policy=RetryPolicy(retry_client_errors=False),
        )
        delivery = await add_delivery(deliveries, subscription)

        result = await dispatcher.attempt(delivery)

        assert result.status == WebhookDeliveryStatus.FAILED
        assert result.attempt_count == 1

    @pytest.mark.asyncio
    async def test_redirect_not_followed(self, make_dispatcher, deliveries, subscription):
        """Test a redirect is a failed attempt and is not followed."""
        receiver = Receiver(
            httpx.Response(302, headers={"Location": "https://elsewhere.example.com/"}),
        )
        dispatcher = make_dispatcher(receiver)
        delivery = await add_delivery(deliveries, subscription)

        result = await dispatcher.attempt(delivery)

        assert len(receiver.requests) == 1
        assert result.status == WebhookDeliveryStatus.RETRYING
        assert result.status_code == 302

    @pytest.mark.asyncio
    async def test_success_on_second_attempt(
        self, make_dispatcher, subscriptions, deliveries, subscription
    ):
        """Test 500 then 200 ends delivered after two attempts."""
        dispatcher = make_dispatcher(Receiver(500, 200))
        delivery = await add_delivery(deliveries, subscription)

        await dispatcher.attempt(delivery)
        result = await dispatcher.attempt(await deliveries.get(delivery.id))

        assert result.status == WebhookDeliveryStatus.DELIVERED
        assert result.attempt_count == 2
        sub = await subscriptions.get(subscription.id)
        assert sub.successful_deliveries == 1
        assert sub.total_deliveries == 1

    @pytest.mark.asyncio
    async def test_attempt_ceiling(self, make_dispatcher, subscriptions, deliveries, subscription):
        """Test a failing endpoint gets exactly max_retries + 1 attempts."""
        receiver = Receiver(500)
        dispatcher = make_dispatcher(receiver)
        delivery = await add_delivery(deliveries, subscription)

        for _ in range(10):
            current = await deliveries.get(delivery.id)
            if current.is_terminal:
                break
            await dispatcher.attempt(current)

        stored = await deliveries.get(delivery.id)
        assert stored.status == WebhookDeliveryStatus.FAILED
        assert stored.attempt_count == 4
        assert len(receiver.requests) == 4
        assert stored.next_retry_at is None
        assert (await subscriptions.get(subscription.id)).failed_deliveries == 1

    @pytest.mark.asyncio
    async def test_same_body_on_every_attempt(self, make_dispatcher, deliveries, subscription):
        """Test retries post identical bytes with the same envelope id."""
        receiver = Receiver(500, 200)
        dispatcher = make_dispatcher(receiver)
        delivery = await add_delivery(deliveries, subscription)

        await dispatcher.attempt(delivery)
        await dispatcher.attempt(await deliveries.get(delivery.id))

        assert receiver.requests[0].content == receiver.requests[1].content


# ============================================================================
# Claim and Cancellation Tests
# ============================================================================


class TestClaims:
    """Tests for claim handling and subscription checks."""

    @pytest.mark.asyncio
    async def test_stale_snapshot_skipped(self, make_dispatcher, deliveries, subscription):
        """Test a lost claim makes no HTTP call."""
        receiver = Receiver(200)
        dispatcher = make_dispatcher(receiver)
        delivery = await add_delivery(deliveries, subscription)
        await deliveries.claim(delivery.id, 0, NOW)

        assert await dispatcher.attempt(delivery) is None
        assert receiver.requests == []

    @pytest.mark.asyncio
    async def test_concurrent_attempts_single_request(self, make_dispatcher, deliveries, subscription):
        """Test two workers racing on one delivery produce one request."""
        receiver = Receiver(200)
        dispatcher = make_dispatcher(receiver)
        delivery = await add_delivery(deliveries, subscription)

        results = await asyncio.gather(dispatcher.attempt(delivery), dispatcher.attempt(delivery))

        assert sum(r is not None for r in results) == 1
        assert len(receiver.requests) == 1

    @pytest.mark.asyncio
    async def test_inactive_subscription_cancels(
        self, make_dispatcher, subscriptions, deliveries, subscription
    ):
        """Test deliveries of inactive subscriptions fail without a request."""
        subscription.is_active = False
        await subscriptions.update(subscription)
        receiver = Receiver(200)
        dispatcher = make_dispatcher(receiver)
        delivery = await add_delivery(deliveries, subscription)

        result = await dispatcher.attempt(delivery)

        assert result.status == WebhookDeliveryStatus.FAILED
        assert result.error_message == "Subscription is inactive"
        assert result.attempt_count == 0
        assert receiver.requests == []

    @pytest.mark.asyncio
    async def test_deleted_subscription_cancels(
        self, make_dispatcher, subscriptions, deliveries, subscription
    ):
        """Test deliveries of deleted subscriptions fail without a request."""
        delivery = await add_delivery(deliveries, subscription)
        await subscriptions.delete(subscription.id)
        receiver = Receiver(200)
        dispatcher = make_dispatcher(receiver)

        result = await dispatcher.attempt(delivery)

        assert result.status == WebhookDeliveryStatus.FAILED
        assert result.error_message == "Subscription not found"
        assert receiver.requests == []

    @pytest.mark.asyncio
    async def test_concurrency_bounded(self, subscriptions, deliveries, subscription):
        """Test no more than max_concurrent_deliveries requests are in flight."""
        in_flight = 0
        peak = 0

        async def slow_handler(request: httpx.Request) -> httpx.Response:
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return httpx.Response(200)

        dispatcher = WebhookDispatcher(
            subscriptions,
            deliveries,
            client=httpx.AsyncClient(transport=httpx.MockTransport(slow_handler)),
            max_concurrent_deliveries=2,
            retry_policy=RetryPolicy(),
        )
        pending = [await add_delivery(deliveries, subscription) for _ in range(6)]

        results = await asyncio.gather(*(dispatcher.attempt(d) for d in pending))

        assert all(r.success for r in results)
        assert peak <= 2


# ============================================================================
# Test Webhook Tests
# ============================================================================


class TestSendTest:
    """Tests for send_test."""

    @pytest.mark.asyncio
    async def test_success(self, make_dispatcher, deliveries):
        """Test a reachable URL reports success and nothing is recorded."""
        receiver = Receiver(200)
        dispatcher = make_dispatcher(receiver)

        result = await dispatcher.send_test("https://hooks.example.com/test", "s3cret")

        assert result.success is True
        assert result.status_code == 200
        assert result.response_body == "ok"
        request = receiver.requests[0]
        assert request.headers[EVENT_HEADER] == "order.created"
        assert verify_signature(request.content, request.headers[SIGNATURE_HEADER], "s3cret")
        _, total = await deliveries.query(DeliveryQuery(tenant_id="tenant-a"))
        assert total == 0

    @pytest.mark.asyncio
    async def test_default_secret(self, make_dispatcher):
        """Test the fixed test secret is used when none is given."""
        receiver = Receiver(200)
        dispatcher = make_dispatcher(receiver)

        await dispatcher.send_test("https://hooks.example.com/test")

        request = receiver.requests[0]
        assert verify_signature(request.content, request.headers[SIGNATURE_HEADER], TEST_SECRET)

    @pytest.mark.asyncio
    async def test_non_2xx(self, make_dispatcher):
        """Test a non-2xx response reports failure with the status."""
        dispatcher = make_dispatcher(Receiver(500))

        result = await dispatcher.send_test("https://hooks.example.com/test")

        assert result.success is False
        assert result.status_code == 500

    @pytest.mark.asyncio
    async def test_unreachable(self, make_dispatcher):
        """Test transport errors are reported, not raised."""
        dispatcher = make_dispatcher(Receiver(httpx.ConnectError("Connection refused")))

        result = await dispatcher.send_test("https://hooks.example.com/test")

        assert result.success is False
        assert result.status_code is None
        assert "Connection refused" in result.error_message


# ============================================================================
# Lifecycle Tests
# ============================================================================


class TestClose:
    """Tests for client ownership."""

    @pytest.mark.asyncio
    async def test_owned_client_closed(self, subscriptions, deliveries):
        """Test the dispatcher closes a client it created."""
        dispatcher = WebhookDispatcher(subscriptions, deliveries, retry_policy=RetryPolicy())

        await dispatcher.close()

        assert dispatcher._client.is_closed

    @pytest.mark.asyncio
    async def test_injected_client_left_open(self, subscriptions, deliveries):
        """Test an injected client is left to its owner."""
        client = httpx.AsyncClient(transport=httpx.MockTransport(Receiver(200)))
        dispatcher = WebhookDispatcher(subscriptions, deliveries, client=client, retry_policy=RetryPolicy())

        await dispatcher.close()

        assert not client.is_closed
        await client.aclose()
