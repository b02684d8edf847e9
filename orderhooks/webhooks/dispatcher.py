"""Webhook delivery dispatcher.

Performs a single HTTP attempt for a delivery: claims the record, posts the
stored envelope with signature headers, classifies the outcome and writes
it back to the ledger. Retries are not awaited here; a failed attempt only
schedules ``next_retry_at`` and the retry scheduler picks it up later.
"""

import asyncio
import time
from collections.abc import Callable
from datetime import datetime, timedelta

import httpx
import structlog

from orderhooks.config import settings
from orderhooks.webhooks.errors import (
    DeliveryError,
    PermanentDeliveryError,
    TransientDeliveryError,
)
from orderhooks.webhooks.events import WebhookEvent, create_webhook_event
from orderhooks.webhooks.models import (
    DEFAULT_TIMEOUT_SECONDS,
    DeliveryResult,
    WebhookDelivery,
    WebhookSubscription,
    WebhookTestResult,
    utc_now,
)
from orderhooks.webhooks.retry import RetryPolicy
from orderhooks.webhooks.security import create_signature_headers, merge_headers
from orderhooks.webhooks.store import DeliveryStore, SubscriptionStore

logger = structlog.get_logger(__name__)

# How long a claimed delivery stays invisible to the scheduler
DEFAULT_LEASE_SECONDS = 180

TEST_SECRET = "test-secret"

Clock = Callable[[], datetime]


class WebhookDispatcher:
    """Delivers webhook payloads to subscriber endpoints.

    Features:
    - One shared ``httpx.AsyncClient`` with per-request timeouts
    - Bounded concurrency across all outbound calls
    - HMAC signature headers recomputed per attempt with the current secret
    - Optimistic claim so a delivery is attempted by one worker at a time
    """

    def __init__(
        self,
        subscriptions: SubscriptionStore,
        deliveries: DeliveryStore,
        *,
        retry_policy: RetryPolicy | None = None,
        client: httpx.AsyncClient | None = None,
        max_concurrent_deliveries: int | None = None,
        response_body_limit: int | None = None,
        lease_seconds: float = DEFAULT_LEASE_SECONDS,
        clock: Clock = utc_now,
    ) -> None:
        """Initialize the dispatcher.

        Args:
            subscriptions: Subscription store.
            deliveries: Delivery ledger store.
            retry_policy: Backoff policy (built from settings if not provided).
            client: HTTP client. A private client is created and owned if omitted.
            max_concurrent_deliveries: Max concurrent outbound requests.
            response_body_limit: Bytes of response body read per attempt.
            lease_seconds: Claim lease; must exceed the longest request timeout.
            clock: Source of the current time.
        """
        self._subscriptions = subscriptions
        self._deliveries = deliveries
        self._retry_policy = retry_policy or RetryPolicy.from_settings()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(follow_redirects=False)
        self._max_concurrent = max_concurrent_deliveries or settings.MAX_CONCURRENT_DELIVERIES
        self._semaphore = asyncio.Semaphore(self._max_concurrent)
        self._response_body_limit = response_body_limit or settings.RESPONSE_BODY_LIMIT
        self._lease = timedelta(seconds=lease_seconds)
        self._clock = clock
        self._logger = logger.bind(component="webhook_dispatcher")

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry_policy

    async def attempt(self, delivery: WebhookDelivery) -> DeliveryResult | None:
        """Make one delivery attempt.

        The claim is taken only once a concurrency slot is free, so the
        lease covers the request and never the wait for a slot.

        Args:
            delivery: Snapshot of the delivery; its ``version`` is used for
                the claim.

        Returns:
            Attempt outcome, or None if the delivery was claimed elsewhere,
            is no longer dispatchable, or changed during the attempt.
        """
        async with self._semaphore:
            claimed = await self._deliveries.claim(
                delivery.id,
                delivery.version,
                self._clock() + self._lease,
            )
            if claimed is None:
                self._logger.debug(
                    "delivery_claim_lost",
                    delivery_id=delivery.id,
                    version=delivery.version,
                )
                return None

            subscription = await self._subscriptions.get(claimed.subscription_id)
            if subscription is None or subscription.tenant_id != claimed.tenant_id:
                return await self._cancel(claimed, "Subscription not found")
            if not subscription.is_active:
                return await self._cancel(claimed, "Subscription is inactive")

            return await self._send(claimed, subscription)

    async def _post(
        self,
        url: str,
        body: bytes,
        headers: dict[str, str],
        timeout_seconds: float,
    ) -> tuple[httpx.Response, str | None]:
        """POST a body and read at most ``response_body_limit`` bytes back.

        ``timeout_seconds`` bounds the whole exchange, not each phase.
        """
        async with asyncio.timeout(timeout_seconds):
            async with self._client.stream(
                "POST",
                url,
                content=body,
                headers=headers,
                timeout=timeout_seconds,
                follow_redirects=False,
            ) as response:
                return response, await self._read_body(response)

    async def _read_body(self, response: httpx.Response) -> str | None:
        received = bytearray()
        async for chunk in response.aiter_bytes():
            received.extend(chunk)
            if len(received) >= self._response_body_limit:
                break
        if not received:
            return None
        text = bytes(received[: self._response_body_limit]).decode(
            response.encoding or "utf-8", errors="replace"
        )
        return text[: self._response_body_limit]

    async def _send(
        self,
        delivery: WebhookDelivery,
        subscription: WebhookSubscription,
    ) -> DeliveryResult | None:
        """POST the stored payload and record the outcome."""
        attempt_number = delivery.attempt_count + 1
        started_at = self._clock()

        headers = merge_headers(
            subscription.headers,
            create_signature_headers(
                delivery.payload,
                subscription.secret,
                event=delivery.event.value,
                delivery_id=delivery.id,
                timestamp=int(started_at.timestamp()),
            ),
        )

        self._logger.debug(
            "attempting_delivery",
            delivery_id=delivery.id,
            subscription_id=subscription.id,
            attempt=attempt_number,
            url=subscription.url,
        )

        status_code: int | None = None
        response_body: str | None = None
        failure: DeliveryError | None = None

        start = time.perf_counter()
        try:
            response, response_body = await self._post(
                subscription.url,
                delivery.payload.encode("utf-8"),
                headers,
                subscription.timeout_seconds,
            )
            status_code = response.status_code
            if not response.is_success:
                failure = self._classify_status(status_code, response_body)

        except (httpx.TimeoutException, TimeoutError):
            failure = TransientDeliveryError(
                f"Request timed out after {subscription.timeout_seconds}s"
            )

        except httpx.ConnectError as e:
            failure = TransientDeliveryError(f"Connection error: {e}")

        except httpx.HTTPError as e:
            failure = TransientDeliveryError(f"HTTP error: {e}")

        except Exception as e:
            # Anything raised while building or sending still counts as an attempt
            self._logger.warning(
                "delivery_request_error",
                delivery_id=delivery.id,
                error_type=type(e).__name__,
                error=str(e),
            )
            failure = TransientDeliveryError(f"Request failed: {type(e).__name__}: {e}")

        duration_ms = (time.perf_counter() - start) * 1000
        finished_at = self._clock()

        succeeded: bool | None
        if failure is None:
            delivery.mark_delivered(
                status_code=status_code,  # type: ignore[arg-type]
                response_body=response_body,
                duration_ms=duration_ms,
                at=finished_at,
            )
            succeeded = True
        else:
            next_retry_at = None
            if failure.retryable and self._retry_policy.should_retry(
                attempt_number, subscription.max_retries, status_code
            ):
                next_retry_at = self._retry_policy.next_retry_at(attempt_number, finished_at)
            delivery.mark_failed(
                failure.message,
                status_code=status_code,
                response_body=response_body,
                duration_ms=duration_ms,
                next_retry_at=next_retry_at,
            )
            succeeded = None if next_retry_at else False

        if not await self._deliveries.update(delivery):
            self._logger.warning(
                "delivery_update_conflict",
                delivery_id=delivery.id,
                attempt=attempt_number,
            )
            return None

        await self._subscriptions.record_activity(subscription.id, succeeded, finished_at)

        log_context = {
            "delivery_id": delivery.id,
            "subscription_id": subscription.id,
            "tenant_id": delivery.tenant_id,
            "event_type": delivery.event.value,
            "attempt": delivery.attempt_count,
            "status_code": status_code,
            "duration_ms": round(duration_ms, 2),
        }
        if succeeded is True:
            self._logger.info("delivery_success", **log_context)
        elif succeeded is None:
            self._logger.warning(
                "delivery_retry_scheduled",
                error=delivery.error_message,
                next_retry_at=delivery.next_retry_at.isoformat() if delivery.next_retry_at else None,
                **log_context,
            )
        else:
            self._logger.error(
                "delivery_failed_permanently",
                error=delivery.error_message,
                **log_context,
            )

        return DeliveryResult.from_delivery(delivery)

    async def _cancel(self, delivery: WebhookDelivery, reason: str) -> DeliveryResult | None:
        """Fail a delivery whose subscription can no longer receive it."""
        delivery.mark_cancelled(reason)
        if not await self._deliveries.update(delivery):
            self._logger.warning("delivery_update_conflict", delivery_id=delivery.id)
            return None

        self._logger.info(
            "delivery_cancelled",
            delivery_id=delivery.id,
            subscription_id=delivery.subscription_id,
            reason=reason,
        )
        return DeliveryResult.from_delivery(delivery)

    def _classify_status(self, status_code: int, response_body: str | None) -> DeliveryError:
        """Map a non-2xx response to a delivery error."""
        error_class = (
            TransientDeliveryError
            if self._retry_policy.is_retryable_status(status_code)
            else PermanentDeliveryError
        )
        return error_class(
            f"HTTP {status_code}",
            status_code=status_code,
            response_body=response_body,
        )

    async def send_test(self, url: str, secret: str | None = None) -> WebhookTestResult:
        """Post a sample ``order.created`` payload to a URL.

        Nothing is written to the ledger.

        Args:
            url: Endpoint to test.
            secret: Signing secret; a fixed test secret when omitted.

        Returns:
            Outcome of the single request.
        """
        payload = create_webhook_event(
            WebhookEvent.ORDER_CREATED,
            {"test": True, "message": "Webhook test payload"},
        )
        body = payload.to_json()
        headers = create_signature_headers(
            body,
            secret or TEST_SECRET,
            event=payload.event.value,
            delivery_id=payload.id,
        )

        start = time.perf_counter()
        try:
            async with self._semaphore:
                response, response_body = await self._post(
                    url,
                    body.encode("utf-8"),
                    headers,
                    DEFAULT_TIMEOUT_SECONDS,
                )
        except (httpx.HTTPError, httpx.InvalidURL, TimeoutError) as e:
            self._logger.warning("webhook_test_failed", url=url, error=str(e))
            return WebhookTestResult(
                success=False,
                error_message=str(e) or type(e).__name__,
                duration_ms=(time.perf_counter() - start) * 1000,
            )

        self._logger.info("webhook_test_sent", url=url, status_code=response.status_code)
        return WebhookTestResult(
            success=response.is_success,
            status_code=response.status_code,
            response_body=response_body,
            duration_ms=(time.perf_counter() - start) * 1000,
        )

    async def close(self) -> None:
        """Close the HTTP client if this dispatcher created it."""
        if self._owns_client:
            await self._client.aclose()
