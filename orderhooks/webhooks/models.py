"""Subscription and delivery models.

A subscription is a tenant's registration of a URL for a set of events;
a delivery is one logical notification of one event to one subscription,
possibly spanning several HTTP attempts.
"""

import uuid
from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field, computed_field

from orderhooks.webhooks.events import WebhookEvent
from orderhooks.webhooks.security import generate_secret

DEFAULT_MAX_RETRIES = 3
DEFAULT_TIMEOUT_SECONDS = 30


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


class WebhookDeliveryStatus(str, Enum):
    """Status of a webhook delivery."""

    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"
    RETRYING = "retrying"


# Statuses a dispatcher may still claim
DISPATCHABLE_STATUSES = (WebhookDeliveryStatus.PENDING, WebhookDeliveryStatus.RETRYING)


class WebhookSubscription(BaseModel):
    """A tenant's webhook subscription."""

    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Unique subscription identifier",
    )
    tenant_id: str = Field(
        ..., description="Owning tenant"
    )
    name: str = Field(
        ..., description="Human-readable name"
    )
    url: str = Field(
        ..., description="Absolute http(s) endpoint URL"
    )
    events: list[WebhookEvent] = Field(
        ..., description="Subscribed event types (non-empty)"
    )
    secret: str = Field(
        default_factory=generate_secret,
        description="HMAC signing key",
    )
    is_active: bool = Field(
        default=True,
        description="Whether new deliveries are created",
    )
    headers: dict[str, str] = Field(
        default_factory=dict,
        description="Custom headers merged into each request",
    )
    max_retries: int = Field(
        default=DEFAULT_MAX_RETRIES,
        description="Retries after the initial attempt",
        ge=0,
    )
    timeout_seconds: int = Field(
        default=DEFAULT_TIMEOUT_SECONDS,
        description="Per-attempt request timeout",
        gt=0,
    )

    # Statistics, written by the dispatcher only
    total_deliveries: int = Field(
        default=0,
        description="Deliveries that reached a terminal state",
    )
    successful_deliveries: int = Field(
        default=0,
        description="Deliveries that ended delivered",
    )
    failed_deliveries: int = Field(
        default=0,
        description="Deliveries that exhausted their attempts",
    )
    last_triggered_at: datetime | None = Field(
        default=None,
        description="Time of the most recent attempt, successful or not",
    )

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def success_rate(self) -> float:
        """Percentage of terminal deliveries that succeeded."""
        if self.total_deliveries == 0:
            return 0.0
        return self.successful_deliveries / self.total_deliveries * 100

    def is_subscribed_to(self, event: WebhookEvent) -> bool:
        """Check if this subscription listens to an event type."""
        return event in self.events

    def record_activity(self, succeeded: bool | None, at: datetime) -> None:
        """Record a delivery attempt against the counters.

        Args:
            succeeded: True for a delivered outcome, False for a terminal
                failure, None for an attempt that will be retried.
            at: Attempt time.
        """
        self.last_triggered_at = at
        if succeeded is None:
            return

        self.total_deliveries += 1
        if succeeded:
            self.successful_deliveries += 1
        else:
            self.failed_deliveries += 1


class WebhookDelivery(BaseModel):
    """Ledger record of one event delivered to one subscription."""

    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Delivery identifier, also the envelope id",
    )
    tenant_id: str = Field(
        ..., description="Owning tenant"
    )
    subscription_id: str = Field(
        ..., description="Target subscription"
    )
    event: WebhookEvent = Field(
        ..., description="Type of event"
    )
    payload: str = Field(
        ..., description="Serialized envelope, posted verbatim on every attempt"
    )
    status: WebhookDeliveryStatus = Field(
        default=WebhookDeliveryStatus.PENDING,
        description="Current delivery status",
    )

    # Attempt tracking
    attempt_count: int = Field(
        default=0,
        description="HTTP attempts made so far",
    )
    next_retry_at: datetime | None = Field(
        default=None,
        description="When the scheduler may pick this delivery up",
    )
    version: int = Field(
        default=0,
        description="Optimistic concurrency counter, bumped on every write",
    )

    # Response tracking
    http_status_code: int | None = Field(
        default=None,
        description="HTTP status of the last attempt",
    )
    response_body: str | None = Field(
        default=None,
        description="Response body of the last attempt (truncated)",
    )
    error_message: str | None = Field(
        default=None,
        description="Error of the last failed attempt",
    )
    duration_ms: float | None = Field(
        default=None,
        description="Duration of the last attempt",
    )

    # Timestamps
    created_at: datetime = Field(default_factory=utc_now)
    delivered_at: datetime | None = Field(default=None)

    @property
    def is_terminal(self) -> bool:
        """Whether no further attempts will be made."""
        return self.status in (WebhookDeliveryStatus.DELIVERED, WebhookDeliveryStatus.FAILED)

    def mark_delivered(
        self,
        status_code: int,
        response_body: str | None,
        duration_ms: float,
        at: datetime,
    ) -> None:
        """Record a successful attempt."""
        self.attempt_count += 1
        self.status = WebhookDeliveryStatus.DELIVERED
        self.http_status_code = status_code
        self.response_body = response_body
        self.error_message = None
        self.duration_ms = duration_ms
        self.delivered_at = at
        self.next_retry_at = None

    def mark_failed(
        self,
        error_message: str,
        *,
        status_code: int | None,
        response_body: str | None,
        duration_ms: float,
        next_retry_at: datetime | None,
    ) -> None:
        """Record a failed attempt.

        Args:
            error_message: Error description.
            status_code: HTTP status, None for transport errors.
            response_body: Truncated response body.
            duration_ms: Attempt duration.
            next_retry_at: When to retry, or None to fail terminally.
        """
        self.attempt_count += 1
        self.error_message = error_message
        self.http_status_code = status_code
        self.response_body = response_body
        self.duration_ms = duration_ms

        if next_retry_at is not None:
            self.status = WebhookDeliveryStatus.RETRYING
            self.next_retry_at = next_retry_at
        else:
            self.status = WebhookDeliveryStatus.FAILED
            self.next_retry_at = None

    def mark_cancelled(self, reason: str) -> None:
        """Fail terminally without an attempt (subscription gone or inactive)."""
        self.status = WebhookDeliveryStatus.FAILED
        self.error_message = reason
        self.next_retry_at = None


class DeliveryResult(BaseModel):
    """Outcome of one dispatcher attempt on a delivery."""

    delivery_id: str
    subscription_id: str
    status: WebhookDeliveryStatus
    attempt_count: int
    status_code: int | None = None
    error_message: str | None = None
    duration_ms: float | None = None
    next_retry_at: datetime | None = None

    @property
    def success(self) -> bool:
        """Whether the delivery ended delivered."""
        return self.status == WebhookDeliveryStatus.DELIVERED

    @classmethod
    def from_delivery(cls, delivery: WebhookDelivery) -> "DeliveryResult":
        """Summarize a delivery after an attempt."""
        return cls(
            delivery_id=delivery.id,
            subscription_id=delivery.subscription_id,
            status=delivery.status,
            attempt_count=delivery.attempt_count,
            status_code=delivery.http_status_code,
            error_message=delivery.error_message,
            duration_ms=delivery.duration_ms,
            next_retry_at=delivery.next_retry_at,
        )


class WebhookTestResult(BaseModel):
    """Result of posting a sample payload to an arbitrary URL."""

    success: bool
    status_code: int | None = None
    response_body: str | None = None
    error_message: str | None = None
    duration_ms: float
