"""Delivery ledger queries.

Read-only views over delivery history for a tenant: filtered pages,
single-delivery detail, aggregate statistics and per-subscription health.
"""

import math
from collections.abc import AsyncIterator
from dataclasses import replace
from datetime import datetime, timedelta

import structlog
from pydantic import BaseModel, Field, computed_field

from orderhooks.webhooks.dispatcher import Clock
from orderhooks.webhooks.errors import NotFoundError, ValidationError
from orderhooks.webhooks.events import WebhookEvent
from orderhooks.webhooks.models import (
    DISPATCHABLE_STATUSES,
    WebhookDelivery,
    WebhookDeliveryStatus,
    utc_now,
)
from orderhooks.webhooks.store import DeliveryQuery, DeliveryStore, SubscriptionStore

logger = structlog.get_logger(__name__)

MAX_PAGE_SIZE = 100
_SCAN_PAGE_SIZE = 500


def _rate(successful: int, total: int) -> float:
    return round(successful / total * 100, 2) if total else 0.0


class DeliveryPage(BaseModel):
    """One page of delivery history, newest first."""

    items: list[WebhookDelivery]
    total: int
    page: int
    page_size: int

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.page_size) if self.total else 0


class EventStats(BaseModel):
    """Delivery counts for one event type."""

    event: WebhookEvent
    total_deliveries: int = 0
    successful_deliveries: int = 0
    failed_deliveries: int = 0

    @computed_field  # type: ignore[prop-decorator]
    @property
    def success_rate(self) -> float:
        return _rate(self.successful_deliveries, self.total_deliveries)


class WebhookStats(BaseModel):
    """Aggregate webhook statistics for a tenant over a time window."""

    period_days: int
    total_subscriptions: int = 0
    active_subscriptions: int = 0
    total_deliveries: int = 0
    successful_deliveries: int = 0
    failed_deliveries: int = 0
    pending_deliveries: int = Field(
        default=0,
        description="Deliveries still pending or retrying",
    )
    event_stats: list[EventStats] = Field(default_factory=list)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def overall_success_rate(self) -> float:
        return _rate(self.successful_deliveries, self.total_deliveries)


class DeliveryFailure(BaseModel):
    """Summary of a recent failed attempt."""

    delivery_id: str
    event: WebhookEvent
    status: WebhookDeliveryStatus
    attempt_count: int
    http_status_code: int | None = None
    error_message: str | None = None
    created_at: datetime


class SubscriptionHealth(BaseModel):
    """Health summary of one subscription."""

    subscription_id: str
    name: str
    url: str
    is_active: bool
    total_deliveries: int
    successful_deliveries: int
    failed_deliveries: int
    success_rate: float
    last_triggered_at: datetime | None = None
    recent_failures: list[DeliveryFailure] = Field(default_factory=list)


class DeliveryLedger:
    """Tenant-scoped queries over the delivery ledger."""

    def __init__(
        self,
        subscriptions: SubscriptionStore,
        deliveries: DeliveryStore,
        *,
        clock: Clock = utc_now,
    ) -> None:
        self._subscriptions = subscriptions
        self._deliveries = deliveries
        self._clock = clock
        self._logger = logger.bind(component="delivery_ledger")

    async def list_deliveries(
        self,
        tenant_id: str,
        *,
        subscription_id: str | None = None,
        status: WebhookDeliveryStatus | None = None,
        event: WebhookEvent | None = None,
        from_date: datetime | None = None,
        to_date: datetime | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> DeliveryPage:
        """Get a filtered page of deliveries, newest first.

        Args:
            tenant_id: Tenant whose deliveries are listed.
            subscription_id: Only deliveries of this subscription.
            status: Only deliveries in this status.
            event: Only deliveries of this event type.
            from_date: Created at or after.
            to_date: Created at or before.
            page: 1-based page number.
            page_size: Items per page (1-100).

        Raises:
            ValidationError: On an invalid page or page size.
        """
        if page < 1:
            raise ValidationError("page must be at least 1", field="page")
        if page_size < 1 or page_size > MAX_PAGE_SIZE:
            raise ValidationError(
                f"page_size must be between 1 and {MAX_PAGE_SIZE}",
                field="page_size",
            )

        query = DeliveryQuery(
            tenant_id=tenant_id,
            subscription_id=subscription_id,
            status=status,
            event=event,
            from_date=from_date,
            to_date=to_date,
        )
        items, total = await self._deliveries.query(
            query,
            offset=(page - 1) * page_size,
            limit=page_size,
        )
        return DeliveryPage(items=items, total=total, page=page, page_size=page_size)

    async def get_delivery(self, tenant_id: str, delivery_id: str) -> WebhookDelivery:
        """Get one delivery, including payload and response body.

        Raises:
            NotFoundError: If the tenant has no such delivery.
        """
        delivery = await self._deliveries.get(delivery_id)
        if delivery is None or delivery.tenant_id != tenant_id:
            raise NotFoundError("delivery", delivery_id)
        return delivery

    async def _scan(self, query: DeliveryQuery) -> AsyncIterator[WebhookDelivery]:
        """Iterate once over every delivery matching a query.

        The scan is bounded by the time it started, so deliveries created
        while it runs cannot shift the offset pages.
        """
        if query.to_date is None:
            query = replace(query, to_date=self._clock())

        seen: set[str] = set()
        offset = 0
        while True:
            items, total = await self._deliveries.query(query, offset=offset, limit=_SCAN_PAGE_SIZE)
            for item in items:
                if item.id in seen:
                    continue
                seen.add(item.id)
                yield item
            offset += len(items)
            if not items or offset >= total:
                return

    async def get_stats(self, tenant_id: str, days: int = 30) -> WebhookStats:
        """Aggregate statistics for deliveries created in the last ``days`` days.

        Event stats are ordered by volume, largest first.
        """
        if days < 1:
            raise ValidationError("days must be at least 1", field="days")

        subscriptions = await self._subscriptions.list_for_tenant(tenant_id)
        stats = WebhookStats(
            period_days=days,
            total_subscriptions=len(subscriptions),
            active_subscriptions=sum(1 for s in subscriptions if s.is_active),
        )

        by_event: dict[WebhookEvent, EventStats] = {}
        query = DeliveryQuery(
            tenant_id=tenant_id,
            from_date=self._clock() - timedelta(days=days),
        )

        async for delivery in self._scan(query):
            event_stats = by_event.setdefault(delivery.event, EventStats(event=delivery.event))
            event_stats.total_deliveries += 1
            stats.total_deliveries += 1

            if delivery.status == WebhookDeliveryStatus.DELIVERED:
                event_stats.successful_deliveries += 1
                stats.successful_deliveries += 1
            elif delivery.status == WebhookDeliveryStatus.FAILED:
                event_stats.failed_deliveries += 1
                stats.failed_deliveries += 1
            elif delivery.status in DISPATCHABLE_STATUSES:
                stats.pending_deliveries += 1

        stats.event_stats = sorted(
            by_event.values(),
            key=lambda s: (-s.total_deliveries, s.event.value),
        )
        return stats

    async def get_subscription_health(
        self,
        tenant_id: str,
        subscription_id: str,
        recent_failures: int = 5,
    ) -> SubscriptionHealth:
        """Success rate, last activity and latest failures of a subscription.

        Raises:
            NotFoundError: If the tenant has no such subscription.
        """
        subscription = await self._subscriptions.get(subscription_id)
        if subscription is None or subscription.tenant_id != tenant_id:
            raise NotFoundError("subscription", subscription_id)

        failures: list[DeliveryFailure] = []
        query = DeliveryQuery(tenant_id=tenant_id, subscription_id=subscription_id)
        async for delivery in self._scan(query):
            if len(failures) >= recent_failures:
                break
            if delivery.error_message is None:
                continue
            failures.append(
                DeliveryFailure(
                    delivery_id=delivery.id,
                    event=delivery.event,
                    status=delivery.status,
                    attempt_count=delivery.attempt_count,
                    http_status_code=delivery.http_status_code,
                    error_message=delivery.error_message,
                    created_at=delivery.created_at,
                )
            )

        return SubscriptionHealth(
            subscription_id=subscription.id,
            name=subscription.name,
            url=subscription.url,
            is_active=subscription.is_active,
            total_deliveries=subscription.total_deliveries,
            successful_deliveries=subscription.successful_deliveries,
            failed_deliveries=subscription.failed_deliveries,
            success_rate=round(subscription.success_rate, 2),
            last_triggered_at=subscription.last_triggered_at,
            recent_failures=failures,
        )

    @staticmethod
    def list_event_names() -> list[str]:
        """Wire names of every supported event."""
        return WebhookEvent.names()
