"""Persistence interfaces for subscriptions and the delivery ledger.

The engine only talks to these abstract stores, so tenant-schema routing
or a different database is a matter of injecting another implementation.
Reads return detached snapshots: mutating a returned model never changes
stored state.
"""

from dataclasses import dataclass
from datetime import datetime

from orderhooks.webhooks.events import WebhookEvent
from orderhooks.webhooks.models import (
    DISPATCHABLE_STATUSES,
    WebhookDelivery,
    WebhookDeliveryStatus,
    WebhookSubscription,
)


@dataclass(frozen=True)
class DeliveryQuery:
    """Filters for delivery ledger queries."""

    tenant_id: str
    subscription_id: str | None = None
    status: WebhookDeliveryStatus | None = None
    event: WebhookEvent | None = None
    from_date: datetime | None = None
    to_date: datetime | None = None

    def matches(self, delivery: WebhookDelivery) -> bool:
        """Check a delivery against every filter."""
        if delivery.tenant_id != self.tenant_id:
            return False
        if self.subscription_id is not None and delivery.subscription_id != self.subscription_id:
            return False
        if self.status is not None and delivery.status != self.status:
            return False
        if self.event is not None and delivery.event != self.event:
            return False
        if self.from_date is not None and delivery.created_at < self.from_date:
            return False
        if self.to_date is not None and delivery.created_at > self.to_date:
            return False
        return True


class SubscriptionStore:
    """Abstract base class for subscription persistence."""

    async def add(self, subscription: WebhookSubscription) -> None:
        """Insert a new subscription."""
        raise NotImplementedError

    async def get(self, subscription_id: str) -> WebhookSubscription | None:
        """Get a subscription by ID."""
        raise NotImplementedError

    async def list_for_tenant(
        self,
        tenant_id: str,
        is_active: bool | None = None,
    ) -> list[WebhookSubscription]:
        """List a tenant's subscriptions, oldest first."""
        raise NotImplementedError

    async def list_for_event(
        self,
        tenant_id: str,
        event: WebhookEvent,
    ) -> list[WebhookSubscription]:
        """List a tenant's active subscriptions that listen to an event."""
        raise NotImplementedError

    async def update(self, subscription: WebhookSubscription) -> bool:
        """Replace the configuration of an existing subscription.

        Counters and ``last_triggered_at`` are owned by ``record_activity``
        and are not written by this call.

        Returns:
            False if the subscription does not exist.
        """
        raise NotImplementedError

    async def delete(self, subscription_id: str) -> bool:
        """Delete a subscription. Its deliveries are kept."""
        raise NotImplementedError

    async def record_activity(
        self,
        subscription_id: str,
        succeeded: bool | None,
        at: datetime,
    ) -> None:
        """Atomically bump delivery counters and ``last_triggered_at``."""
        raise NotImplementedError


class DeliveryStore:
    """Abstract base class for the delivery ledger."""

    async def add(self, delivery: WebhookDelivery) -> None:
        """Insert a new delivery."""
        raise NotImplementedError

    async def get(self, delivery_id: str) -> WebhookDelivery | None:
        """Get a delivery by ID."""
        raise NotImplementedError

    async def claim(
        self,
        delivery_id: str,
        expected_version: int,
        lease_until: datetime,
    ) -> WebhookDelivery | None:
        """Take exclusive ownership of a dispatchable delivery.

        Succeeds only if the stored version still equals ``expected_version``
        and the delivery is pending or retrying. On success the version is
        bumped and ``next_retry_at`` moved to ``lease_until`` so the
        scheduler skips it while the attempt runs.

        Returns:
            The claimed delivery, or None if another worker got there first.
        """
        raise NotImplementedError

    async def update(self, delivery: WebhookDelivery) -> bool:
        """Persist attempt results for a claimed delivery.

        Compare-and-swap on ``delivery.version``; bumps the version of both
        the stored record and ``delivery`` on success. Delivered records are
        never overwritten.

        Returns:
            False if the record changed underneath the caller.
        """
        raise NotImplementedError

    async def list_due(self, now: datetime, limit: int) -> list[WebhookDelivery]:
        """Dispatchable deliveries with ``next_retry_at <= now``, oldest due first."""
        raise NotImplementedError

    async def query(
        self,
        query: DeliveryQuery,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[list[WebhookDelivery], int]:
        """Filtered page of deliveries, newest first, plus the total match count."""
        raise NotImplementedError


class InMemorySubscriptionStore(SubscriptionStore):
    """In-memory subscription store for development and testing.

    Every method completes without awaiting, so each call is atomic with
    respect to other coroutines on the event loop.
    """

    def __init__(self) -> None:
        """Initialize in-memory storage."""
        self._subscriptions: dict[str, WebhookSubscription] = {}

    async def add(self, subscription: WebhookSubscription) -> None:
        """Insert a new subscription."""
        self._subscriptions[subscription.id] = subscription.model_copy(deep=True)

    async def get(self, subscription_id: str) -> WebhookSubscription | None:
        """Get a subscription by ID."""
        subscription = self._subscriptions.get(subscription_id)
        return subscription.model_copy(deep=True) if subscription else None

    async def list_for_tenant(
        self,
        tenant_id: str,
        is_active: bool | None = None,
    ) -> list[WebhookSubscription]:
        """List a tenant's subscriptions, oldest first."""
        subscriptions = [
            s
            for s in self._subscriptions.values()
            if s.tenant_id == tenant_id and (is_active is None or s.is_active == is_active)
        ]
        subscriptions.sort(key=lambda s: s.created_at)
        return [s.model_copy(deep=True) for s in subscriptions]

    async def list_for_event(
        self,
        tenant_id: str,
        event: WebhookEvent,
    ) -> list[WebhookSubscription]:
        """List a tenant's active subscriptions that listen to an event."""
        return [
            s
            for s in await self.list_for_tenant(tenant_id, is_active=True)
            if s.is_subscribed_to(event)
        ]

    async def update(self, subscription: WebhookSubscription) -> bool:
        """Replace the configuration of an existing subscription."""
        stored = self._subscriptions.get(subscription.id)
        if stored is None:
            return False

        self._subscriptions[subscription.id] = subscription.model_copy(
            deep=True,
            update={
                "total_deliveries": stored.total_deliveries,
                "successful_deliveries": stored.successful_deliveries,
                "failed_deliveries": stored.failed_deliveries,
                "last_triggered_at": stored.last_triggered_at,
            },
        )
        return True

    async def delete(self, subscription_id: str) -> bool:
        """Delete a subscription."""
        return self._subscriptions.pop(subscription_id, None) is not None

    async def record_activity(
        self,
        subscription_id: str,
        succeeded: bool | None,
        at: datetime,
    ) -> None:
        """Bump delivery counters and ``last_triggered_at``."""
        stored = self._subscriptions.get(subscription_id)
        if stored is not None:
            stored.record_activity(succeeded, at)


class InMemoryDeliveryStore(DeliveryStore):
    """In-memory delivery ledger for development and testing."""

    def __init__(self) -> None:
        """Initialize in-memory storage."""
        self._deliveries: dict[str, WebhookDelivery] = {}

    async def add(self, delivery: WebhookDelivery) -> None:
        """Insert a new delivery."""
        self._deliveries[delivery.id] = delivery.model_copy(deep=True)

    async def get(self, delivery_id: str) -> WebhookDelivery | None:
        """Get a delivery by ID."""
        delivery = self._deliveries.get(delivery_id)
        return delivery.model_copy(deep=True) if delivery else None

    async def claim(
        self,
        delivery_id: str,
        expected_version: int,
        lease_until: datetime,
    ) -> WebhookDelivery | None:
        """Take exclusive ownership of a dispatchable delivery."""
        stored = self._deliveries.get(delivery_id)
        if (
            stored is None
            or stored.version != expected_version
            or stored.status not in DISPATCHABLE_STATUSES
        ):
            return None

        stored.version += 1
        stored.next_retry_at = lease_until
        return stored.model_copy(deep=True)

    async def update(self, delivery: WebhookDelivery) -> bool:
        """Persist attempt results for a claimed delivery."""
        stored = self._deliveries.get(delivery.id)
        if (
            stored is None
            or stored.version != delivery.version
            or stored.status == WebhookDeliveryStatus.DELIVERED
        ):
            return False

        delivery.version += 1
        self._deliveries[delivery.id] = delivery.model_copy(
            deep=True,
            update={"payload": stored.payload},
        )
        return True

    async def list_due(self, now: datetime, limit: int) -> list[WebhookDelivery]:
        """Dispatchable deliveries that are due, oldest due first."""
        due = [
            d
            for d in self._deliveries.values()
            if d.status in DISPATCHABLE_STATUSES
            and d.next_retry_at is not None
            and d.next_retry_at <= now
        ]
        due.sort(key=lambda d: d.next_retry_at)  # type: ignore[arg-type, return-value]
        return [d.model_copy(deep=True) for d in due[:limit]]

    async def query(
        self,
        query: DeliveryQuery,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[list[WebhookDelivery], int]:
        """Filtered page of deliveries, newest first."""
        matches = [d for d in self._deliveries.values() if query.matches(d)]
        matches.sort(key=lambda d: d.created_at, reverse=True)
        page = matches[offset : offset + limit]
        return [d.model_copy(deep=True) for d in page], len(matches)
