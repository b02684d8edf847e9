"""Event emitter: the producer-facing entry point of the engine.

Producers call ``emit`` after a state transition has been committed. The
emitter fans the event out to every matching subscription of the tenant,
records one pending delivery each and hands them to the dispatcher.
"""

import asyncio
from datetime import timedelta
from typing import Any

import structlog

from orderhooks.webhooks.dispatcher import DEFAULT_LEASE_SECONDS, Clock, WebhookDispatcher
from orderhooks.webhooks.events import WebhookEvent, create_webhook_event
from orderhooks.webhooks.models import WebhookDelivery, utc_now
from orderhooks.webhooks.store import DeliveryStore, SubscriptionStore

logger = structlog.get_logger(__name__)


class WebhookEmitter:
    """Creates deliveries for domain events and dispatches them.

    ``emit`` never raises: failures are logged and the producer's
    transaction is unaffected. Deliveries that could not be dispatched stay
    pending and are picked up by the retry scheduler once their grace
    period has elapsed.
    """

    def __init__(
        self,
        subscriptions: SubscriptionStore,
        deliveries: DeliveryStore,
        dispatcher: WebhookDispatcher,
        *,
        pending_grace_seconds: float = DEFAULT_LEASE_SECONDS,
        clock: Clock = utc_now,
    ) -> None:
        """Initialize the emitter.

        Args:
            subscriptions: Subscription store.
            deliveries: Delivery ledger store.
            dispatcher: Dispatcher used for the first attempt.
            pending_grace_seconds: Delay after which an undispatched pending
                delivery becomes due for the scheduler.
            clock: Source of the current time.
        """
        self._subscriptions = subscriptions
        self._deliveries = deliveries
        self._dispatcher = dispatcher
        self._pending_grace = timedelta(seconds=pending_grace_seconds)
        self._clock = clock
        self._background_tasks: set[asyncio.Task[None]] = set()
        self._logger = logger.bind(component="webhook_emitter")

    @property
    def pending_tasks(self) -> int:
        """Number of first attempts still running in the background."""
        return len(self._background_tasks)

    async def emit(
        self,
        tenant_id: str,
        event: WebhookEvent | str,
        data: dict[str, Any],
        *,
        wait: bool = False,
    ) -> list[WebhookDelivery]:
        """Emit an event to the tenant's subscribers.

        Args:
            tenant_id: Tenant the event belongs to.
            event: Event type or its wire name.
            data: Event-specific snapshot.
            wait: If True, await the first attempt of every delivery.

        Returns:
            Deliveries created, empty when nothing matched or on failure.
        """
        try:
            return await self._emit(tenant_id, event, data, wait=wait)
        except Exception as e:
            self._logger.error(
                "emit_failed",
                tenant_id=tenant_id,
                event_type=str(getattr(event, "value", event)),
                error=str(e),
                exc_info=True,
            )
            return []

    async def _emit(
        self,
        tenant_id: str,
        event: WebhookEvent | str,
        data: dict[str, Any],
        *,
        wait: bool,
    ) -> list[WebhookDelivery]:
        try:
            event_type = WebhookEvent(event)
        except ValueError:
            self._logger.warning("unknown_event_ignored", tenant_id=tenant_id, event_type=str(event))
            return []

        subscriptions = await self._subscriptions.list_for_event(tenant_id, event_type)
        if not subscriptions:
            self._logger.debug(
                "no_subscriptions_for_event",
                tenant_id=tenant_id,
                event_type=event_type.value,
            )
            return []

        now = self._clock()
        deliveries: list[WebhookDelivery] = []

        for subscription in subscriptions:
            delivery = WebhookDelivery(
                tenant_id=tenant_id,
                subscription_id=subscription.id,
                event=event_type,
                payload="",
                created_at=now,
                next_retry_at=now + self._pending_grace,
            )
            # Envelope id doubles as the delivery id
            delivery.payload = create_webhook_event(
                event_type,
                data,
                event_id=delivery.id,
                timestamp=now,
            ).to_json()

            await self._deliveries.add(delivery)
            deliveries.append(delivery)

        tasks = [asyncio.create_task(self._dispatch(d)) for d in deliveries]

        if wait:
            await asyncio.gather(*tasks)
        else:
            for task in tasks:
                self._background_tasks.add(task)
                task.add_done_callback(self._background_tasks.discard)

        self._logger.info(
            "event_emitted",
            tenant_id=tenant_id,
            event_type=event_type.value,
            delivery_count=len(deliveries),
        )

        return deliveries

    async def _dispatch(self, delivery: WebhookDelivery) -> None:
        """First attempt for a new delivery; errors leave it pending."""
        try:
            await self._dispatcher.attempt(delivery)
        except Exception as e:
            self._logger.warning(
                "initial_dispatch_failed",
                delivery_id=delivery.id,
                error=str(e),
            )

    async def shutdown(self) -> None:
        """Wait for background first attempts to finish."""
        if self._background_tasks:
            self._logger.info(
                "waiting_for_pending_deliveries",
                count=len(self._background_tasks),
            )
            await asyncio.gather(*self._background_tasks, return_exceptions=True)
