"""Wiring of the webhook engine components.

``WebhookEngine`` owns one instance of every component and their shared
stores. It replaces module-level singletons: the API and producers receive
the engine explicitly.
"""

from typing import Any

import httpx
import structlog

from orderhooks.config import Settings, settings
from orderhooks.webhooks.dispatcher import Clock, WebhookDispatcher
from orderhooks.webhooks.emitter import WebhookEmitter
from orderhooks.webhooks.events import WebhookEvent
from orderhooks.webhooks.ledger import DeliveryLedger
from orderhooks.webhooks.models import WebhookDelivery, utc_now
from orderhooks.webhooks.registry import SubscriptionRegistry
from orderhooks.webhooks.retry import RetryPolicy
from orderhooks.webhooks.scheduler import RetryScheduler
from orderhooks.webhooks.sqlite_store import SQLiteDeliveryStore, SQLiteSubscriptionStore
from orderhooks.webhooks.store import (
    DeliveryStore,
    InMemoryDeliveryStore,
    InMemorySubscriptionStore,
    SubscriptionStore,
)

logger = structlog.get_logger(__name__)


class WebhookEngine:
    """Container for the registry, emitter, dispatcher, scheduler and ledger."""

    def __init__(
        self,
        subscriptions: SubscriptionStore,
        deliveries: DeliveryStore,
        *,
        config: Settings | None = None,
        client: httpx.AsyncClient | None = None,
        clock: Clock = utc_now,
    ) -> None:
        """Initialize the engine.

        Args:
            subscriptions: Subscription store shared by all components.
            deliveries: Delivery ledger store shared by all components.
            config: Settings (uses global settings if not provided).
            client: HTTP client for outbound calls.
            clock: Source of the current time.
        """
        self.config = config or settings
        self.subscriptions = subscriptions
        self.deliveries = deliveries

        self.retry_policy = RetryPolicy(
            base_delay_seconds=self.config.RETRY_BASE_SECONDS,
            max_delay_seconds=self.config.RETRY_MAX_SECONDS,
            retry_client_errors=self.config.RETRY_CLIENT_ERRORS,
        )
        self.dispatcher = WebhookDispatcher(
            subscriptions,
            deliveries,
            retry_policy=self.retry_policy,
            client=client,
            max_concurrent_deliveries=self.config.MAX_CONCURRENT_DELIVERIES,
            response_body_limit=self.config.RESPONSE_BODY_LIMIT,
            clock=clock,
        )
        self.registry = SubscriptionRegistry(subscriptions)
        self.emitter = WebhookEmitter(subscriptions, deliveries, self.dispatcher, clock=clock)
        self.scheduler = RetryScheduler(
            deliveries,
            self.dispatcher,
            poll_interval_seconds=self.config.POLL_INTERVAL_SECONDS,
            batch_size=self.config.SCHEDULER_BATCH_SIZE,
            clock=clock,
        )
        self.ledger = DeliveryLedger(subscriptions, deliveries, clock=clock)
        self._logger = logger.bind(component="webhook_engine")

    @classmethod
    def from_settings(cls, config: Settings | None = None, **kwargs: Any) -> "WebhookEngine":
        """Build an engine with stores chosen by ``DATABASE_PATH``.

        An empty path selects the in-memory stores.
        """
        config = config or settings
        subscriptions: SubscriptionStore
        deliveries: DeliveryStore
        if config.DATABASE_PATH:
            subscriptions = SQLiteSubscriptionStore(config.DATABASE_PATH)
            deliveries = SQLiteDeliveryStore(config.DATABASE_PATH)
        else:
            subscriptions = InMemorySubscriptionStore()
            deliveries = InMemoryDeliveryStore()
        return cls(subscriptions, deliveries, config=config, **kwargs)

    async def emit(
        self,
        tenant_id: str,
        event: WebhookEvent | str,
        data: dict[str, Any],
        *,
        wait: bool = False,
    ) -> list[WebhookDelivery]:
        """Shortcut for ``emitter.emit``."""
        return await self.emitter.emit(tenant_id, event, data, wait=wait)

    async def start(self) -> None:
        """Start background processing."""
        if self.config.SCHEDULER_ENABLED:
            self.scheduler.start()
        self._logger.info("webhook_engine_started", scheduler_enabled=self.config.SCHEDULER_ENABLED)

    async def stop(self) -> None:
        """Stop the scheduler, drain first attempts and release the HTTP client."""
        await self.scheduler.stop()
        await self.emitter.shutdown()
        await self.dispatcher.close()
        self._logger.info("webhook_engine_stopped")
