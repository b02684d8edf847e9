"""Reliable outbound webhook delivery for tenant integrations.

This module provides:
- WebhookEvent: Closed catalogue of subscribable domain events
- SubscriptionRegistry: Tenant-scoped subscription management
- WebhookEmitter: Fan-out of committed events into pending deliveries
- WebhookDispatcher: Signed HTTP attempts with outcome classification
- RetryScheduler: Background re-dispatch with exponential backoff
- DeliveryLedger: Delivery history, statistics and subscription health
- WebhookEngine: Wiring of all of the above around shared stores
"""

from orderhooks.webhooks.dispatcher import WebhookDispatcher
from orderhooks.webhooks.emitter import WebhookEmitter
from orderhooks.webhooks.engine import WebhookEngine
from orderhooks.webhooks.errors import (
    DeliveryError,
    NotFoundError,
    PermanentDeliveryError,
    TransientDeliveryError,
    ValidationError,
    WebhookError,
)
from orderhooks.webhooks.events import WebhookEvent, WebhookPayload, create_webhook_event
from orderhooks.webhooks.ledger import (
    DeliveryLedger,
    DeliveryPage,
    EventStats,
    SubscriptionHealth,
    WebhookStats,
)
from orderhooks.webhooks.models import (
    DeliveryResult,
    WebhookDelivery,
    WebhookDeliveryStatus,
    WebhookSubscription,
    WebhookTestResult,
)
from orderhooks.webhooks.registry import SubscriptionRegistry
from orderhooks.webhooks.retry import RetryPolicy
from orderhooks.webhooks.scheduler import RetryScheduler
from orderhooks.webhooks.security import generate_signature, verify_signature
from orderhooks.webhooks.sqlite_store import SQLiteDeliveryStore, SQLiteSubscriptionStore
from orderhooks.webhooks.store import (
    DeliveryQuery,
    DeliveryStore,
    InMemoryDeliveryStore,
    InMemorySubscriptionStore,
    SubscriptionStore,
)

__all__ = [
    # Events
    "WebhookEvent",
    "WebhookPayload",
    "create_webhook_event",
    # Models
    "DeliveryResult",
    "WebhookDelivery",
    "WebhookDeliveryStatus",
    "WebhookSubscription",
    "WebhookTestResult",
    # Errors
    "DeliveryError",
    "NotFoundError",
    "PermanentDeliveryError",
    "TransientDeliveryError",
    "ValidationError",
    "WebhookError",
    # Stores
    "DeliveryQuery",
    "DeliveryStore",
    "InMemoryDeliveryStore",
    "InMemorySubscriptionStore",
    "SQLiteDeliveryStore",
    "SQLiteSubscriptionStore",
    "SubscriptionStore",
    # Components
    "DeliveryLedger",
    "RetryPolicy",
    "RetryScheduler",
    "SubscriptionRegistry",
    "WebhookDispatcher",
    "WebhookEmitter",
    "WebhookEngine",
    # Ledger views
    "DeliveryPage",
    "EventStats",
    "SubscriptionHealth",
    "WebhookStats",
    # Security
    "generate_signature",
    "verify_signature",
]
