"""SQLite storage backend for subscriptions and the delivery ledger.

Both stores share one database file. Each operation opens its own
connection, so the stores are safe to share between the request path,
the dispatcher and the retry scheduler.
"""

import json
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiosqlite
import structlog

from orderhooks.webhooks.events import WebhookEvent
from orderhooks.webhooks.models import (
    WebhookDelivery,
    WebhookDeliveryStatus,
    WebhookSubscription,
)
from orderhooks.webhooks.store import DeliveryQuery, DeliveryStore, SubscriptionStore

logger = structlog.get_logger(__name__)

DEFAULT_DB_PATH = Path("data/webhooks.db")

# Fixed-width UTC format so stored timestamps sort correctly as text
_DATETIME_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

_DISPATCHABLE = (WebhookDeliveryStatus.PENDING.value, WebhookDeliveryStatus.RETRYING.value)


def _format_dt(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).strftime(_DATETIME_FORMAT)


def _parse_dt(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.strptime(value, _DATETIME_FORMAT).replace(tzinfo=UTC)


class SQLiteStorage:
    """Shared connection settings and schema for the SQLite stores."""

    def __init__(self, db_path: Path | str | None = None) -> None:
        """Initialize the storage.

        Args:
            db_path: Path to SQLite database. Uses default if not provided.
        """
        self.db_path = Path(db_path) if db_path else DEFAULT_DB_PATH
        self._logger = logger.bind(component=type(self).__name__)
        self._initialized = False

    async def _ensure_initialized(self) -> None:
        """Ensure database tables exist."""
        if self._initialized:
            return

        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS webhook_subscriptions (
                    id TEXT PRIMARY KEY,
                    tenant_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    url TEXT NOT NULL,
                    events_json TEXT NOT NULL,
                    secret TEXT NOT NULL,
                    is_active INTEGER NOT NULL,
                    headers_json TEXT NOT NULL,
                    max_retries INTEGER NOT NULL,
                    timeout_seconds INTEGER NOT NULL,
                    total_deliveries INTEGER NOT NULL DEFAULT 0,
                    successful_deliveries INTEGER NOT NULL DEFAULT 0,
                    failed_deliveries INTEGER NOT NULL DEFAULT 0,
                    last_triggered_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            # No foreign key: deliveries outlive deleted subscriptions
            await db.execute("""
                CREATE TABLE IF NOT EXISTS webhook_deliveries (
                    id TEXT PRIMARY KEY,
                    tenant_id TEXT NOT NULL,
                    subscription_id TEXT NOT NULL,
                    event TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    status TEXT NOT NULL,
                    attempt_count INTEGER NOT NULL,
                    next_retry_at TEXT,
                    version INTEGER NOT NULL,
                    http_status_code INTEGER,
                    response_body TEXT,
                    error_message TEXT,
                    duration_ms REAL,
                    created_at TEXT NOT NULL,
                    delivered_at TEXT
                )
            """)

            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_subscriptions_tenant
                ON webhook_subscriptions(tenant_id)
            """)

            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_deliveries_due
                ON webhook_deliveries(status, next_retry_at)
            """)

            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_deliveries_tenant_created
                ON webhook_deliveries(tenant_id, created_at)
            """)

            await db.commit()

        self._initialized = True
        self._logger.info("storage_initialized", db_path=str(self.db_path))


class SQLiteSubscriptionStore(SQLiteStorage, SubscriptionStore):
    """SQLite-backed subscription store."""

    async def add(self, subscription: WebhookSubscription) -> None:
        """Insert a new subscription."""
        await self._ensure_initialized()

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO webhook_subscriptions (
                    id, tenant_id, name, url, events_json, secret, is_active,
                    headers_json, max_retries, timeout_seconds, total_deliveries,
                    successful_deliveries, failed_deliveries, last_triggered_at,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    subscription.id,
                    subscription.tenant_id,
                    subscription.name,
                    subscription.url,
                    json.dumps([e.value for e in subscription.events]),
                    subscription.secret,
                    int(subscription.is_active),
                    json.dumps(subscription.headers),
                    subscription.max_retries,
                    subscription.timeout_seconds,
                    subscription.total_deliveries,
                    subscription.successful_deliveries,
                    subscription.failed_deliveries,
                    _format_dt(subscription.last_triggered_at),
                    _format_dt(subscription.created_at),
                    _format_dt(subscription.updated_at),
                ),
            )
            await db.commit()

        self._logger.debug("subscription_saved", subscription_id=subscription.id)

    async def get(self, subscription_id: str) -> WebhookSubscription | None:
        """Get a subscription by ID."""
        await self._ensure_initialized()

        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                "SELECT * FROM webhook_subscriptions WHERE id = ?",
                (subscription_id,),
            ) as cursor:
                row = await cursor.fetchone()

        if not row:
            return None

        return self._row_to_subscription(dict(row))

    async def list_for_tenant(
        self,
        tenant_id: str,
        is_active: bool | None = None,
    ) -> list[WebhookSubscription]:
        """List a tenant's subscriptions, oldest first."""
        await self._ensure_initialized()

        conditions = ["tenant_id = ?"]
        params: list[Any] = [tenant_id]

        if is_active is not None:
            conditions.append("is_active = ?")
            params.append(int(is_active))

        query = f"""
            SELECT * FROM webhook_subscriptions
            WHERE {' AND '.join(conditions)}
            ORDER BY created_at ASC
        """

        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(query, params) as cursor:
                return [self._row_to_subscription(dict(row)) async for row in cursor]

    async def list_for_event(
        self,
        tenant_id: str,
        event: WebhookEvent,
    ) -> list[WebhookSubscription]:
        """List a tenant's active subscriptions that listen to an event."""
        subscriptions = await self.list_for_tenant(tenant_id, is_active=True)
        return [s for s in subscriptions if s.is_subscribed_to(event)]

    async def update(self, subscription: WebhookSubscription) -> bool:
        """Replace the configuration of an existing subscription."""
        await self._ensure_initialized()

        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE webhook_subscriptions SET
                    name = ?, url = ?, events_json = ?, secret = ?, is_active = ?,
                    headers_json = ?, max_retries = ?, timeout_seconds = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    subscription.name,
                    subscription.url,
                    json.dumps([e.value for e in subscription.events]),
                    subscription.secret,
                    int(subscription.is_active),
                    json.dumps(subscription.headers),
                    subscription.max_retries,
                    subscription.timeout_seconds,
                    _format_dt(subscription.updated_at),
                    subscription.id,
                ),
            )
            await db.commit()
            return cursor.rowcount == 1

    async def delete(self, subscription_id: str) -> bool:
        """Delete a subscription. Its deliveries are kept."""
        await self._ensure_initialized()

        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "DELETE FROM webhook_subscriptions WHERE id = ?",
                (subscription_id,),
            )
            await db.commit()
            return cursor.rowcount == 1

    async def record_activity(
        self,
        subscription_id: str,
        succeeded: bool | None,
        at: datetime,
    ) -> None:
        """Atomically bump delivery counters and ``last_triggered_at``."""
        await self._ensure_initialized()

        terminal = int(succeeded is not None)
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                UPDATE webhook_subscriptions SET
                    last_triggered_at = ?,
                    total_deliveries = total_deliveries + ?,
                    successful_deliveries = successful_deliveries + ?,
                    failed_deliveries = failed_deliveries + ?
                WHERE id = ?
                """,
                (
                    _format_dt(at),
                    terminal,
                    int(succeeded is True),
                    int(succeeded is False),
                    subscription_id,
                ),
            )
            await db.commit()

    def _row_to_subscription(self, row: dict[str, Any]) -> WebhookSubscription:
        """Convert a database row to a WebhookSubscription."""
        return WebhookSubscription(
            id=row["id"],
            tenant_id=row["tenant_id"],
            name=row["name"],
            url=row["url"],
            events=[WebhookEvent(e) for e in json.loads(row["events_json"])],
            secret=row["secret"],
            is_active=bool(row["is_active"]),
            headers=json.loads(row["headers_json"]),
            max_retries=row["max_retries"],
            timeout_seconds=row["timeout_seconds"],
            total_deliveries=row["total_deliveries"],
            successful_deliveries=row["successful_deliveries"],
            failed_deliveries=row["failed_deliveries"],
            last_triggered_at=_parse_dt(row["last_triggered_at"]),
            created_at=_parse_dt(row["created_at"]),
            updated_at=_parse_dt(row["updated_at"]),
        )


class SQLiteDeliveryStore(SQLiteStorage, DeliveryStore):
    """SQLite-backed delivery ledger."""

    async def add(self, delivery: WebhookDelivery) -> None:
        """Insert a new delivery."""
        await self._ensure_initialized()

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO webhook_deliveries (
                    id, tenant_id, subscription_id, event, payload, status,
                    attempt_count, next_retry_at, version, http_status_code,
                    response_body, error_message, duration_ms, created_at, delivered_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    delivery.id,
                    delivery.tenant_id,
                    delivery.subscription_id,
                    delivery.event.value,
                    delivery.payload,
                    delivery.status.value,
                    delivery.attempt_count,
                    _format_dt(delivery.next_retry_at),
                    delivery.version,
                    delivery.http_status_code,
                    delivery.response_body,
                    delivery.error_message,
                    delivery.duration_ms,
                    _format_dt(delivery.created_at),
                    _format_dt(delivery.delivered_at),
                ),
            )
            await db.commit()

        self._logger.debug("delivery_saved", delivery_id=delivery.id)

    async def get(self, delivery_id: str) -> WebhookDelivery | None:
        """Get a delivery by ID."""
        await self._ensure_initialized()

        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                "SELECT * FROM webhook_deliveries WHERE id = ?",
                (delivery_id,),
            ) as cursor:
                row = await cursor.fetchone()

        if not row:
            return None

        return self._row_to_delivery(dict(row))

    async def claim(
        self,
        delivery_id: str,
        expected_version: int,
        lease_until: datetime,
    ) -> WebhookDelivery | None:
        """Take exclusive ownership of a dispatchable delivery."""
        await self._ensure_initialized()

        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                """
                UPDATE webhook_deliveries
                SET version = version + 1, next_retry_at = ?
                WHERE id = ? AND version = ? AND status IN (?, ?)
                """,
                (_format_dt(lease_until), delivery_id, expected_version, *_DISPATCHABLE),
            )
            await db.commit()

            if cursor.rowcount != 1:
                return None

            async with db.execute(
                "SELECT * FROM webhook_deliveries WHERE id = ?",
                (delivery_id,),
            ) as select_cursor:
                row = await select_cursor.fetchone()

        return self._row_to_delivery(dict(row)) if row else None

    async def update(self, delivery: WebhookDelivery) -> bool:
        """Persist attempt results for a claimed delivery."""
        await self._ensure_initialized()

        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE webhook_deliveries SET
                    status = ?, attempt_count = ?, next_retry_at = ?,
                    version = version + 1, http_status_code = ?, response_body = ?,
                    error_message = ?, duration_ms = ?, delivered_at = ?
                WHERE id = ? AND version = ? AND status != ?
                """,
                (
                    delivery.status.value,
                    delivery.attempt_count,
                    _format_dt(delivery.next_retry_at),
                    delivery.http_status_code,
                    delivery.response_body,
                    delivery.error_message,
                    delivery.duration_ms,
                    _format_dt(delivery.delivered_at),
                    delivery.id,
                    delivery.version,
                    WebhookDeliveryStatus.DELIVERED.value,
                ),
            )
            await db.commit()

        if cursor.rowcount != 1:
            return False

        delivery.version += 1
        return True

    async def list_due(self, now: datetime, limit: int) -> list[WebhookDelivery]:
        """Dispatchable deliveries that are due, oldest due first."""
        await self._ensure_initialized()

        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                """
                SELECT * FROM webhook_deliveries
                WHERE status IN (?, ?)
                  AND next_retry_at IS NOT NULL
                  AND next_retry_at <= ?
                ORDER BY next_retry_at ASC
                LIMIT ?
                """,
                (*_DISPATCHABLE, _format_dt(now), limit),
            ) as cursor:
                return [self._row_to_delivery(dict(row)) async for row in cursor]

    async def query(
        self,
        query: DeliveryQuery,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[list[WebhookDelivery], int]:
        """Filtered page of deliveries, newest first."""
        await self._ensure_initialized()

        conditions = ["tenant_id = ?"]
        params: list[Any] = [query.tenant_id]

        if query.subscription_id:
            conditions.append("subscription_id = ?")
            params.append(query.subscription_id)

        if query.status:
            conditions.append("status = ?")
            params.append(query.status.value)

        if query.event:
            conditions.append("event = ?")
            params.append(query.event.value)

        if query.from_date:
            conditions.append("created_at >= ?")
            params.append(_format_dt(query.from_date))

        if query.to_date:
            conditions.append("created_at <= ?")
            params.append(_format_dt(query.to_date))

        where_clause = f"WHERE {' AND '.join(conditions)}"

        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                f"SELECT COUNT(*) FROM webhook_deliveries {where_clause}",
                params,
            ) as cursor:
                count_row = await cursor.fetchone()

            async with db.execute(
                f"""
                SELECT * FROM webhook_deliveries
                {where_clause}
                ORDER BY created_at DESC
                LIMIT ? OFFSET ?
                """,
                [*params, limit, offset],
            ) as cursor:
                deliveries = [self._row_to_delivery(dict(row)) async for row in cursor]

        total = count_row[0] if count_row else 0
        return deliveries, total

    def _row_to_delivery(self, row: dict[str, Any]) -> WebhookDelivery:
        """Convert a database row to a WebhookDelivery."""
        return WebhookDelivery(
            id=row["id"],
            tenant_id=row["tenant_id"],
            subscription_id=row["subscription_id"],
            event=WebhookEvent(row["event"]),
            payload=row["payload"],
            status=WebhookDeliveryStatus(row["status"]),
            attempt_count=row["attempt_count"],
            next_retry_at=_parse_dt(row["next_retry_at"]),
            version=row["version"],
            http_status_code=row["http_status_code"],
            response_body=row["response_body"],
            error_message=row["error_message"],
            duration_ms=row["duration_ms"],
            created_at=_parse_dt(row["created_at"]),
            delivered_at=_parse_dt(row["delivered_at"]),
        )
