"""Subscription registration and management.

Tenant-scoped CRUD over webhook subscriptions. All commands validate their
input and raise typed errors; a subscription owned by another tenant is
reported exactly like a missing one.
"""

import re
from collections.abc import Iterable

import structlog
from pydantic import HttpUrl, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from orderhooks.webhooks.errors import NotFoundError, ValidationError
from orderhooks.webhooks.events import WebhookEvent
from orderhooks.webhooks.models import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_TIMEOUT_SECONDS,
    WebhookSubscription,
    utc_now,
)
from orderhooks.webhooks.security import generate_secret
from orderhooks.webhooks.store import SubscriptionStore

logger = structlog.get_logger(__name__)

MAX_RETRIES_LIMIT = 10
MAX_TIMEOUT_SECONDS = 120
MAX_NAME_LENGTH = 255

_url_adapter = TypeAdapter(HttpUrl)

# RFC 9110 token characters
_HEADER_NAME = re.compile(r"[!#$%&'*+\-.^_`|~0-9A-Za-z]+")
# Visible ASCII plus space and tab; no CR/LF
_HEADER_VALUE = re.compile(r"[\x20-\x7e\t]*")


def validate_name(name: str | None) -> str:
    """Validate a subscription name, returning it stripped."""
    if name is None or not name.strip():
        raise ValidationError("Subscription name must not be blank", field="name")
    name = name.strip()
    if len(name) > MAX_NAME_LENGTH:
        raise ValidationError(
            f"Subscription name must be at most {MAX_NAME_LENGTH} characters",
            field="name",
        )
    return name


def validate_url(url: str | None) -> str:
    """Validate an absolute http(s) endpoint URL.

    The URL is stored as given; parsing only checks its shape.
    """
    if url is None or not url.strip():
        raise ValidationError("Webhook URL must not be blank", field="url")
    url = url.strip()
    try:
        parsed = _url_adapter.validate_python(url)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid webhook URL: {url}", field="url") from e
    if parsed.scheme not in ("http", "https") or not parsed.host:
        raise ValidationError(f"Invalid webhook URL: {url}", field="url")
    return url


def validate_events(events: Iterable[WebhookEvent | str] | None) -> list[WebhookEvent]:
    """Resolve event names against the catalogue.

    Duplicates are dropped, first occurrence wins.
    """
    if events is None:
        raise ValidationError("At least one event is required", field="events")

    resolved: list[WebhookEvent] = []
    for event in events:
        try:
            member = WebhookEvent(event)
        except ValueError as e:
            raise ValidationError(
                f"Unknown event type: {event}",
                field="events",
                details={"supported": WebhookEvent.names()},
            ) from e
        if member not in resolved:
            resolved.append(member)

    if not resolved:
        raise ValidationError("At least one event is required", field="events")
    return resolved


def validate_max_retries(max_retries: int) -> int:
    if max_retries < 0 or max_retries > MAX_RETRIES_LIMIT:
        raise ValidationError(
            f"max_retries must be between 0 and {MAX_RETRIES_LIMIT}",
            field="max_retries",
        )
    return max_retries


def validate_timeout(timeout_seconds: int) -> int:
    if timeout_seconds <= 0 or timeout_seconds > MAX_TIMEOUT_SECONDS:
        raise ValidationError(
            f"timeout_seconds must be between 1 and {MAX_TIMEOUT_SECONDS}",
            field="timeout_seconds",
        )
    return timeout_seconds


def validate_headers(headers: dict[str, str] | None) -> dict[str, str]:
    """Check custom headers can be sent as-is.

    Names must be HTTP tokens; values must be printable ASCII.
    """
    if headers is None:
        return {}
    for name, value in headers.items():
        if not name or not name.strip():
            raise ValidationError("Header names must not be blank", field="headers")
        if not _HEADER_NAME.fullmatch(name):
            raise ValidationError(f"Invalid header name: {name!r}", field="headers")
        if not isinstance(value, str):
            raise ValidationError(f"Header {name} must have a string value", field="headers")
        if not _HEADER_VALUE.fullmatch(value):
            raise ValidationError(
                f"Header {name} must contain printable ASCII only",
                field="headers",
            )
    return dict(headers)


class SubscriptionRegistry:
    """Manages webhook subscriptions for all tenants.

    Reads return snapshots; every change goes through the store so other
    components observe it on their next read.
    """

    def __init__(self, store: SubscriptionStore) -> None:
        """Initialize the registry.

        Args:
            store: Subscription persistence backend.
        """
        self._store = store
        self._logger = logger.bind(component="subscription_registry")

    async def create(
        self,
        tenant_id: str,
        name: str,
        url: str,
        events: Iterable[WebhookEvent | str],
        *,
        headers: dict[str, str] | None = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS,
    ) -> WebhookSubscription:
        """Register a new subscription.

        Args:
            tenant_id: Owning tenant.
            name: Human-readable name.
            url: Absolute http(s) endpoint.
            events: Event types to subscribe to (at least one).
            headers: Custom headers sent with every delivery.
            max_retries: Retries after the initial attempt.
            timeout_seconds: Per-attempt request timeout.

        Returns:
            Created subscription, including its generated secret.

        Raises:
            ValidationError: If any field is invalid.
        """
        subscription = WebhookSubscription(
            tenant_id=tenant_id,
            name=validate_name(name),
            url=validate_url(url),
            events=validate_events(events),
            headers=validate_headers(headers),
            max_retries=validate_max_retries(max_retries),
            timeout_seconds=validate_timeout(timeout_seconds),
        )

        await self._store.add(subscription)

        self._logger.info(
            "subscription_created",
            tenant_id=tenant_id,
            subscription_id=subscription.id,
            url=subscription.url,
            event_count=len(subscription.events),
        )

        return subscription

    async def get(self, tenant_id: str, subscription_id: str) -> WebhookSubscription:
        """Get a subscription by ID.

        Raises:
            NotFoundError: If the tenant has no such subscription.
        """
        subscription = await self._store.get(subscription_id)
        if subscription is None or subscription.tenant_id != tenant_id:
            raise NotFoundError("subscription", subscription_id)
        return subscription

    async def list_subscriptions(
        self,
        tenant_id: str,
        is_active: bool | None = None,
    ) -> list[WebhookSubscription]:
        """List a tenant's subscriptions, optionally filtered by active flag."""
        return await self._store.list_for_tenant(tenant_id, is_active=is_active)

    async def update(
        self,
        tenant_id: str,
        subscription_id: str,
        *,
        name: str | None = None,
        url: str | None = None,
        events: Iterable[WebhookEvent | str] | None = None,
        headers: dict[str, str] | None = None,
        max_retries: int | None = None,
        timeout_seconds: int | None = None,
    ) -> WebhookSubscription:
        """Update the provided fields of a subscription.

        Fields left as None keep their current value.

        Raises:
            NotFoundError: If the tenant has no such subscription.
            ValidationError: If a provided field is invalid.
        """
        subscription = await self.get(tenant_id, subscription_id)

        if name is not None:
            subscription.name = validate_name(name)
        if url is not None:
            subscription.url = validate_url(url)
        if events is not None:
            subscription.events = validate_events(events)
        if headers is not None:
            subscription.headers = validate_headers(headers)
        if max_retries is not None:
            subscription.max_retries = validate_max_retries(max_retries)
        if timeout_seconds is not None:
            subscription.timeout_seconds = validate_timeout(timeout_seconds)

        subscription.updated_at = utc_now()
        await self._save(subscription)

        self._logger.info(
            "subscription_updated",
            tenant_id=tenant_id,
            subscription_id=subscription_id,
        )

        return subscription

    async def toggle(
        self,
        tenant_id: str,
        subscription_id: str,
        is_active: bool,
    ) -> WebhookSubscription:
        """Activate or deactivate a subscription.

        Deactivation also stops pending retries: the dispatcher cancels
        any delivery whose subscription is inactive.
        """
        subscription = await self.get(tenant_id, subscription_id)
        subscription.is_active = is_active
        subscription.updated_at = utc_now()
        await self._save(subscription)

        self._logger.info(
            "subscription_toggled",
            tenant_id=tenant_id,
            subscription_id=subscription_id,
            is_active=is_active,
        )

        return subscription

    async def delete(self, tenant_id: str, subscription_id: str) -> None:
        """Delete a subscription. Its delivery history is retained.

        Raises:
            NotFoundError: If the tenant has no such subscription.
        """
        await self.get(tenant_id, subscription_id)
        if not await self._store.delete(subscription_id):
            raise NotFoundError("subscription", subscription_id)

        self._logger.info(
            "subscription_deleted",
            tenant_id=tenant_id,
            subscription_id=subscription_id,
        )

    async def regenerate_secret(self, tenant_id: str, subscription_id: str) -> str:
        """Replace a subscription's signing secret.

        Attempts made after this call sign with the new secret, including
        retries of deliveries emitted before it.

        Returns:
            The new secret.
        """
        subscription = await self.get(tenant_id, subscription_id)
        subscription.secret = generate_secret()
        subscription.updated_at = utc_now()
        await self._save(subscription)

        self._logger.info(
            "subscription_secret_regenerated",
            tenant_id=tenant_id,
            subscription_id=subscription_id,
        )

        return subscription.secret

    async def _save(self, subscription: WebhookSubscription) -> None:
        if not await self._store.update(subscription):
            raise NotFoundError("subscription", subscription.id)
