"""Webhook subscription management API endpoints.

Provides REST API for managing a tenant's webhook subscriptions and
viewing delivery history. The tenant is taken from the ``X-Tenant-ID``
header set by the upstream tenant-resolution layer.
"""

from datetime import datetime
from typing import Annotated

import structlog
from fastapi import APIRouter, Depends, Header, Query, Request
from pydantic import BaseModel, Field

from orderhooks.webhooks.engine import WebhookEngine
from orderhooks.webhooks.events import WebhookEvent
from orderhooks.webhooks.ledger import DeliveryPage, SubscriptionHealth, WebhookStats
from orderhooks.webhooks.models import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_TIMEOUT_SECONDS,
    WebhookDelivery,
    WebhookDeliveryStatus,
    WebhookSubscription,
    WebhookTestResult,
)
from orderhooks.webhooks.registry import validate_url

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/webhook-subscriptions", tags=["Webhooks"])


def get_engine(request: Request) -> WebhookEngine:
    """Engine attached to the application."""
    return request.app.state.engine


EngineDep = Annotated[WebhookEngine, Depends(get_engine)]
TenantDep = Annotated[str, Header(alias="X-Tenant-ID", min_length=1)]


# ============================================================================
# Request Models
# ============================================================================


class SubscriptionCreateRequest(BaseModel):
    """Request to create a webhook subscription."""

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "name": "ERP sync",
                    "url": "https://erp.example.com/hooks/orders",
                    "events": ["order.created", "order.cancelled"],
                    "headers": {"X-Api-Key": "abc123"},
                    "max_retries": 3,
                    "timeout_seconds": 30,
                }
            ]
        }
    }

    name: str = Field(..., description="Human-readable name")
    url: str = Field(..., description="Absolute http(s) endpoint URL")
    events: list[str] = Field(..., description="Event types to subscribe to")
    headers: dict[str, str] | None = Field(
        default=None, description="Custom headers sent with every delivery"
    )
    max_retries: int = Field(
        default=DEFAULT_MAX_RETRIES, description="Retries after the initial attempt"
    )
    timeout_seconds: int = Field(
        default=DEFAULT_TIMEOUT_SECONDS, description="Per-attempt request timeout"
    )


class SubscriptionUpdateRequest(BaseModel):
    """Request to update a webhook subscription. Omitted fields are kept."""

    name: str | None = Field(default=None, description="New name")
    url: str | None = Field(default=None, description="New endpoint URL")
    events: list[str] | None = Field(default=None, description="New event subscriptions")
    headers: dict[str, str] | None = Field(default=None, description="New custom headers")
    max_retries: int | None = Field(default=None, description="New max retries")
    timeout_seconds: int | None = Field(default=None, description="New timeout")


class ToggleRequest(BaseModel):
    """Request to activate or deactivate a subscription."""

    is_active: bool = Field(..., description="Whether the subscription receives new events")


class TestWebhookRequest(BaseModel):
    """Request to send a sample payload to a URL."""

    url: str = Field(..., description="Endpoint to test")
    secret: str | None = Field(default=None, description="Secret used to sign the sample")


# ============================================================================
# Response Models
# ============================================================================


class SubscriptionResponse(BaseModel):
    """Webhook subscription details response."""

    id: str
    name: str
    url: str
    events: list[WebhookEvent]
    secret: str
    is_active: bool
    headers: dict[str, str]
    max_retries: int
    timeout_seconds: int
    total_deliveries: int
    successful_deliveries: int
    failed_deliveries: int
    success_rate: float
    last_triggered_at: datetime | None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_subscription(cls, subscription: WebhookSubscription) -> "SubscriptionResponse":
        """Create response from WebhookSubscription model."""
        return cls(
            id=subscription.id,
            name=subscription.name,
            url=subscription.url,
            events=subscription.events,
            secret=subscription.secret,
            is_active=subscription.is_active,
            headers=subscription.headers,
            max_retries=subscription.max_retries,
            timeout_seconds=subscription.timeout_seconds,
            total_deliveries=subscription.total_deliveries,
            successful_deliveries=subscription.successful_deliveries,
            failed_deliveries=subscription.failed_deliveries,
            success_rate=round(subscription.success_rate, 2),
            last_triggered_at=subscription.last_triggered_at,
            created_at=subscription.created_at,
            updated_at=subscription.updated_at,
        )


class SecretResponse(BaseModel):
    """Newly generated signing secret."""

    subscription_id: str
    secret: str


class EventListResponse(BaseModel):
    """Supported event types."""

    events: list[str]


# ============================================================================
# Endpoints
# ============================================================================


@router.get("", response_model=list[SubscriptionResponse])
async def list_subscriptions(
    engine: EngineDep,
    tenant_id: TenantDep,
    is_active: bool | None = None,
) -> list[SubscriptionResponse]:
    """List the tenant's webhook subscriptions."""
    subscriptions = await engine.registry.list_subscriptions(tenant_id, is_active=is_active)
    return [SubscriptionResponse.from_subscription(s) for s in subscriptions]


@router.post(
    "",
    response_model=SubscriptionResponse,
    responses={
        201: {"description": "Subscription created"},
        400: {"description": "Invalid request"},
    },
    status_code=201,
)
async def create_subscription(
    request: SubscriptionCreateRequest,
    engine: EngineDep,
    tenant_id: TenantDep,
) -> SubscriptionResponse:
    """Register a new webhook subscription.

    A signing secret is generated and returned; receivers use it to verify
    the ``X-Webhook-Signature`` header.
    """
    subscription = await engine.registry.create(
        tenant_id,
        request.name,
        request.url,
        request.events,
        headers=request.headers,
        max_retries=request.max_retries,
        timeout_seconds=request.timeout_seconds,
    )
    return SubscriptionResponse.from_subscription(subscription)


@router.post("/test", response_model=WebhookTestResult)
async def test_webhook_url(
    request: TestWebhookRequest,
    engine: EngineDep,
    tenant_id: TenantDep,
) -> WebhookTestResult:
    """Send a sample ``order.created`` payload to a URL.

    Nothing is recorded in the delivery ledger.
    """
    url = validate_url(request.url)
    result = await engine.dispatcher.send_test(url, request.secret)

    logger.info(
        "webhook_url_tested",
        tenant_id=tenant_id,
        url=url,
        success=result.success,
    )

    return result


@router.get("/deliveries", response_model=DeliveryPage)
async def list_deliveries(
    engine: EngineDep,
    tenant_id: TenantDep,
    subscription_id: str | None = None,
    status: WebhookDeliveryStatus | None = None,
    event: WebhookEvent | None = None,
    from_date: datetime | None = None,
    to_date: datetime | None = None,
    page: Annotated[int, Query(ge=1)] = 1,
    page_size: Annotated[int, Query(ge=1, le=100)] = 20,
) -> DeliveryPage:
    """List the tenant's deliveries, newest first."""
    return await engine.ledger.list_deliveries(
        tenant_id,
        subscription_id=subscription_id,
        status=status,
        event=event,
        from_date=from_date,
        to_date=to_date,
        page=page,
        page_size=page_size,
    )


@router.get(
    "/deliveries/{delivery_id}",
    response_model=WebhookDelivery,
    responses={404: {"description": "Delivery not found"}},
)
async def get_delivery(
    delivery_id: str,
    engine: EngineDep,
    tenant_id: TenantDep,
) -> WebhookDelivery:
    """Get one delivery including payload and last response."""
    return await engine.ledger.get_delivery(tenant_id, delivery_id)


@router.get("/stats", response_model=WebhookStats)
async def get_stats(
    engine: EngineDep,
    tenant_id: TenantDep,
    days: Annotated[int, Query(ge=1, le=365)] = 30,
) -> WebhookStats:
    """Delivery statistics for the last ``days`` days."""
    return await engine.ledger.get_stats(tenant_id, days=days)


@router.get("/events", response_model=EventListResponse)
async def list_events(engine: EngineDep) -> EventListResponse:
    """List every event type a subscription can listen to."""
    return EventListResponse(events=engine.ledger.list_event_names())


@router.get(
    "/{subscription_id}",
    response_model=SubscriptionResponse,
    responses={404: {"description": "Subscription not found"}},
)
async def get_subscription(
    subscription_id: str,
    engine: EngineDep,
    tenant_id: TenantDep,
) -> SubscriptionResponse:
    """Get subscription details by ID."""
    subscription = await engine.registry.get(tenant_id, subscription_id)
    return SubscriptionResponse.from_subscription(subscription)


@router.put(
    "/{subscription_id}",
    response_model=SubscriptionResponse,
    responses={
        400: {"description": "Invalid request"},
        404: {"description": "Subscription not found"},
    },
)
async def update_subscription(
    subscription_id: str,
    request: SubscriptionUpdateRequest,
    engine: EngineDep,
    tenant_id: TenantDep,
) -> SubscriptionResponse:
    """Update a subscription."""
    subscription = await engine.registry.update(
        tenant_id,
        subscription_id,
        name=request.name,
        url=request.url,
        events=request.events,
        headers=request.headers,
        max_retries=request.max_retries,
        timeout_seconds=request.timeout_seconds,
    )
    return SubscriptionResponse.from_subscription(subscription)


@router.patch(
    "/{subscription_id}/toggle",
    response_model=SubscriptionResponse,
    responses={404: {"description": "Subscription not found"}},
)
async def toggle_subscription(
    subscription_id: str,
    request: ToggleRequest,
    engine: EngineDep,
    tenant_id: TenantDep,
) -> SubscriptionResponse:
    """Activate or deactivate a subscription."""
    subscription = await engine.registry.toggle(tenant_id, subscription_id, request.is_active)
    return SubscriptionResponse.from_subscription(subscription)


@router.delete(
    "/{subscription_id}",
    responses={
        204: {"description": "Subscription deleted"},
        404: {"description": "Subscription not found"},
    },
    status_code=204,
)
async def delete_subscription(
    subscription_id: str,
    engine: EngineDep,
    tenant_id: TenantDep,
) -> None:
    """Delete a subscription. Its delivery history is kept."""
    await engine.registry.delete(tenant_id, subscription_id)


@router.post(
    "/{subscription_id}/regenerate-secret",
    response_model=SecretResponse,
    responses={404: {"description": "Subscription not found"}},
)
async def regenerate_secret(
    subscription_id: str,
    engine: EngineDep,
    tenant_id: TenantDep,
) -> SecretResponse:
    """Replace the subscription's signing secret."""
    secret = await engine.registry.regenerate_secret(tenant_id, subscription_id)
    return SecretResponse(subscription_id=subscription_id, secret=secret)


@router.get(
    "/{subscription_id}/health",
    response_model=SubscriptionHealth,
    responses={404: {"description": "Subscription not found"}},
)
async def get_subscription_health(
    subscription_id: str,
    engine: EngineDep,
    tenant_id: TenantDep,
    recent_failures: Annotated[int, Query(ge=0, le=50)] = 5,
) -> SubscriptionHealth:
    """Success rate, last activity and recent failures of a subscription."""
    return await engine.ledger.get_subscription_health(
        tenant_id,
        subscription_id,
        recent_failures=recent_failures,
    )
