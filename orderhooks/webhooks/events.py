"""Webhook event catalogue and envelope model.

This module defines the closed set of domain events tenants can subscribe
to, and the JSON envelope every delivery carries to the receiver.
"""

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class WebhookEvent(str, Enum):
    """Supported webhook event types.

    Events are organized by category:
    - order.*: Order lifecycle events
    - shipment.*: Courier shipment tracking events
    - ndr.*: Non-delivery report workflow events
    - inventory.*: Stock level alerts
    """

    # Order events
    ORDER_CREATED = "order.created"
    ORDER_CONFIRMED = "order.confirmed"
    ORDER_STATUS_CHANGED = "order.status_changed"
    ORDER_CANCELLED = "order.cancelled"

    # Shipment events
    SHIPMENT_CREATED = "shipment.created"
    SHIPMENT_PICKED_UP = "shipment.picked_up"
    SHIPMENT_IN_TRANSIT = "shipment.in_transit"
    SHIPMENT_OUT_FOR_DELIVERY = "shipment.out_for_delivery"
    SHIPMENT_DELIVERED = "shipment.delivered"
    SHIPMENT_RTO_INITIATED = "shipment.rto_initiated"

    # NDR events
    NDR_CREATED = "ndr.created"
    NDR_ESCALATED = "ndr.escalated"
    NDR_RESOLVED = "ndr.resolved"

    # Inventory events
    INVENTORY_LOW = "inventory.low"
    INVENTORY_OUT_OF_STOCK = "inventory.out_of_stock"

    @classmethod
    def names(cls) -> list[str]:
        """Return the wire names of every catalogue member."""
        return [event.value for event in cls]


class WebhookPayload(BaseModel):
    """Envelope posted to subscribers.

    The ``id`` identifies the delivery, not the attempt: every retry of the
    same delivery posts identical bytes, so receivers can deduplicate on it.
    """

    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Delivery identifier, stable across retries",
    )
    event: WebhookEvent = Field(
        ..., description="Event type"
    )
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="When the domain event occurred",
    )
    data: dict[str, Any] = Field(
        default_factory=dict,
        description="Event-specific snapshot",
    )

    def to_json(self) -> str:
        """Serialize to the exact JSON body sent on the wire."""
        return self.model_dump_json()


def create_webhook_event(
    event: WebhookEvent,
    data: dict[str, Any],
    *,
    event_id: str | None = None,
    timestamp: datetime | None = None,
) -> WebhookPayload:
    """Create a webhook envelope.

    Args:
        event: Type of event.
        data: Event-specific data.
        event_id: Optional explicit envelope ID.
        timestamp: Optional explicit event time.

    Returns:
        WebhookPayload ready for delivery.
    """
    payload = WebhookPayload(event=event, data=data)

    if event_id:
        payload.id = event_id

    if timestamp:
        payload.timestamp = timestamp

    return payload


# Event data builders used by producers (order, shipment, NDR and stock workflows)


def build_order_created_data(
    order_id: str,
    order_number: str,
    *,
    channel: str | None = None,
    status: str = "pending",
    total_amount: float = 0,
    currency: str = "INR",
    item_count: int = 0,
) -> dict[str, Any]:
    """Build the data snapshot for an order.created event."""
    return {
        "order_id": order_id,
        "order_number": order_number,
        "channel": channel,
        "status": status,
        "total_amount": total_amount,
        "currency": currency,
        "item_count": item_count,
    }


def build_order_status_data(
    order_id: str,
    order_number: str,
    previous_status: str,
    new_status: str,
    *,
    reason: str | None = None,
) -> dict[str, Any]:
    """Build the data snapshot for order status transitions."""
    return {
        "order_id": order_id,
        "order_number": order_number,
        "previous_status": previous_status,
        "new_status": new_status,
        "reason": reason,
    }


def build_shipment_data(
    shipment_id: str,
    order_id: str,
    awb_number: str,
    courier: str,
    status: str,
    *,
    location: str | None = None,
    expected_delivery_date: datetime | None = None,
) -> dict[str, Any]:
    """Build the data snapshot for shipment tracking events."""
    return {
        "shipment_id": shipment_id,
        "order_id": order_id,
        "awb_number": awb_number,
        "courier": courier,
        "status": status,
        "location": location,
        "expected_delivery_date": (
            expected_delivery_date.isoformat() if expected_delivery_date else None
        ),
    }


def build_ndr_data(
    ndr_id: str,
    order_id: str,
    awb_number: str,
    reason: str,
    *,
    attempt_count: int = 1,
    action: str | None = None,
    resolution: str | None = None,
) -> dict[str, Any]:
    """Build the data snapshot for NDR workflow events."""
    return {
        "ndr_id": ndr_id,
        "order_id": order_id,
        "awb_number": awb_number,
        "reason": reason,
        "attempt_count": attempt_count,
        "action": action,
        "resolution": resolution,
    }


def build_inventory_data(
    product_id: str,
    sku: str,
    product_name: str,
    current_stock: int,
    reorder_level: int,
    *,
    location: str | None = None,
) -> dict[str, Any]:
    """Build the data snapshot for stock alert events."""
    return {
        "product_id": product_id,
        "sku": sku,
        "product_name": product_name,
        "location": location,
        "current_stock": current_stock,
        "reorder_level": reorder_level,
    }
