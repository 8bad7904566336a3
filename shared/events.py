"""Event definitions for payment reconciliation and its downstream consumers."""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """Event types published by the commerce service."""

    # Order events
    ORDER_PLACED = "order.placed"
    ORDER_CANCELLED = "order.cancelled"

    # Booking events
    BOOKING_CANCELLED = "booking.cancelled"

    # Payment events
    PAYMENT_PAID = "payment.paid"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_REFUNDED = "payment.refunded"


class BaseEvent(BaseModel):
    """Base event model with common fields."""

    event_id: UUID = Field(default_factory=uuid4)
    event_type: EventType
    aggregate_id: str  # order id, booking id or payment id
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    version: int = Field(default=1)
    correlation_id: UUID = Field(default_factory=uuid4)
    causation_id: Optional[UUID] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


# Order Events
class OrderPlacedEvent(BaseEvent):
    """Event emitted when an order is created from a basket snapshot."""
    event_type: EventType = EventType.ORDER_PLACED
    order_id: int
    user_id: UUID
    items: list[Dict[str, Any]]  # [{"reference_id": str, "quantity": int, "unit_price": int}]
    total_amount: int


class OrderCancelledEvent(BaseEvent):
    """Event emitted when a user cancels a pending order."""
    event_type: EventType = EventType.ORDER_CANCELLED
    order_id: int
    user_id: UUID
    reason: str


# Booking Events
class BookingCancelledEvent(BaseEvent):
    """Event emitted when a user cancels a pending booking."""
    event_type: EventType = EventType.BOOKING_CANCELLED
    booking_id: UUID
    user_id: UUID
    reason: str


# Payment Events
class PaymentStatusChangedEvent(BaseEvent):
    """Event emitted for every reconciled payment transition."""
    payment_id: UUID
    user_id: UUID
    order_id: Optional[int] = None
    booking_id: Optional[UUID] = None
    order_code: Optional[int] = None
    amount: int
    status: str


class PaymentPaidEvent(PaymentStatusChangedEvent):
    event_type: EventType = EventType.PAYMENT_PAID


class PaymentFailedEvent(PaymentStatusChangedEvent):
    event_type: EventType = EventType.PAYMENT_FAILED


class PaymentRefundedEvent(PaymentStatusChangedEvent):
    event_type: EventType = EventType.PAYMENT_REFUNDED
    refunded_amount: int


# Event Registry for deserialization
EVENT_REGISTRY: Dict[EventType, type[BaseEvent]] = {
    EventType.ORDER_PLACED: OrderPlacedEvent,
    EventType.ORDER_CANCELLED: OrderCancelledEvent,
    EventType.BOOKING_CANCELLED: BookingCancelledEvent,
    EventType.PAYMENT_PAID: PaymentPaidEvent,
    EventType.PAYMENT_FAILED: PaymentFailedEvent,
    EventType.PAYMENT_REFUNDED: PaymentRefundedEvent,
}


def deserialize_event(event_data: Dict[str, Any]) -> BaseEvent:
    """Deserialize event from dictionary."""
    event_type = EventType(event_data["event_type"])
    event_class = EVENT_REGISTRY.get(event_type, BaseEvent)
    return event_class(**event_data)
