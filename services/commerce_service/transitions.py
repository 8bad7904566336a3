"""Status mapping from payment results onto orders and bookings."""
import logging
from typing import Optional

from shared.database import utcnow

from .models import (
    Booking,
    BookingStatus,
    Order,
    OrderStatus,
    PaymentStatus,
    parse_payment_status,
)

logger = logging.getLogger(__name__)


def order_status_for(payment_status: PaymentStatus) -> Optional[OrderStatus]:
    """Paid confirms; Failed and Refunded cancel; Pending leaves the order alone."""
    payment_status = parse_payment_status(payment_status)
    if payment_status == PaymentStatus.PAID:
        return OrderStatus.CONFIRMED
    if payment_status in (PaymentStatus.FAILED, PaymentStatus.REFUNDED):
        return OrderStatus.CANCELLED
    return None


def booking_status_for(payment_status: PaymentStatus) -> Optional[BookingStatus]:
    target = order_status_for(payment_status)
    return BookingStatus(target.value) if target else None


def apply_payment_status_to_order(order: Order, payment_status: PaymentStatus) -> bool:
    """Move ``order`` to the status implied by the payment. Returns True if it changed."""
    target = order_status_for(payment_status)
    if target is None or order.status == target.value:
        return False

    logger.info(f"Order {order.id}: {order.status} -> {target.value}")
    order.status = target.value
    order.modified_date = utcnow()
    return True


def apply_payment_status_to_booking(booking: Booking, payment_status: PaymentStatus) -> bool:
    """Same mapping as orders; the booking's modified date is stamped on every reconciliation."""
    target = booking_status_for(payment_status)
    booking.modified_date = utcnow()
    if target is None or booking.status == target.value:
        return False

    logger.info(f"Booking {booking.id}: {booking.status} -> {target.value}")
    booking.status = target.value
    return True
