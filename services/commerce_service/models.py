"""Database models for the Commerce Service."""
from enum import Enum
from typing import Type, TypeVar
from uuid import uuid4

from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Uuid,
)
from sqlalchemy.orm import relationship

from shared.database import Base, utcnow
from shared.errors import ValidationError


class PaymentStatus(str, Enum):
    """Payment status. Only the reconciliation engine moves a payment out of PENDING."""
    PENDING = "Pending"
    PAID = "Paid"
    FAILED = "Failed"
    REFUNDED = "Refunded"


class OrderStatus(str, Enum):
    """Order status, driven by payment status or explicit cancellation."""
    PENDING = "Pending"
    CONFIRMED = "Confirmed"
    CANCELLED = "Cancelled"


class BookingStatus(str, Enum):
    """Booking status, mirrors OrderStatus."""
    PENDING = "Pending"
    CONFIRMED = "Confirmed"
    CANCELLED = "Cancelled"


class BookingType(str, Enum):
    ACCOMMODATION = "Accommodation"
    TRANSPORT = "Transport"
    ENTERTAINMENT = "Entertainment"


E = TypeVar("E", bound=Enum)


def _parse_enum(enum_cls: Type[E], value, label: str) -> E:
    if isinstance(value, enum_cls):
        return value
    text = str(value or "").strip().lower()
    for member in enum_cls:
        if member.value.lower() == text or member.name.lower() == text:
            return member
    raise ValidationError(f"Unknown {label} '{value}'")


def parse_payment_status(value) -> PaymentStatus:
    return _parse_enum(PaymentStatus, value, "payment status")


def parse_order_status(value) -> OrderStatus:
    return _parse_enum(OrderStatus, value, "order status")


def parse_booking_type(value) -> BookingType:
    return _parse_enum(BookingType, value, "booking type")


class Order(Base):
    """Purchase record created atomically from a basket snapshot."""

    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Uuid, nullable=False, index=True)
    order_date = Column(DateTime, default=utcnow, nullable=False)
    total_amount = Column(BigInteger, nullable=False)  # VND
    status = Column(String(20), default=OrderStatus.PENDING.value, nullable=False, index=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    modified_date = Column(DateTime, nullable=True)

    items = relationship(
        "OrderItem", back_populates="order", cascade="all, delete-orphan", order_by="OrderItem.id"
    )
    payments = relationship("Payment", back_populates="order", order_by="Payment.created_at")

    __table_args__ = (
        Index("ix_orders_user_date", "user_id", "order_date"),
    )


class OrderItem(Base):
    """Line item copied from the basket at order creation."""

    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    reference_id = Column(String(64), nullable=False)
    reference_type = Column(String(20), nullable=False, default="product")
    name = Column(String(255), nullable=False, default="")
    quantity = Column(Integer, nullable=False)
    unit_price = Column(BigInteger, nullable=False)

    order = relationship("Order", back_populates="items")

    @property
    def line_total(self) -> int:
        return self.unit_price * self.quantity


class Booking(Base):
    """Reservation of an accommodation, transport seat or show ticket."""

    __tablename__ = "bookings"

    id = Column(Uuid, primary_key=True, default=uuid4)
    user_id = Column(Uuid, nullable=False, index=True)
    booking_type = Column(String(20), nullable=False)
    booking_date = Column(DateTime, nullable=False)
    total_amount = Column(BigInteger, nullable=False)
    status = Column(String(20), default=BookingStatus.PENDING.value, nullable=False, index=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    modified_date = Column(DateTime, nullable=True)

    accommodation_detail = relationship(
        "AccommodationBookingDetail", back_populates="booking", uselist=False, cascade="all, delete-orphan"
    )
    transport_detail = relationship(
        "TransportBookingDetail", back_populates="booking", uselist=False, cascade="all, delete-orphan"
    )
    entertainment_detail = relationship(
        "EntertainmentBookingDetail", back_populates="booking", uselist=False, cascade="all, delete-orphan"
    )

    @property
    def detail(self):
        """The sub-detail selected by the booking type."""
        attribute = {
            BookingType.ACCOMMODATION.value: "accommodation_detail",
            BookingType.TRANSPORT.value: "transport_detail",
            BookingType.ENTERTAINMENT.value: "entertainment_detail",
        }.get(self.booking_type)
        return getattr(self, attribute) if attribute else None


class AccommodationBookingDetail(Base):
    __tablename__ = "accommodation_booking_details"

    id = Column(Uuid, primary_key=True, default=uuid4)
    booking_id = Column(Uuid, ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False, unique=True)
    hotel_id = Column(Uuid, nullable=False)
    room_type = Column(String(100), nullable=False)
    check_in_date = Column(DateTime, nullable=False)
    check_out_date = Column(DateTime, nullable=False)
    guest_count = Column(Integer, nullable=False, default=1)

    booking = relationship("Booking", back_populates="accommodation_detail")


class TransportBookingDetail(Base):
    __tablename__ = "transport_booking_details"

    id = Column(Uuid, primary_key=True, default=uuid4)
    booking_id = Column(Uuid, ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False, unique=True)
    trip_id = Column(Uuid, nullable=False)
    seat_number = Column(String(20), nullable=False)
    departure_time = Column(DateTime, nullable=False)
    arrival_time = Column(DateTime, nullable=False)

    booking = relationship("Booking", back_populates="transport_detail")


class EntertainmentBookingDetail(Base):
    __tablename__ = "entertainment_booking_details"

    id = Column(Uuid, primary_key=True, default=uuid4)
    booking_id = Column(Uuid, ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False, unique=True)
    show_id = Column(Uuid, nullable=False)
    show_date = Column(DateTime, nullable=False)
    seat_number = Column(String(20), nullable=False)

    booking = relationship("Booking", back_populates="entertainment_detail")


class Payment(Base):
    """One payment attempt against an order or a booking."""

    __tablename__ = "payments"

    id = Column(Uuid, primary_key=True, default=uuid4)
    user_id = Column(Uuid, nullable=False, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=True, index=True)
    booking_id = Column(Uuid, ForeignKey("bookings.id"), nullable=True, index=True)

    amount = Column(BigInteger, nullable=False)  # VND, no sub-units
    refunded_amount = Column(BigInteger, nullable=True)
    payment_method = Column(String(50), nullable=False, default="PayOS")
    status = Column(String(20), default=PaymentStatus.PENDING.value, nullable=False, index=True)

    # Provider linkage; order_code is the reconciliation key for webhooks
    payment_link_id = Column(String(100), nullable=True)
    order_code = Column(BigInteger, nullable=True, unique=True, index=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    modified_date = Column(DateTime, nullable=True)
    paid_at = Column(DateTime, nullable=True)  # null until confirmed
    provider_event_at = Column(DateTime, nullable=True)

    order = relationship("Order", back_populates="payments")

    __table_args__ = (
        Index("ix_payments_status_created", "status", "created_at"),
    )
