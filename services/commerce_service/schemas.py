"""Request/response models for the Commerce Service API."""
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field


# Basket
class BasketItemRequest(BaseModel):
    reference_id: str = Field(min_length=1, max_length=64)
    reference_type: str = Field(default="product", pattern="^(product|booking)$")
    name: str = ""
    quantity: int = Field(default=1, gt=0)
    unit_price: int = Field(ge=0)


class UpdateQuantityRequest(BaseModel):
    quantity: int


class BasketItemResponse(BaseModel):
    reference_id: str
    reference_type: str
    name: str
    quantity: int
    unit_price: int
    line_total: int


class BasketResponse(BaseModel):
    user_id: UUID
    items: List[BasketItemResponse]
    total: int


# Checkout
class CheckoutStartRequest(BaseModel):
    """Buyer metadata is optional and only forwarded to the payment provider."""
    buyer_name: Optional[str] = None
    buyer_email: Optional[str] = None
    buyer_phone: Optional[str] = None
    platform: str = Field(default="web", pattern="^(web|mobile)$")


class BookingPaymentRequest(CheckoutStartRequest):
    order_code: Optional[int] = None


class CheckoutResponse(BaseModel):
    order_id: Optional[int] = None
    booking_id: Optional[UUID] = None
    checkout_url: str
    order_code: int
    amount: int
    qr_code: Optional[str] = None
    payment_link_id: Optional[str] = None
    status: str = "PENDING"


# Payments
class PaymentResponse(BaseModel):
    id: UUID
    user_id: UUID
    order_id: Optional[int] = None
    booking_id: Optional[UUID] = None
    amount: int
    refunded_amount: Optional[int] = None
    payment_method: str
    status: str
    payment_link_id: Optional[str] = None
    order_code: Optional[int] = None
    created_at: datetime
    modified_date: Optional[datetime] = None
    paid_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class PaymentSyncResponse(BaseModel):
    provider_status: str
    changed: bool
    payment: PaymentResponse


class ForcePaidRequest(BaseModel):
    order_code: int


class WebhookResponse(BaseModel):
    success: bool
    message: str


# Orders
class OrderItemResponse(BaseModel):
    reference_id: str
    reference_type: str
    name: str
    quantity: int
    unit_price: int
    line_total: int

    class Config:
        from_attributes = True


class OrderResponse(BaseModel):
    id: int
    user_id: UUID
    order_date: datetime
    total_amount: int
    status: str
    modified_date: Optional[datetime] = None
    items: List[OrderItemResponse]
    payments: List[PaymentResponse] = []

    class Config:
        from_attributes = True


# Bookings
class AccommodationDetailRequest(BaseModel):
    hotel_id: UUID
    room_type: str = Field(min_length=1, max_length=100)
    check_in_date: datetime
    check_out_date: datetime
    guest_count: int = Field(default=1, gt=0)


class TransportDetailRequest(BaseModel):
    trip_id: UUID
    seat_number: str = Field(min_length=1, max_length=20)
    departure_time: datetime
    arrival_time: datetime


class EntertainmentDetailRequest(BaseModel):
    show_id: UUID
    show_date: datetime
    seat_number: str = Field(min_length=1, max_length=20)


class BookingCreateRequest(BaseModel):
    """A booking carries exactly one detail block, the one matching ``booking_type``."""
    booking_type: str
    booking_date: Optional[datetime] = None
    total_amount: int = Field(gt=0)
    accommodation: Optional[AccommodationDetailRequest] = None
    transport: Optional[TransportDetailRequest] = None
    entertainment: Optional[EntertainmentDetailRequest] = None


_DETAIL_FIELDS = {
    "Accommodation": ("hotel_id", "room_type", "check_in_date", "check_out_date", "guest_count"),
    "Transport": ("trip_id", "seat_number", "departure_time", "arrival_time"),
    "Entertainment": ("show_id", "show_date", "seat_number"),
}


class BookingResponse(BaseModel):
    id: UUID
    user_id: UUID
    booking_type: str
    booking_date: datetime
    total_amount: int
    status: str
    created_at: datetime
    modified_date: Optional[datetime] = None
    detail: Optional[Dict[str, Any]] = None

    @classmethod
    def from_booking(cls, booking) -> "BookingResponse":
        detail = booking.detail
        detail_data = None
        if detail is not None:
            detail_data = {
                name: getattr(detail, name) for name in _DETAIL_FIELDS.get(booking.booking_type, ())
            }

        return cls(
            id=booking.id,
            user_id=booking.user_id,
            booking_type=booking.booking_type,
            booking_date=booking.booking_date,
            total_amount=booking.total_amount,
            status=booking.status,
            created_at=booking.created_at,
            modified_date=booking.modified_date,
            detail=detail_data,
        )
