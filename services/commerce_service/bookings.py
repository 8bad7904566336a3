"""Booking aggregate operations."""
import logging
from datetime import datetime, timezone
from typing import List, Optional
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from shared.database import utcnow
from shared.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from shared.events import BookingCancelledEvent
from shared.outbox import enqueue_event

from .models import (
    AccommodationBookingDetail,
    Booking,
    BookingStatus,
    BookingType,
    EntertainmentBookingDetail,
    TransportBookingDetail,
    parse_booking_type,
)
from .schemas import BookingCreateRequest

logger = logging.getLogger(__name__)


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _with_details(query):
    return query.options(
        selectinload(Booking.accommodation_detail),
        selectinload(Booking.transport_detail),
        selectinload(Booking.entertainment_detail),
    )


class BookingService:
    """Creates, reads and cancels bookings. Payment-driven status changes live in the reconciliation engine."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, user_id: UUID, request: BookingCreateRequest) -> Booking:
        booking_type = parse_booking_type(request.booking_type)
        supplied = {
            BookingType.ACCOMMODATION: request.accommodation,
            BookingType.TRANSPORT: request.transport,
            BookingType.ENTERTAINMENT: request.entertainment,
        }

        if supplied[booking_type] is None:
            raise ValidationError(f"{booking_type.value} booking requires {booking_type.value.lower()} details")
        extra = [t.value for t, detail in supplied.items() if detail is not None and t != booking_type]
        if extra:
            raise ValidationError(f"{booking_type.value} booking must not carry details for: {', '.join(extra)}")

        now = utcnow()
        booking = Booking(
            id=uuid4(),
            user_id=user_id,
            booking_type=booking_type.value,
            booking_date=_naive_utc(request.booking_date) or now,
            total_amount=request.total_amount,
            status=BookingStatus.PENDING.value,
            created_at=now,
            modified_date=None,
            accommodation_detail=None,
            transport_detail=None,
            entertainment_detail=None,
        )

        if booking_type == BookingType.ACCOMMODATION:
            detail = request.accommodation
            check_in = _naive_utc(detail.check_in_date)
            check_out = _naive_utc(detail.check_out_date)
            if check_out <= check_in:
                raise ValidationError("Check-out must be after check-in")
            booking.accommodation_detail = AccommodationBookingDetail(
                hotel_id=detail.hotel_id,
                room_type=detail.room_type,
                check_in_date=check_in,
                check_out_date=check_out,
                guest_count=detail.guest_count,
            )
        elif booking_type == BookingType.TRANSPORT:
            detail = request.transport
            departure = _naive_utc(detail.departure_time)
            arrival = _naive_utc(detail.arrival_time)
            if arrival <= departure:
                raise ValidationError("Arrival must be after departure")
            booking.transport_detail = TransportBookingDetail(
                trip_id=detail.trip_id,
                seat_number=detail.seat_number,
                departure_time=departure,
                arrival_time=arrival,
            )
        else:
            detail = request.entertainment
            booking.entertainment_detail = EntertainmentBookingDetail(
                show_id=detail.show_id,
                show_date=_naive_utc(detail.show_date),
                seat_number=detail.seat_number,
            )

        self.session.add(booking)
        try:
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        logger.info(f"Booking {booking.id} ({booking.booking_type}) created for user {user_id}")
        return booking

    async def get(self, booking_id: UUID, user_id: UUID, allow_any_owner: bool = False) -> Booking:
        result = await self.session.execute(_with_details(select(Booking).where(Booking.id == booking_id)))
        booking = result.scalar_one_or_none()

        if booking is None:
            raise NotFoundError("Booking not found")
        if not allow_any_owner and booking.user_id != user_id:
            raise ForbiddenError("You cannot access this booking")
        return booking

    async def list_for_user(self, user_id: UUID) -> List[Booking]:
        result = await self.session.execute(
            _with_details(select(Booking).where(Booking.user_id == user_id))
            .order_by(Booking.booking_date.desc())
        )
        return list(result.scalars().all())

    async def cancel(self, booking_id: UUID, user_id: UUID, reason: str = "Cancelled by user") -> Booking:
        """Cancel a Pending booking owned by ``user_id``; cancelling twice is a no-op."""
        try:
            result = await self.session.execute(
                _with_details(select(Booking).where(Booking.id == booking_id)).with_for_update()
            )
            booking = result.scalar_one_or_none()

            if booking is None:
                raise NotFoundError("Booking not found")
            if booking.user_id != user_id:
                raise ForbiddenError("You cannot cancel this booking")
            if booking.status == BookingStatus.CANCELLED.value:
                await self.session.commit()
                return booking
            if booking.status != BookingStatus.PENDING.value:
                raise ConflictError(f"Only pending bookings can be cancelled (status is {booking.status})")

            booking.status = BookingStatus.CANCELLED.value
            booking.modified_date = utcnow()

            enqueue_event(
                self.session,
                BookingCancelledEvent(
                    aggregate_id=str(booking.id),
                    booking_id=booking.id,
                    user_id=booking.user_id,
                    reason=reason,
                ),
            )
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        logger.info(f"Booking {booking.id} cancelled by user {user_id}")
        return booking
