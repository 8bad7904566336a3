"""
Payment reconciliation engine.

The engine is the only writer of Payment.status and, within the same
transaction, of the Order and Booking a payment is attached to. Everything
else reads those statuses.
"""
import logging
from datetime import datetime
from typing import List, Optional
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from shared.database import utcnow
from shared.errors import ConflictError, NotFoundError, ValidationError
from shared.events import (
    PaymentFailedEvent,
    PaymentPaidEvent,
    PaymentRefundedEvent,
    PaymentStatusChangedEvent,
)
from shared.outbox import enqueue_event

from .models import Booking, Order, Payment, PaymentStatus, parse_payment_status
from .transitions import apply_payment_status_to_booking, apply_payment_status_to_order

logger = logging.getLogger(__name__)


class PaymentReconciliationEngine:
    """Creates payment records and applies payment results to Payment, Order and Booking."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create_payment_record(
        self,
        user_id: UUID,
        amount: int,
        payment_method: str = "PayOS",
        order_id: Optional[int] = None,
        booking_id: Optional[UUID] = None,
        payment_link_id: Optional[str] = None,
        order_code: Optional[int] = None,
    ) -> Payment:
        """
        Persist a new Pending payment.

        Args:
            user_id: Owner of the payment
            amount: Amount in VND, must be positive
            payment_method: Method tag, e.g. "PayOS"
            order_id: Order the payment settles, if any
            booking_id: Booking the payment settles, if any
            payment_link_id: Provider's payment link id
            order_code: Provider's order code, the webhook reconciliation key

        Returns:
            The stored payment
        """
        if amount is None or amount <= 0:
            raise ValidationError("Payment amount must be greater than 0")

        if order_id is None and booking_id is None:
            logger.warning(f"Creating payment for user {user_id} without an order or booking")

        payment = Payment(
            id=uuid4(),
            user_id=user_id,
            order_id=order_id,
            booking_id=booking_id,
            amount=amount,
            payment_method=payment_method,
            status=PaymentStatus.PENDING.value,
            payment_link_id=payment_link_id,
            order_code=order_code,
            created_at=utcnow(),
            modified_date=None,
            paid_at=None,
            provider_event_at=None,
            refunded_amount=None,
        )

        self.session.add(payment)
        try:
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        logger.info(
            f"Created payment {payment.id} (order={order_id}, booking={booking_id}, "
            f"order_code={order_code}, amount={amount})"
        )
        return payment

    async def update_status_by_order_code(
        self,
        order_code: int,
        new_status,
        occurred_at: Optional[datetime] = None,
    ) -> Payment:
        """
        Apply a provider result to the payment bound to ``order_code``.

        Payment, Order and Booking are updated in one transaction; any failure
        rolls all three back and is re-raised. The payment is returned
        unchanged when the event is older than the last provider event already
        applied, or when the payment has been refunded. Callers detect this by
        comparing the returned status with the one they asked for.
        """
        status = parse_payment_status(new_status)
        if status == PaymentStatus.PENDING:
            raise ValidationError("Reconciliation cannot move a payment back to Pending")

        try:
            payment = await self._get_payment_by_order_code(order_code, for_update=True)
            if payment is None:
                raise NotFoundError(f"Payment not found for OrderCode: {order_code}")

            reason = self._ignore_reason(payment, status, occurred_at)
            if reason:
                logger.warning(f"Ignoring {status.value} event for order code {order_code}: {reason}")
                await self.session.commit()
                return payment

            await self._transition(payment, status, occurred_at=occurred_at)
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        logger.info(f"Payment {payment.id} (order code {order_code}) reconciled to {status.value}")
        return payment

    @staticmethod
    def _ignore_reason(payment: Payment, status: PaymentStatus, occurred_at: Optional[datetime]) -> Optional[str]:
        # Refunded is final for provider results and operator syncs
        if payment.status == PaymentStatus.REFUNDED.value and status != PaymentStatus.REFUNDED:
            return "payment is already refunded"
        if (
            occurred_at is not None
            and payment.provider_event_at is not None
            and occurred_at < payment.provider_event_at
        ):
            return (
                f"event at {occurred_at.isoformat()} is older than last applied "
                f"{payment.provider_event_at.isoformat()} (current status {payment.status})"
            )
        return None

    async def refund_payment(self, payment_id: UUID, amount: int) -> Payment:
        """Refund a Paid payment, cancelling its order and booking."""
        if amount is None or amount <= 0:
            raise ValidationError("Refund amount must be greater than 0")

        try:
            payment = await self._get_payment(payment_id, for_update=True)
            if payment is None:
                raise NotFoundError("Payment not found")
            if payment.status != PaymentStatus.PAID.value:
                raise ConflictError("Only paid payments can be refunded")
            if amount > payment.amount:
                raise ConflictError("Refund amount exceeds payment total")

            payment.refunded_amount = amount
            await self._transition(payment, PaymentStatus.REFUNDED)
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        logger.info(f"Payment {payment.id} refunded ({amount} of {payment.amount})")
        return payment

    async def get_payment(self, payment_id: UUID) -> Payment:
        payment = await self._get_payment(payment_id)
        if payment is None:
            raise NotFoundError("Payment not found")
        return payment

    async def get_by_order_code(self, order_code: int) -> Payment:
        payment = await self._get_payment_by_order_code(order_code)
        if payment is None:
            raise NotFoundError(f"Payment not found for OrderCode: {order_code}")
        return payment

    async def list_for_user(self, user_id: UUID) -> List[Payment]:
        result = await self.session.execute(
            select(Payment)
            .where(Payment.user_id == user_id)
            .order_by(Payment.created_at.desc())
        )
        return list(result.scalars().all())

    async def list_for_order(self, order_id: int) -> List[Payment]:
        result = await self.session.execute(
            select(Payment).where(Payment.order_id == order_id).order_by(Payment.created_at)
        )
        return list(result.scalars().all())

    async def list_for_booking(self, booking_id: UUID) -> List[Payment]:
        result = await self.session.execute(
            select(Payment).where(Payment.booking_id == booking_id).order_by(Payment.created_at)
        )
        return list(result.scalars().all())

    async def _transition(
        self,
        payment: Payment,
        status: PaymentStatus,
        occurred_at: Optional[datetime] = None,
    ):
        """Mutate payment, order and booking; the caller owns commit/rollback."""
        now = utcnow()
        previous = payment.status

        payment.status = status.value
        payment.modified_date = now
        if status == PaymentStatus.PAID:
            payment.paid_at = now
        if occurred_at is not None:
            payment.provider_event_at = occurred_at

        if payment.order_id is not None:
            order = await self._get_order(payment.order_id)
            if order is None:
                logger.error(f"Order {payment.order_id} referenced by payment {payment.id} not found")
            else:
                apply_payment_status_to_order(order, status)

        if payment.booking_id is not None:
            booking = await self._get_booking(payment.booking_id)
            if booking is None:
                logger.error(f"Booking {payment.booking_id} referenced by payment {payment.id} not found")
            else:
                apply_payment_status_to_booking(booking, status)

        enqueue_event(self.session, self._status_event(payment, status))

        logger.info(f"Payment {payment.id}: {previous} -> {status.value}")

    @staticmethod
    def _status_event(payment: Payment, status: PaymentStatus) -> PaymentStatusChangedEvent:
        fields = dict(
            aggregate_id=str(payment.id),
            correlation_id=payment.id,
            payment_id=payment.id,
            user_id=payment.user_id,
            order_id=payment.order_id,
            booking_id=payment.booking_id,
            order_code=payment.order_code,
            amount=payment.amount,
            status=status.value,
        )
        if status == PaymentStatus.PAID:
            return PaymentPaidEvent(**fields)
        if status == PaymentStatus.FAILED:
            return PaymentFailedEvent(**fields)
        return PaymentRefundedEvent(refunded_amount=payment.refunded_amount or payment.amount, **fields)

    async def _get_payment(self, payment_id: UUID, for_update: bool = False) -> Optional[Payment]:
        query = select(Payment).where(Payment.id == payment_id)
        if for_update:
            query = query.with_for_update()
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def _get_payment_by_order_code(
        self, order_code: int, for_update: bool = False
    ) -> Optional[Payment]:
        query = select(Payment).where(Payment.order_code == order_code)
        if for_update:
            query = query.with_for_update()
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def _get_order(self, order_id: int) -> Optional[Order]:
        result = await self.session.execute(
            select(Order).where(Order.id == order_id).with_for_update()
        )
        return result.scalar_one_or_none()

    async def _get_booking(self, booking_id: UUID) -> Optional[Booking]:
        result = await self.session.execute(
            select(Booking)
            .where(Booking.id == booking_id)
            .options(
                selectinload(Booking.accommodation_detail),
                selectinload(Booking.transport_detail),
                selectinload(Booking.entertainment_detail),
            )
            .with_for_update()
        )
        return result.scalar_one_or_none()
