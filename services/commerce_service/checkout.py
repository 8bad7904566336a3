"""
Checkout orchestration: basket -> order -> provider link -> payment record.

The order is committed before the provider is called, and the provider is
called before any reconciliation transaction is opened. If the provider call
fails the order stays Pending with no payment link; that order can be paid
again later or cancelled by its owner.
"""
import logging
import secrets
import time
from typing import List, Optional
from uuid import UUID

from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt

from shared.config import Settings
from shared.errors import ConflictError, OrderCodeConflictError, ValidationError
from shared.idempotency import IdempotencyStore

from .basket import BasketService
from .bookings import BookingService
from .models import BookingStatus
from .orders import OrderService
from .payos_client import PaymentItem, PaymentLink, PaymentLinkRequest, PayOSClient
from .reconciliation import PaymentReconciliationEngine
from .schemas import BookingPaymentRequest, CheckoutResponse, CheckoutStartRequest

logger = logging.getLogger(__name__)


class CheckoutOrchestrator:
    """Composes basket, order, provider and reconciliation engine into checkout use cases."""

    def __init__(
        self,
        session: AsyncSession,
        basket_service: BasketService,
        payos_client: PayOSClient,
        settings: Settings,
        idempotency: Optional[IdempotencyStore] = None,
    ):
        self.session = session
        self.basket_service = basket_service
        self.payos_client = payos_client
        self.settings = settings
        self.idempotency = idempotency
        self.orders = OrderService(session)
        self.bookings = BookingService(session)
        self.engine = PaymentReconciliationEngine(session)

    def generate_order_code(self) -> int:
        """Millisecond clock mixed with randomness, folded into 1..order_code_max."""
        millis = int(time.time() * 1000)
        candidate = (millis % 1000) * 1000 + secrets.randbelow(1000)
        return candidate % self.settings.order_code_max + 1

    async def start_checkout(
        self,
        user_id: UUID,
        request: CheckoutStartRequest,
        idempotency_key: Optional[str] = None,
    ) -> CheckoutResponse:
        """
        Turn the user's basket into a Pending order with a provider checkout link.

        Args:
            user_id: Basket owner
            request: Buyer metadata and platform ("web" or "mobile")
            idempotency_key: Optional client key; a replay within the TTL is a conflict

        Returns:
            Checkout URL and identifiers; ``order_code`` is the provider's value
        """
        claim = await self._claim_client_key(user_id, idempotency_key)
        try:
            basket = await self.basket_service.get(user_id)
            if basket.is_empty:
                raise ValidationError("Basket is empty")
            self.payos_client.validate_amount(basket.total)

            order = await self.orders.create_from_basket(basket)
            order_id, total_amount = order.id, order.total_amount
        except Exception:
            await self._release_client_key(claim)
            raise

        try:
            await self.basket_service.clear(user_id)
        except RedisError:
            logger.error(f"Order {order_id} created but basket for user {user_id} could not be cleared", exc_info=True)

        items = [
            PaymentItem(name=item.name or item.reference_id, quantity=item.quantity, price=item.unit_price)
            for item in basket.items
        ]

        try:
            link = await self._create_link(
                amount=total_amount,
                description=f"Order {order_id}",
                items=items,
                request=request,
            )
        except Exception:
            logger.error(f"Order {order_id} is Pending without a payment link", exc_info=True)
            await self._release_client_key(claim)
            raise

        await self._record_payment(user_id, link, order_id=order_id)

        return CheckoutResponse(
            order_id=order_id,
            checkout_url=link.checkout_url,
            order_code=link.order_code,
            amount=total_amount,
            qr_code=link.qr_code,
            payment_link_id=link.payment_link_id,
            status="PENDING",
        )

    async def start_booking_payment(
        self,
        user_id: UUID,
        booking_id: UUID,
        request: BookingPaymentRequest,
        idempotency_key: Optional[str] = None,
    ) -> CheckoutResponse:
        """Create a checkout link for a Pending booking and record its Pending payment."""
        claim = await self._claim_client_key(user_id, idempotency_key)
        try:
            booking = await self.bookings.get(booking_id, user_id)
            if booking.status != BookingStatus.PENDING.value:
                raise ConflictError(f"Only pending bookings can be paid (status is {booking.status})")
            booking_id, total_amount = booking.id, booking.total_amount
            self.payos_client.validate_amount(total_amount)
            if request.order_code is not None:
                self.payos_client.validate_order_code(request.order_code)

            link = await self._create_link(
                amount=total_amount,
                description=f"Booking {str(booking_id)[:8]}",
                items=[PaymentItem(name=f"{booking.booking_type} booking", quantity=1, price=total_amount)],
                request=request,
                order_code=request.order_code,
            )
        except Exception:
            await self._release_client_key(claim)
            raise

        await self._record_payment(user_id, link, booking_id=booking_id)

        return CheckoutResponse(
            booking_id=booking_id,
            checkout_url=link.checkout_url,
            order_code=link.order_code,
            amount=total_amount,
            qr_code=link.qr_code,
            payment_link_id=link.payment_link_id,
            status="PENDING",
        )

    async def _create_link(
        self,
        amount: int,
        description: str,
        items: List[PaymentItem],
        request: CheckoutStartRequest,
        order_code: Optional[int] = None,
    ) -> PaymentLink:
        return_url, cancel_url = self.settings.payos_urls(request.platform)

        def build(code: int) -> PaymentLinkRequest:
            return PaymentLinkRequest(
                order_code=code,
                amount=amount,
                description=description,
                return_url=return_url,
                cancel_url=cancel_url,
                items=items,
                buyer_name=request.buyer_name,
                buyer_email=request.buyer_email,
                buyer_phone=request.buyer_phone,
            )

        if order_code is not None:
            try:
                return await self.payos_client.create_payment_link(build(order_code))
            except OrderCodeConflictError:
                raise ConflictError(f"Order code {order_code} already exists at the payment provider")

        attempts = self.settings.order_code_attempts
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(attempts),
                retry=retry_if_exception_type(OrderCodeConflictError),
                reraise=True,
            ):
                with attempt:
                    code = self.generate_order_code()
                    attempt_number = attempt.retry_state.attempt_number
                    if attempt_number > 1:
                        logger.warning(f"Retrying payment link with new order code {code} (attempt {attempt_number}/{attempts})")
                    return await self.payos_client.create_payment_link(build(code))
        except OrderCodeConflictError:
            logger.error(f"Provider rejected {attempts} generated order codes; giving up")
            raise

    async def _record_payment(
        self,
        user_id: UUID,
        link: PaymentLink,
        order_id: Optional[int] = None,
        booking_id: Optional[UUID] = None,
    ):
        try:
            await self.engine.create_payment_record(
                user_id=user_id,
                amount=link.amount,
                payment_method="PayOS",
                order_id=order_id,
                booking_id=booking_id,
                payment_link_id=link.payment_link_id,
                order_code=link.order_code,
            )
        except SQLAlchemyError:
            logger.critical(
                f"Payment link {link.payment_link_id} (order code {link.order_code}) exists at PayOS "
                f"but its payment record (order={order_id}, booking={booking_id}) was not saved; "
                f"manual reconciliation required",
                exc_info=True,
            )

    async def _claim_client_key(self, user_id: UUID, idempotency_key: Optional[str]) -> Optional[str]:
        if not idempotency_key or self.idempotency is None:
            return None

        claim = f"checkout:{user_id}:{idempotency_key}"
        if not await self.idempotency.try_claim(claim, self.settings.idempotency_ttl_seconds):
            raise ConflictError("A request with this Idempotency-Key was already processed")
        return claim

    async def _release_client_key(self, claim: Optional[str]):
        if claim is None:
            return
        try:
            await self.idempotency.release(claim)
        except RedisError:
            logger.error(f"Could not release idempotency key {claim}", exc_info=True)
