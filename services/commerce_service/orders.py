"""Order aggregate operations."""
import logging
from typing import List
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from shared.database import utcnow
from shared.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from shared.events import OrderCancelledEvent, OrderPlacedEvent
from shared.outbox import enqueue_event

from .basket import Basket
from .models import Order, OrderItem, OrderStatus

logger = logging.getLogger(__name__)


class OrderService:
    """Creates orders from basket snapshots and handles user cancellation."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create_from_basket(self, basket: Basket) -> Order:
        """
        Persist a Pending order whose items and total are a snapshot of ``basket``.

        The order is committed before this returns.
        """
        if basket.is_empty:
            raise ValidationError("Basket is empty")

        now = utcnow()
        order = Order(
            user_id=basket.user_id,
            order_date=now,
            total_amount=basket.total,
            status=OrderStatus.PENDING.value,
            created_at=now,
            modified_date=None,
            items=[
                OrderItem(
                    reference_id=item.reference_id,
                    reference_type=item.reference_type,
                    name=item.name,
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                )
                for item in basket.items
            ],
            payments=[],
        )

        try:
            self.session.add(order)
            await self.session.flush()

            event = OrderPlacedEvent(
                aggregate_id=str(order.id),
                order_id=order.id,
                user_id=order.user_id,
                items=[
                    {
                        "reference_id": item.reference_id,
                        "quantity": item.quantity,
                        "unit_price": item.unit_price,
                    }
                    for item in basket.items
                ],
                total_amount=order.total_amount,
            )
            enqueue_event(self.session, event)

            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        logger.info(f"Order {order.id} created for user {order.user_id} (total={order.total_amount})")
        return order

    async def get(self, order_id: int, user_id: UUID, allow_any_owner: bool = False) -> Order:
        """Load an order with items and payments; only its owner (or an admin) may see it."""
        result = await self.session.execute(
            select(Order)
            .where(Order.id == order_id)
            .options(selectinload(Order.items), selectinload(Order.payments))
        )
        order = result.scalar_one_or_none()

        if order is None:
            raise NotFoundError("Order not found")
        if not allow_any_owner and order.user_id != user_id:
            raise ForbiddenError("You cannot access this order")
        return order

    async def list_for_user(self, user_id: UUID) -> List[Order]:
        result = await self.session.execute(
            select(Order)
            .where(Order.user_id == user_id)
            .options(selectinload(Order.items), selectinload(Order.payments))
            .order_by(Order.order_date.desc(), Order.id.desc())
        )
        return list(result.scalars().all())

    async def cancel(self, order_id: int, user_id: UUID, reason: str = "Cancelled by user") -> Order:
        """
        Cancel a Pending order owned by ``user_id``.

        Cancelling an already cancelled order succeeds without changes.
        """
        try:
            result = await self.session.execute(
                select(Order)
                .where(Order.id == order_id)
                .options(selectinload(Order.items), selectinload(Order.payments))
                .with_for_update()
            )
            order = result.scalar_one_or_none()

            if order is None:
                raise NotFoundError("Order not found")
            if order.user_id != user_id:
                raise ForbiddenError("You cannot cancel this order")
            if order.status == OrderStatus.CANCELLED.value:
                await self.session.commit()
                return order
            if order.status != OrderStatus.PENDING.value:
                raise ConflictError(f"Only pending orders can be cancelled (status is {order.status})")

            order.status = OrderStatus.CANCELLED.value
            order.modified_date = utcnow()

            enqueue_event(
                self.session,
                OrderCancelledEvent(
                    aggregate_id=str(order.id),
                    order_id=order.id,
                    user_id=order.user_id,
                    reason=reason,
                ),
            )
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        logger.info(f"Order {order.id} cancelled by user {user_id}")
        return order
