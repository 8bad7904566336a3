"""Redis-backed shopping basket."""
import logging
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field
from redis import asyncio as aioredis

from shared.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)


class BasketItem(BaseModel):
    """One line in a basket: a product or booking reference with quantity and price."""
    reference_id: str = Field(min_length=1, max_length=64)
    reference_type: str = Field(default="product", pattern="^(product|booking)$")
    name: str = ""
    quantity: int = Field(gt=0)
    unit_price: int = Field(ge=0)  # VND

    @property
    def line_total(self) -> int:
        return self.unit_price * self.quantity


class Basket(BaseModel):
    user_id: UUID
    items: List[BasketItem] = Field(default_factory=list)

    @property
    def total(self) -> int:
        """Sum of unit price times quantity; never stored."""
        return sum(item.line_total for item in self.items)

    @property
    def is_empty(self) -> bool:
        return not self.items

    def find(self, reference_id: str) -> Optional[BasketItem]:
        for item in self.items:
            if item.reference_id == reference_id:
                return item
        return None


class BasketService:
    """
    Per-user basket stored as a JSON document at ``basket:{user_id}``.

    Every write refreshes the expiry. The basket is advisory cache state; the
    order created from it is the system of record.
    """

    def __init__(self, redis_client: aioredis.Redis, ttl_seconds: int):
        self.redis = redis_client
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def _key(user_id: UUID) -> str:
        return f"basket:{user_id}"

    async def get(self, user_id: UUID) -> Basket:
        """Return the user's basket, empty if none is stored yet."""
        raw = await self.redis.get(self._key(user_id))
        if not raw:
            return Basket(user_id=user_id)
        return Basket.model_validate_json(raw)

    async def save(self, basket: Basket) -> Basket:
        await self.redis.set(
            self._key(basket.user_id),
            basket.model_dump_json(),
            ex=self.ttl_seconds,
        )
        return basket

    async def add_item(self, user_id: UUID, item: BasketItem) -> Basket:
        """Add an item; adding an existing reference increases its quantity."""
        basket = await self.get(user_id)

        existing = basket.find(item.reference_id)
        if existing:
            existing.quantity += item.quantity
            existing.unit_price = item.unit_price
            if item.name:
                existing.name = item.name
        else:
            basket.items.append(item)

        logger.info(f"Basket {user_id}: added {item.quantity} x {item.reference_id}")
        return await self.save(basket)

    async def update_quantity(self, user_id: UUID, reference_id: str, quantity: int) -> Basket:
        """Set an item's quantity. Zero removes the item."""
        if quantity < 0:
            raise ValidationError("Quantity must not be negative")

        basket = await self.get(user_id)
        existing = basket.find(reference_id)
        if existing is None:
            raise NotFoundError(f"Item {reference_id} is not in the basket")

        if quantity == 0:
            basket.items.remove(existing)
        else:
            existing.quantity = quantity

        return await self.save(basket)

    async def remove_item(self, user_id: UUID, reference_id: str) -> Basket:
        basket = await self.get(user_id)
        existing = basket.find(reference_id)
        if existing is None:
            raise NotFoundError(f"Item {reference_id} is not in the basket")

        basket.items.remove(existing)
        return await self.save(basket)

    async def clear(self, user_id: UUID) -> None:
        await self.redis.delete(self._key(user_id))
        logger.info(f"Basket {user_id} cleared")
