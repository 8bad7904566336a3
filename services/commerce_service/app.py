"""Commerce Service FastAPI application."""
import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import List, Optional
from uuid import UUID

from fastapi import Depends, FastAPI, Header, Query, Request
from redis import asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession

from shared.config import get_settings
from shared.database import Database
from shared.errors import ConflictError, ForbiddenError, ServiceError, install_exception_handlers
from shared.idempotency import IdempotencyStore
from shared.message_broker import MessageBroker
from shared.outbox import OutboxRelay
from shared.security import is_admin, require_admin, require_user

from .basket import Basket, BasketItem, BasketService
from .bookings import BookingService
from .checkout import CheckoutOrchestrator
from .models import PaymentStatus
from .orders import OrderService
from .payos_client import PayOSClient
from .reconciliation import PaymentReconciliationEngine
from .schemas import (
    BasketItemRequest,
    BasketItemResponse,
    BasketResponse,
    BookingCreateRequest,
    BookingPaymentRequest,
    BookingResponse,
    CheckoutResponse,
    CheckoutStartRequest,
    ForcePaidRequest,
    OrderResponse,
    PaymentResponse,
    PaymentSyncResponse,
    UpdateQuantityRequest,
    WebhookResponse,
)
from .webhook import PayOSWebhookHandler

# Settings
settings = get_settings()

# Configure logging
logging.basicConfig(
    level=settings.log_level.upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Provider link statuses that settle a payment when polled
PROVIDER_STATUS_MAP = {
    "PAID": PaymentStatus.PAID,
    "CANCELLED": PaymentStatus.FAILED,
    "EXPIRED": PaymentStatus.FAILED,
}

# Database, cache, provider and message broker
database = Database(settings.database_url)
message_broker = MessageBroker(settings.rabbitmq_url)
redis_client: Optional[aioredis.Redis] = None
payos_client: Optional[PayOSClient] = None
outbox_relay: Optional[OutboxRelay] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager for the application."""
    global redis_client, payos_client, outbox_relay

    # Startup
    logger.info("Starting Commerce Service...")

    await database.create_tables()
    redis_client = aioredis.from_url(settings.redis_url, decode_responses=True)
    payos_client = PayOSClient(settings)
    await message_broker.connect()

    outbox_relay = OutboxRelay(
        session_factory=database.session_factory,
        broker=message_broker,
    )
    await outbox_relay.start()

    logger.info("Commerce Service started successfully")

    yield

    # Shutdown
    logger.info("Shutting down Commerce Service...")
    if outbox_relay:
        await outbox_relay.stop()
    await message_broker.disconnect()
    if payos_client:
        await payos_client.close()
    if redis_client:
        await redis_client.aclose()
    await database.close()


app = FastAPI(title="Commerce Service", lifespan=lifespan)
install_exception_handlers(app)


# Dependencies
async def get_session() -> AsyncSession:
    """Get database session."""
    async with database.session_factory() as session:
        yield session


def get_redis() -> aioredis.Redis:
    if redis_client is None:
        raise ServiceError("Cache is not initialised")
    return redis_client


def get_payos_client() -> PayOSClient:
    if payos_client is None:
        raise ServiceError("Payment provider client is not initialised")
    return payos_client


def get_idempotency_store(redis: aioredis.Redis = Depends(get_redis)) -> IdempotencyStore:
    return IdempotencyStore(redis)


def get_basket_service(redis: aioredis.Redis = Depends(get_redis)) -> BasketService:
    return BasketService(redis, settings.basket_ttl_seconds)


def get_engine(session: AsyncSession = Depends(get_session)) -> PaymentReconciliationEngine:
    return PaymentReconciliationEngine(session)


def get_checkout(
    session: AsyncSession = Depends(get_session),
    basket_service: BasketService = Depends(get_basket_service),
    payos: PayOSClient = Depends(get_payos_client),
    idempotency: IdempotencyStore = Depends(get_idempotency_store),
) -> CheckoutOrchestrator:
    return CheckoutOrchestrator(session, basket_service, payos, settings, idempotency)


def ensure_owner_or_admin(owner_id: UUID, claims: dict):
    if owner_id != claims["user_id"] and not is_admin(claims):
        raise ForbiddenError("You cannot access this payment")


def basket_response(basket: Basket) -> BasketResponse:
    return BasketResponse(
        user_id=basket.user_id,
        items=[
            BasketItemResponse(**item.model_dump(), line_total=item.line_total)
            for item in basket.items
        ],
        total=basket.total,
    )


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": settings.service_name}


# Basket
@app.get("/api/basket", response_model=BasketResponse)
async def get_basket(
    claims: dict = Depends(require_user),
    basket_service: BasketService = Depends(get_basket_service),
):
    return basket_response(await basket_service.get(claims["user_id"]))


@app.post("/api/basket/items", response_model=BasketResponse)
async def add_basket_item(
    request: BasketItemRequest,
    claims: dict = Depends(require_user),
    basket_service: BasketService = Depends(get_basket_service),
):
    basket = await basket_service.add_item(claims["user_id"], BasketItem(**request.model_dump()))
    return basket_response(basket)


@app.put("/api/basket/items/{reference_id}", response_model=BasketResponse)
async def update_basket_item(
    reference_id: str,
    request: UpdateQuantityRequest,
    claims: dict = Depends(require_user),
    basket_service: BasketService = Depends(get_basket_service),
):
    basket = await basket_service.update_quantity(claims["user_id"], reference_id, request.quantity)
    return basket_response(basket)


@app.delete("/api/basket/items/{reference_id}", response_model=BasketResponse)
async def remove_basket_item(
    reference_id: str,
    claims: dict = Depends(require_user),
    basket_service: BasketService = Depends(get_basket_service),
):
    return basket_response(await basket_service.remove_item(claims["user_id"], reference_id))


@app.delete("/api/basket", status_code=204)
async def clear_basket(
    claims: dict = Depends(require_user),
    basket_service: BasketService = Depends(get_basket_service),
):
    await basket_service.clear(claims["user_id"])


# Checkout
@app.post("/api/checkout/start", response_model=CheckoutResponse)
async def start_checkout(
    request: Optional[CheckoutStartRequest] = None,
    idempotency_key: Optional[str] = Header(default=None),
    claims: dict = Depends(require_user),
    checkout: CheckoutOrchestrator = Depends(get_checkout),
):
    """Create an order from the basket and return a PayOS checkout link."""
    return await checkout.start_checkout(
        claims["user_id"], request or CheckoutStartRequest(), idempotency_key=idempotency_key
    )


# Orders
@app.get("/api/orders", response_model=List[OrderResponse])
async def list_orders(claims: dict = Depends(require_user), session: AsyncSession = Depends(get_session)):
    orders = await OrderService(session).list_for_user(claims["user_id"])
    return [OrderResponse.model_validate(order) for order in orders]


@app.get("/api/orders/{order_id}", response_model=OrderResponse)
async def get_order(
    order_id: int,
    claims: dict = Depends(require_user),
    session: AsyncSession = Depends(get_session),
):
    order = await OrderService(session).get(order_id, claims["user_id"], allow_any_owner=is_admin(claims))
    return OrderResponse.model_validate(order)


@app.post("/api/orders/{order_id}/cancel", response_model=OrderResponse)
async def cancel_order(
    order_id: int,
    claims: dict = Depends(require_user),
    session: AsyncSession = Depends(get_session),
):
    order = await OrderService(session).cancel(order_id, claims["user_id"])
    return OrderResponse.model_validate(order)


# Bookings
@app.post("/api/bookings", response_model=BookingResponse, status_code=201)
async def create_booking(
    request: BookingCreateRequest,
    claims: dict = Depends(require_user),
    session: AsyncSession = Depends(get_session),
):
    booking = await BookingService(session).create(claims["user_id"], request)
    return BookingResponse.from_booking(booking)


@app.get("/api/bookings", response_model=List[BookingResponse])
async def list_bookings(claims: dict = Depends(require_user), session: AsyncSession = Depends(get_session)):
    bookings = await BookingService(session).list_for_user(claims["user_id"])
    return [BookingResponse.from_booking(booking) for booking in bookings]


@app.get("/api/bookings/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: UUID,
    claims: dict = Depends(require_user),
    session: AsyncSession = Depends(get_session),
):
    booking = await BookingService(session).get(booking_id, claims["user_id"], allow_any_owner=is_admin(claims))
    return BookingResponse.from_booking(booking)


@app.post("/api/bookings/{booking_id}/cancel", response_model=BookingResponse)
async def cancel_booking(
    booking_id: UUID,
    claims: dict = Depends(require_user),
    session: AsyncSession = Depends(get_session),
):
    booking = await BookingService(session).cancel(booking_id, claims["user_id"])
    return BookingResponse.from_booking(booking)


@app.post("/api/bookings/{booking_id}/payment", response_model=CheckoutResponse)
async def pay_for_booking(
    booking_id: UUID,
    request: Optional[BookingPaymentRequest] = None,
    idempotency_key: Optional[str] = Header(default=None),
    claims: dict = Depends(require_user),
    checkout: CheckoutOrchestrator = Depends(get_checkout),
):
    return await checkout.start_booking_payment(
        claims["user_id"], booking_id, request or BookingPaymentRequest(), idempotency_key=idempotency_key
    )


# Payments
@app.get("/api/payments", response_model=List[PaymentResponse])
async def list_payments(
    claims: dict = Depends(require_user),
    engine: PaymentReconciliationEngine = Depends(get_engine),
):
    payments = await engine.list_for_user(claims["user_id"])
    return [PaymentResponse.model_validate(payment) for payment in payments]


@app.get("/api/payments/order-code/{order_code}", response_model=PaymentResponse)
async def get_payment_by_order_code(
    order_code: int,
    claims: dict = Depends(require_user),
    engine: PaymentReconciliationEngine = Depends(get_engine),
):
    payment = await engine.get_by_order_code(order_code)
    ensure_owner_or_admin(payment.user_id, claims)
    return PaymentResponse.model_validate(payment)


@app.get("/api/payments/order/{order_id}", response_model=List[PaymentResponse])
async def list_payments_for_order(
    order_id: int,
    claims: dict = Depends(require_user),
    session: AsyncSession = Depends(get_session),
    engine: PaymentReconciliationEngine = Depends(get_engine),
):
    """Every payment attempt for an order, oldest first."""
    await OrderService(session).get(order_id, claims["user_id"], allow_any_owner=is_admin(claims))
    payments = await engine.list_for_order(order_id)
    return [PaymentResponse.model_validate(payment) for payment in payments]


@app.get("/api/payments/booking/{booking_id}", response_model=List[PaymentResponse])
async def list_payments_for_booking(
    booking_id: UUID,
    claims: dict = Depends(require_user),
    session: AsyncSession = Depends(get_session),
    engine: PaymentReconciliationEngine = Depends(get_engine),
):
    await BookingService(session).get(booking_id, claims["user_id"], allow_any_owner=is_admin(claims))
    payments = await engine.list_for_booking(booking_id)
    return [PaymentResponse.model_validate(payment) for payment in payments]


@app.get("/api/payments/{payment_id}", response_model=PaymentResponse)
async def get_payment(
    payment_id: UUID,
    claims: dict = Depends(require_user),
    engine: PaymentReconciliationEngine = Depends(get_engine),
):
    payment = await engine.get_payment(payment_id)
    ensure_owner_or_admin(payment.user_id, claims)
    return PaymentResponse.model_validate(payment)


@app.put("/api/payments/{payment_id}/refund", response_model=PaymentResponse)
async def refund_payment(
    payment_id: UUID,
    amount: int = Query(...),
    claims: dict = Depends(require_admin),
    engine: PaymentReconciliationEngine = Depends(get_engine),
):
    payment = await engine.refund_payment(payment_id, amount)
    logger.info(f"Admin {claims['user_id']} refunded {amount} on payment {payment_id}")
    return PaymentResponse.model_validate(payment)


# PayOS
@app.post("/api/payment/realmoney/{order_code}/sync", response_model=PaymentSyncResponse)
async def sync_payment(
    order_code: int,
    claims: dict = Depends(require_user),
    engine: PaymentReconciliationEngine = Depends(get_engine),
    payos: PayOSClient = Depends(get_payos_client),
):
    """Poll PayOS for the link status and reconcile the local payment."""
    payment = await engine.get_by_order_code(order_code)
    ensure_owner_or_admin(payment.user_id, claims)

    info = await payos.get_payment_link_info(order_code)
    target = PROVIDER_STATUS_MAP.get(info.status)

    changed = False
    if target and payment.status not in (target.value, PaymentStatus.REFUNDED.value):
        payment = await engine.update_status_by_order_code(order_code, target)
        changed = True

    logger.info(f"Synced order code {order_code}: provider {info.status}, local {payment.status}")
    return PaymentSyncResponse(
        provider_status=info.status,
        changed=changed,
        payment=PaymentResponse.model_validate(payment),
    )


@app.post("/api/payment/realmoney/{order_code}/cancel", response_model=PaymentResponse)
async def cancel_payment_link(
    order_code: int,
    reason: Optional[str] = Query(default=None),
    claims: dict = Depends(require_user),
    engine: PaymentReconciliationEngine = Depends(get_engine),
    payos: PayOSClient = Depends(get_payos_client),
):
    payment = await engine.get_by_order_code(order_code)
    ensure_owner_or_admin(payment.user_id, claims)
    if payment.status != PaymentStatus.PENDING.value:
        raise ConflictError(f"Only pending payments can be cancelled (status is {payment.status})")

    await payos.cancel_payment_link(order_code, reason or "Cancelled by user")
    payment = await engine.update_status_by_order_code(order_code, PaymentStatus.FAILED)
    return PaymentResponse.model_validate(payment)


@app.post("/api/payment/payos-callback", response_model=WebhookResponse)
async def payos_callback(
    request: Request,
    x_signature: Optional[str] = Header(default=None),
    idempotency_key: Optional[str] = Header(default=None),
    session: AsyncSession = Depends(get_session),
    idempotency: IdempotencyStore = Depends(get_idempotency_store),
):
    """PayOS webhook. 400 only for malformed or unsigned payloads, 200 otherwise."""
    handler = PayOSWebhookHandler(
        idempotency,
        PaymentReconciliationEngine(session),
        settings.payos_checksum_key,
        timedelta(seconds=settings.idempotency_ttl_seconds),
    )
    outcome = await handler.handle(await request.body(), x_signature, idempotency_key)
    return WebhookResponse(success=outcome.success, message=outcome.message)


@app.get("/api/payment/payos-callback", response_model=WebhookResponse)
async def payos_callback_check():
    """Confirmation ping used when registering the webhook URL with PayOS."""
    return WebhookResponse(success=True, message="Webhook endpoint is active")


@app.post("/api/payment/test-webhook", response_model=PaymentResponse)
async def force_payment_paid(
    request: ForcePaidRequest,
    claims: dict = Depends(require_admin),
    engine: PaymentReconciliationEngine = Depends(get_engine),
):
    """Operator escape hatch: mark a payment Paid without a provider callback."""
    logger.warning(f"Admin {claims['user_id']} forcing order code {request.order_code} to Paid")
    payment = await engine.update_status_by_order_code(request.order_code, PaymentStatus.PAID)
    return PaymentResponse.model_validate(payment)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.service_port)
