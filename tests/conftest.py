"""Shared fixtures: SQLite database, fake Redis, fake PayOS API and API client."""
import json
import os

os.environ.setdefault("DATABASE_URL_OVERRIDE", "sqlite+aiosqlite://")
os.environ.setdefault("PAYOS_CHECKSUM_KEY", "test-checksum-key")

from datetime import timedelta
from uuid import uuid4

import fakeredis.aioredis
import httpx
import pytest
import pytest_asyncio
from jose import jwt

from shared.config import get_settings
from shared.database import Database, utcnow
from shared.idempotency import IdempotencyStore
import shared.outbox  # noqa: F401  registers the outbox table

from services.commerce_service.basket import BasketService
from services.commerce_service.models import (
    Booking,
    BookingType,
    Order,
    OrderItem,
    OrderStatus,
    TransportBookingDetail,
)
from services.commerce_service.payos_client import PayOSClient
from services.commerce_service.reconciliation import PaymentReconciliationEngine
from services.commerce_service.webhook import compute_signature


class FakePayOS:
    """In-memory stand-in for the PayOS merchant API, served through httpx.MockTransport."""

    def __init__(self):
        self.requests = []
        self.conflicts = 0
        self.echo_order_code = None
        self.link_status = "PENDING"

    def created_bodies(self):
        return [
            json.loads(request.content)
            for request in self.requests
            if request.method == "POST" and request.url.path == "/v2/payment-requests"
        ]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if request.method == "POST" and path == "/v2/payment-requests":
            body = json.loads(request.content)
            if self.conflicts > 0:
                self.conflicts -= 1
                return httpx.Response(200, json={"code": "231", "desc": "Order code already exists", "data": None})

            order_code = self.echo_order_code or body["orderCode"]
            return httpx.Response(200, json={
                "code": "00",
                "desc": "success",
                "data": {
                    "orderCode": order_code,
                    "amount": body["amount"],
                    "description": body["description"],
                    "checkoutUrl": f"https://pay.payos.vn/web/{order_code}",
                    "qrCode": f"qr-{order_code}",
                    "paymentLinkId": f"link-{order_code}",
                    "status": "PENDING",
                },
            })

        if request.method == "POST" and path.endswith("/cancel"):
            order_code = int(path.split("/")[-2])
            return httpx.Response(200, json={
                "code": "00",
                "desc": "success",
                "data": {"id": f"link-{order_code}", "orderCode": order_code, "amount": 0, "status": "CANCELLED"},
            })

        if request.method == "GET" and path.startswith("/v2/payment-requests/"):
            order_code = int(path.split("/")[-1])
            return httpx.Response(200, json={
                "code": "00",
                "desc": "success",
                "data": {
                    "id": f"link-{order_code}",
                    "orderCode": order_code,
                    "amount": 100000,
                    "amountPaid": 100000 if self.link_status == "PAID" else 0,
                    "status": self.link_status,
                },
            })

        return httpx.Response(404, json={"code": "404", "desc": "not found"})


@pytest.fixture
def settings():
    return get_settings()


@pytest_asyncio.fixture
async def database(tmp_path):
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'commerce.db'}")
    await db.create_tables()
    yield db
    await db.close()


@pytest_asyncio.fixture
async def session(database):
    async with database.session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def redis_client():
    client = fakeredis.aioredis.FakeRedis(decode_responses=True)
    await client.flushall()
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def idempotency(redis_client):
    return IdempotencyStore(redis_client)


@pytest.fixture
def basket_service(redis_client, settings):
    return BasketService(redis_client, settings.basket_ttl_seconds)


@pytest.fixture
def fake_payos():
    return FakePayOS()


@pytest_asyncio.fixture
async def payos_client(fake_payos, settings):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(fake_payos), base_url="https://payos.test")
    client = PayOSClient(settings, http_client=http_client)
    yield client
    await client.close()


@pytest.fixture
def user_id():
    return uuid4()


@pytest.fixture
def make_order(database):
    async def _make(user_id, total=100000, status=OrderStatus.PENDING):
        now = utcnow()
        order = Order(
            user_id=user_id,
            order_date=now,
            total_amount=total,
            status=status.value,
            created_at=now,
            modified_date=None,
            items=[OrderItem(reference_id="P1", reference_type="product", name="Ha Long tour",
                             quantity=1, unit_price=total)],
            payments=[],
        )
        async with database.session_factory() as session:
            session.add(order)
            await session.commit()
        return order

    return _make


@pytest.fixture
def make_booking(database):
    async def _make(user_id, total=100000):
        now = utcnow()
        booking = Booking(
            id=uuid4(),
            user_id=user_id,
            booking_type=BookingType.TRANSPORT.value,
            booking_date=now,
            total_amount=total,
            created_at=now,
            modified_date=None,
            accommodation_detail=None,
            entertainment_detail=None,
            transport_detail=TransportBookingDetail(
                trip_id=uuid4(),
                seat_number="12A",
                departure_time=now,
                arrival_time=now + timedelta(hours=6),
            ),
        )
        async with database.session_factory() as session:
            session.add(booking)
            await session.commit()
        return booking

    return _make


@pytest.fixture
def make_payment(database):
    async def _make(user_id, amount=100000, order_id=None, booking_id=None, order_code=123456):
        async with database.session_factory() as session:
            return await PaymentReconciliationEngine(session).create_payment_record(
                user_id=user_id,
                amount=amount,
                order_id=order_id,
                booking_id=booking_id,
                payment_link_id=f"link-{order_code}",
                order_code=order_code,
            )

    return _make


@pytest.fixture
def fetch(database):
    """Read a row through a fresh session so assertions see committed state only."""
    async def _fetch(model, ident):
        async with database.session_factory() as session:
            return await session.get(model, ident)

    return _fetch


@pytest.fixture
def webhook_body(settings):
    def _body(order_code, amount=100000, code="00", reference="FT123456", when="2025-01-15 10:00:00",
              signature=None):
        data = {
            "orderCode": order_code,
            "amount": amount,
            "description": f"Order {order_code}",
            "accountNumber": "12345678",
            "reference": reference,
            "transactionDateTime": when,
            "currency": "VND",
            "paymentLinkId": f"link-{order_code}",
            "code": code,
            "desc": "success" if code == "00" else "failed",
        }
        if signature is None:
            signature = compute_signature(order_code, amount, code, reference, settings.payos_checksum_key)
        return {"code": code, "desc": data["desc"], "success": code == "00", "data": data, "signature": signature}

    return _body


def make_token(user_id, is_admin=False):
    settings = get_settings()
    return jwt.encode(
        {"sub": str(user_id), "is_admin": is_admin},
        settings.jwt_secret,
        algorithm=settings.jwt_algorithm,
    )


@pytest.fixture
def auth_headers():
    def _headers(user_id, is_admin=False):
        return {"Authorization": f"Bearer {make_token(user_id, is_admin)}"}

    return _headers


@pytest_asyncio.fixture
async def api(database, redis_client, payos_client):
    from services.commerce_service import app as app_module

    async def override_session():
        async with database.session_factory() as session:
            yield session

    app_module.app.dependency_overrides[app_module.get_session] = override_session
    app_module.app.dependency_overrides[app_module.get_redis] = lambda: redis_client
    app_module.app.dependency_overrides[app_module.get_payos_client] = lambda: payos_client

    transport = httpx.ASGITransport(app=app_module.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app_module.app.dependency_overrides.clear()
