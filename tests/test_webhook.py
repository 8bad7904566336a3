"""Tests for PayOS webhook verification and processing."""
import json
from unittest.mock import AsyncMock

import pytest

from services.commerce_service.models import Order, Payment
from services.commerce_service.reconciliation import PaymentReconciliationEngine
from services.commerce_service.webhook import (
    PayOSWebhookHandler,
    WebhookRejected,
    compute_signature,
)


@pytest.fixture
def handler(session, idempotency, settings):
    return PayOSWebhookHandler(idempotency, PaymentReconciliationEngine(session), settings.payos_checksum_key)


def encode(body):
    return json.dumps(body).encode()


def test_signature_is_lowercase_hex_hmac():
    signature = compute_signature(123, 100000, "00", "FT1", "secret")

    assert len(signature) == 64
    assert signature == signature.lower()
    assert signature != compute_signature(123, 100001, "00", "FT1", "secret")


@pytest.mark.asyncio
async def test_success_code_marks_payment_paid_and_order_confirmed(
    handler, make_order, make_payment, webhook_body, fetch, user_id
):
    order = await make_order(user_id)
    payment = await make_payment(user_id, order_id=order.id, order_code=5001)

    outcome = await handler.handle(encode(webhook_body(5001)))

    assert outcome.success is True
    assert (await fetch(Payment, payment.id)).status == "Paid"
    assert (await fetch(Order, order.id)).status == "Confirmed"


@pytest.mark.asyncio
async def test_failure_code_marks_payment_failed_and_order_cancelled(
    handler, make_order, make_payment, webhook_body, fetch, user_id
):
    order = await make_order(user_id)
    payment = await make_payment(user_id, order_id=order.id, order_code=5002)

    outcome = await handler.handle(encode(webhook_body(5002, code="01")))

    assert outcome.success is True
    assert (await fetch(Payment, payment.id)).status == "Failed"
    assert (await fetch(Order, order.id)).status == "Cancelled"


@pytest.mark.asyncio
async def test_duplicate_delivery_runs_side_effects_once(
    session, idempotency, settings, make_order, make_payment, webhook_body, user_id
):
    order = await make_order(user_id)
    await make_payment(user_id, order_id=order.id, order_code=5003)
    engine = PaymentReconciliationEngine(session)
    engine.update_status_by_order_code = AsyncMock(wraps=engine.update_status_by_order_code)
    handler = PayOSWebhookHandler(idempotency, engine, settings.payos_checksum_key)
    raw = encode(webhook_body(5003))

    first = await handler.handle(raw)
    second = await handler.handle(raw)

    assert first.success is True
    assert second.success is True
    assert second.message == "Duplicate (ignored)"
    assert engine.update_status_by_order_code.await_count == 1


@pytest.mark.asyncio
async def test_supplied_idempotency_key_is_used(handler, idempotency, make_payment, webhook_body, user_id):
    await make_payment(user_id, order_code=5004)

    await handler.handle(encode(webhook_body(5004)), idempotency_header="delivery-42")

    assert await idempotency.is_claimed("delivery-42")


@pytest.mark.asyncio
async def test_derived_key_combines_order_code_result_and_time(handler, idempotency, make_payment, webhook_body, user_id):
    await make_payment(user_id, order_code=5005)

    await handler.handle(encode(webhook_body(5005, when="2025-01-15 10:00:00")))

    assert await idempotency.is_claimed("payos:5005:00:2025-01-15 10:00:00")


@pytest.mark.asyncio
async def test_tampered_amount_is_rejected_without_state_change(
    handler, redis_client, make_payment, webhook_body, fetch, user_id
):
    payment = await make_payment(user_id, order_code=5006)
    body = webhook_body(5006, amount=100000)
    body["data"]["amount"] = 1000

    with pytest.raises(WebhookRejected):
        await handler.handle(encode(body))

    assert (await fetch(Payment, payment.id)).status == "Pending"
    assert await redis_client.keys("idempotency:*") == []


@pytest.mark.parametrize(
    "field, value",
    [
        ("orderCode", 5017),
        ("code", "01"),
        ("reference", "FT123457"),
    ],
)
@pytest.mark.asyncio
async def test_signed_field_changes_are_rejected_without_state_change(
    handler, redis_client, make_payment, webhook_body, fetch, user_id, field, value
):
    payment = await make_payment(user_id, order_code=5016)
    other = await make_payment(user_id, order_code=5017)
    body = webhook_body(5016)
    body["data"][field] = value

    with pytest.raises(WebhookRejected, match="Invalid signature"):
        await handler.handle(encode(body))

    assert (await fetch(Payment, payment.id)).status == "Pending"
    assert (await fetch(Payment, other.id)).status == "Pending"
    assert await redis_client.keys("idempotency:*") == []


@pytest.mark.asyncio
async def test_every_single_character_signature_mutation_is_rejected(
    handler, redis_client, make_payment, webhook_body, fetch, user_id
):
    payment = await make_payment(user_id, order_code=5007)
    body = webhook_body(5007)
    signature = body["signature"]

    for position in range(len(signature)):
        replacement = "0" if signature[position] != "0" else "1"
        body["signature"] = signature[:position] + replacement + signature[position + 1:]
        with pytest.raises(WebhookRejected):
            await handler.handle(encode(body))

    assert (await fetch(Payment, payment.id)).status == "Pending"
    assert await redis_client.keys("idempotency:*") == []


@pytest.mark.asyncio
async def test_uppercase_signature_is_not_accepted(handler, make_payment, webhook_body, user_id):
    await make_payment(user_id, order_code=5008)
    body = webhook_body(5008)
    body["signature"] = body["signature"].upper()

    with pytest.raises(WebhookRejected):
        await handler.handle(encode(body))


@pytest.mark.asyncio
async def test_header_signature_takes_precedence_over_body(handler, make_payment, webhook_body, user_id):
    await make_payment(user_id, order_code=5009)
    body = webhook_body(5009)
    valid = body["signature"]
    body["signature"] = "0" * 64

    outcome = await handler.handle(encode(body), signature_header=valid)

    assert outcome.success is True


@pytest.mark.asyncio
async def test_missing_signature_is_rejected(handler, webhook_body):
    body = webhook_body(5010)
    del body["signature"]

    with pytest.raises(WebhookRejected):
        await handler.handle(encode(body))


@pytest.mark.parametrize("raw", [b"not json", b"{}", b'{"data": {"amount": 1}}'])
@pytest.mark.asyncio
async def test_malformed_payload_is_rejected(handler, redis_client, raw):
    with pytest.raises(WebhookRejected):
        await handler.handle(raw)

    assert await redis_client.keys("idempotency:*") == []


@pytest.mark.asyncio
async def test_missing_payment_reports_failure_and_releases_claim(handler, idempotency, webhook_body, caplog):
    outcome = await handler.handle(encode(webhook_body(5011)), idempotency_header="orphan")

    assert outcome.success is False
    assert outcome.message == "Payment not found"
    assert not await idempotency.is_claimed("orphan")
    assert "Webhook anomaly" in caplog.text


@pytest.mark.asyncio
async def test_internal_error_reports_failure_and_releases_claim(idempotency, settings, webhook_body):
    engine = AsyncMock()
    engine.update_status_by_order_code.side_effect = RuntimeError("database unavailable")
    handler = PayOSWebhookHandler(idempotency, engine, settings.payos_checksum_key)

    outcome = await handler.handle(encode(webhook_body(5012)), idempotency_header="boom")

    assert outcome.success is False
    assert not await idempotency.is_claimed("boom")


@pytest.mark.asyncio
async def test_out_of_order_failure_does_not_undo_payment(
    handler, make_order, make_payment, webhook_body, fetch, user_id
):
    order = await make_order(user_id)
    payment = await make_payment(user_id, order_id=order.id, order_code=5013)

    paid = await handler.handle(encode(webhook_body(5013, code="00", when="2025-01-15 10:05:00")))
    late = await handler.handle(encode(webhook_body(5013, code="01", when="2025-01-15 10:00:00")))

    assert paid.message == "Payment paid"
    assert late.success is True
    assert late.message == "Stale event ignored"
    assert (await fetch(Payment, payment.id)).status == "Paid"
    assert (await fetch(Order, order.id)).status == "Confirmed"


@pytest.mark.asyncio
async def test_replayed_paid_event_after_refund_is_ignored(
    handler, session, make_order, make_payment, webhook_body, fetch, user_id
):
    order = await make_order(user_id)
    payment = await make_payment(user_id, order_id=order.id, order_code=5015)
    raw = encode(webhook_body(5015, when="2025-01-15 10:00:00"))
    await handler.handle(raw)
    await PaymentReconciliationEngine(session).refund_payment(payment.id, 100000)

    outcome = await handler.handle(raw, idempotency_header="redelivery-5015")

    assert outcome.success is True
    assert outcome.message == "Stale event ignored"
    assert (await fetch(Payment, payment.id)).status == "Refunded"
    assert (await fetch(Order, order.id)).status == "Cancelled"


@pytest.mark.asyncio
async def test_amount_mismatch_is_logged(handler, make_payment, webhook_body, user_id, caplog):
    await make_payment(user_id, amount=100000, order_code=5014)

    outcome = await handler.handle(encode(webhook_body(5014, amount=90000)))

    assert outcome.success is True
    assert "differs from payment" in caplog.text
