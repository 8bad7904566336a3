"""
PayOS webhook verification and processing.

Order of work for a delivery: parse, verify signature, claim idempotency key,
reconcile. Nothing touches Redis or the database before the signature has been
verified, and once it has, the provider always gets a 200.
"""
import hmac
import logging
from datetime import datetime, timedelta
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from redis.exceptions import RedisError

from shared.errors import NotFoundError, ValidationError
from shared.idempotency import IdempotencyStore

from .models import PaymentStatus
from .payos_client import SUCCESS_CODE, hmac_sha256_hex
from .reconciliation import PaymentReconciliationEngine

logger = logging.getLogger(__name__)

TRANSACTION_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


class WebhookRejected(ValidationError):
    """Malformed payload or bad signature. Rejected before any state change."""
    code = "invalid_webhook"
    default_message = "Invalid webhook"


class PayOSWebhookData(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    order_code: int = Field(alias="orderCode")
    amount: int
    code: Optional[str] = None
    desc: Optional[str] = None
    description: str = ""
    reference: str = ""
    transaction_date_time: Optional[str] = Field(default=None, alias="transactionDateTime")
    payment_link_id: Optional[str] = Field(default=None, alias="paymentLinkId")


class PayOSWebhookPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    code: str = ""
    desc: str = ""
    success: Optional[bool] = None
    data: PayOSWebhookData
    signature: Optional[str] = None

    @property
    def result_code(self) -> str:
        return self.data.code or self.code

    @property
    def occurred_at(self) -> Optional[datetime]:
        if not self.data.transaction_date_time:
            return None
        try:
            return datetime.strptime(self.data.transaction_date_time, TRANSACTION_TIME_FORMAT)
        except ValueError:
            logger.warning(f"Unparseable transactionDateTime: {self.data.transaction_date_time}")
            return None

    def derived_idempotency_key(self) -> str:
        return f"payos:{self.data.order_code}:{self.result_code}:{self.data.transaction_date_time or ''}"


class WebhookOutcome(BaseModel):
    success: bool
    message: str


def compute_signature(order_code: int, amount: int, code: str, reference: str, checksum_key: str) -> str:
    return hmac_sha256_hex(checksum_key, f"{order_code}|{amount}|{code}|{reference}")


def verify_signature(payload: PayOSWebhookPayload, signature: Optional[str], checksum_key: str) -> bool:
    """Exact comparison against the lowercase hex digest; an upper-case digest does not match."""
    if not signature:
        logger.warning(f"Webhook for order code {payload.data.order_code} carries no signature")
        return False

    expected = compute_signature(
        payload.data.order_code,
        payload.data.amount,
        payload.result_code,
        payload.data.reference,
        checksum_key,
    )
    if not hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8")):
        logger.warning(
            f"Invalid webhook signature for order code {payload.data.order_code}: "
            f"expected {expected}, received {signature}"
        )
        return False
    return True


def status_for_result_code(code: str) -> PaymentStatus:
    return PaymentStatus.PAID if code == SUCCESS_CODE else PaymentStatus.FAILED


class PayOSWebhookHandler:
    """Processes one webhook delivery against the reconciliation engine."""

    def __init__(
        self,
        idempotency: IdempotencyStore,
        engine: PaymentReconciliationEngine,
        checksum_key: str,
        ttl: Union[timedelta, int] = timedelta(hours=24),
    ):
        self.idempotency = idempotency
        self.engine = engine
        self.checksum_key = checksum_key
        self.ttl = ttl

    @staticmethod
    def parse(raw_body: Union[bytes, str]) -> PayOSWebhookPayload:
        try:
            return PayOSWebhookPayload.model_validate_json(raw_body)
        except PydanticValidationError as e:
            logger.warning(f"Malformed webhook payload: {e.error_count()} validation error(s)")
            raise WebhookRejected("Malformed webhook payload")

    async def handle(
        self,
        raw_body: Union[bytes, str],
        signature_header: Optional[str] = None,
        idempotency_header: Optional[str] = None,
    ) -> WebhookOutcome:
        """
        Verify and apply one delivery.

        Raises WebhookRejected for malformed payloads and bad signatures. Every
        other outcome, including internal failures, is returned as a
        WebhookOutcome so the endpoint can answer 200.
        """
        payload = self.parse(raw_body)

        if not verify_signature(payload, signature_header or payload.signature, self.checksum_key):
            raise WebhookRejected("Invalid signature")

        order_code = payload.data.order_code
        key = idempotency_header or payload.derived_idempotency_key()

        try:
            claimed = await self.idempotency.try_claim(key, self.ttl)
        except RedisError:
            logger.exception(f"Idempotency store unavailable for webhook order code {order_code}")
            return WebhookOutcome(success=False, message="Processing failed")

        if not claimed:
            logger.warning(f"Duplicate webhook for order code {order_code} ignored (key {key})")
            return WebhookOutcome(success=True, message="Duplicate (ignored)")

        status = status_for_result_code(payload.result_code)
        logger.info(
            f"PayOS webhook: order code {order_code}, code {payload.result_code}, "
            f"amount {payload.data.amount}, reference {payload.data.reference} -> {status.value}"
        )

        try:
            payment = await self.engine.update_status_by_order_code(
                order_code, status, occurred_at=payload.occurred_at
            )
        except NotFoundError:
            logger.error(
                f"Webhook anomaly: no payment for order code {order_code} "
                f"(provider delivery outran local payment creation?)"
            )
            await self._release(key)
            return WebhookOutcome(success=False, message="Payment not found")
        except Exception:
            logger.exception(f"Webhook processing failed for order code {order_code}")
            await self._release(key)
            return WebhookOutcome(success=False, message="Processing failed")

        if payment.amount != payload.data.amount:
            logger.warning(
                f"Webhook amount {payload.data.amount} differs from payment {payment.id} "
                f"amount {payment.amount} (order code {order_code})"
            )

        if payment.status != status.value:
            logger.warning(
                f"Webhook {status.value} for order code {order_code} not applied; "
                f"payment {payment.id} stays {payment.status}"
            )
            return WebhookOutcome(success=True, message="Stale event ignored")

        return WebhookOutcome(success=True, message=f"Payment {status.value.lower()}")

    async def _release(self, key: str):
        try:
            await self.idempotency.release(key)
        except RedisError:
            logger.exception(f"Could not release idempotency key {key}")
