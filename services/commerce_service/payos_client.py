"""
PayOS payment-link API client.

One client is built at startup from settings and shared by every request.
"""
import hashlib
import hmac
import logging
from typing import List, Optional

import httpx
from pydantic import BaseModel, Field

from shared.config import Settings
from shared.errors import OrderCodeConflictError, ProviderError, ValidationError

logger = logging.getLogger(__name__)

SUCCESS_CODE = "00"
ORDER_CODE_EXISTS_CODE = "231"
MAX_DESCRIPTION_LENGTH = 25


def hmac_sha256_hex(key: str, message: str) -> str:
    """Lowercase hex HMAC-SHA256 of ``message`` under ``key``."""
    return hmac.new(key.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


class PaymentItem(BaseModel):
    name: str
    quantity: int = 1
    price: int


class PaymentLinkRequest(BaseModel):
    order_code: int
    amount: int
    description: str
    return_url: str
    cancel_url: str
    items: List[PaymentItem] = Field(default_factory=list)
    buyer_name: Optional[str] = None
    buyer_email: Optional[str] = None
    buyer_phone: Optional[str] = None

    def signature_payload(self) -> str:
        # Field order is alphabetical, as the provider expects
        return (
            f"amount={self.amount}&cancelUrl={self.cancel_url}&description={self.description}"
            f"&orderCode={self.order_code}&returnUrl={self.return_url}"
        )


class PaymentLink(BaseModel):
    """Result of creating a payment link. ``order_code`` is what the provider echoed back."""
    checkout_url: str
    order_code: int
    amount: int
    payment_link_id: Optional[str] = None
    qr_code: Optional[str] = None
    status: str = "PENDING"


class PaymentLinkInfo(BaseModel):
    order_code: int
    amount: int
    amount_paid: int = 0
    status: str
    payment_link_id: Optional[str] = None
    cancellation_reason: Optional[str] = None


class PayOSClient:
    """Thin async wrapper over the PayOS merchant API."""

    def __init__(self, settings: Settings, http_client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self.checksum_key = settings.payos_checksum_key
        self.http_client = http_client or httpx.AsyncClient(
            base_url=settings.payos_base_url,
            timeout=settings.payos_timeout_seconds,
        )
        self.http_client.headers.update({
            "x-client-id": settings.payos_client_id,
            "x-api-key": settings.payos_api_key,
        })

    def validate_order_code(self, order_code: int):
        if order_code is None or not 1 <= order_code <= self.settings.order_code_max:
            raise ValidationError(
                f"Order code must be between 1 and {self.settings.order_code_max}"
            )

    def validate_amount(self, amount: int):
        if amount is None or amount < self.settings.payos_min_amount:
            raise ValidationError(f"Amount must be at least {self.settings.payos_min_amount} VND")

    async def create_payment_link(self, request: PaymentLinkRequest) -> PaymentLink:
        """
        Create a checkout link.

        Raises:
            ValidationError: order code out of range or amount below the minimum
            OrderCodeConflictError: the provider already has this order code
            ProviderError: transport failure or any other provider error code
        """
        self.validate_order_code(request.order_code)
        self.validate_amount(request.amount)

        description = request.description[:MAX_DESCRIPTION_LENGTH]
        request = request.model_copy(update={"description": description})

        body = {
            "orderCode": request.order_code,
            "amount": request.amount,
            "description": description,
            "items": [item.model_dump() for item in request.items],
            "returnUrl": request.return_url,
            "cancelUrl": request.cancel_url,
            "signature": hmac_sha256_hex(self.checksum_key, request.signature_payload()),
        }
        if request.buyer_name:
            body["buyerName"] = request.buyer_name
        if request.buyer_email:
            body["buyerEmail"] = request.buyer_email
        if request.buyer_phone:
            body["buyerPhone"] = request.buyer_phone

        logger.info(f"Creating PayOS payment link for order code {request.order_code}, amount {request.amount}")
        data = await self._call("POST", "/v2/payment-requests", json=body)

        link = PaymentLink(
            checkout_url=data["checkoutUrl"],
            order_code=int(data.get("orderCode", request.order_code)),
            amount=int(data.get("amount", request.amount)),
            payment_link_id=data.get("paymentLinkId"),
            qr_code=data.get("qrCode"),
            status=data.get("status") or "PENDING",
        )
        logger.info(f"PayOS payment link created: {link.checkout_url} (order code {link.order_code})")
        return link

    async def get_payment_link_info(self, order_code: int) -> PaymentLinkInfo:
        data = await self._call("GET", f"/v2/payment-requests/{order_code}")
        return self._link_info(data, order_code)

    async def cancel_payment_link(self, order_code: int, reason: Optional[str] = None) -> PaymentLinkInfo:
        body = {"cancellationReason": reason} if reason else {}
        data = await self._call("POST", f"/v2/payment-requests/{order_code}/cancel", json=body)
        logger.info(f"PayOS payment link {order_code} cancelled")
        return self._link_info(data, order_code)

    async def close(self):
        await self.http_client.aclose()

    @staticmethod
    def _link_info(data: dict, order_code: int) -> PaymentLinkInfo:
        return PaymentLinkInfo(
            order_code=int(data.get("orderCode", order_code)),
            amount=int(data.get("amount", 0)),
            amount_paid=int(data.get("amountPaid") or 0),
            status=str(data.get("status", "")).upper(),
            payment_link_id=data.get("id") or data.get("paymentLinkId"),
            cancellation_reason=data.get("cancellationReason"),
        )

    async def _call(self, method: str, path: str, json: Optional[dict] = None) -> dict:
        try:
            response = await self.http_client.request(method, path, json=json)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"PayOS {method} {path} returned HTTP {e.response.status_code}")
            raise ProviderError(f"Payment provider returned HTTP {e.response.status_code}")
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"PayOS {method} {path} failed: {str(e)}")
            raise ProviderError("Payment provider is unreachable")

        code = str(payload.get("code", ""))
        if code == ORDER_CODE_EXISTS_CODE:
            raise OrderCodeConflictError(payload.get("desc") or None)
        if code != SUCCESS_CODE or not payload.get("data"):
            logger.error(f"PayOS {method} {path} rejected: code={code} desc={payload.get('desc')}")
            raise ProviderError(payload.get("desc") or f"Payment provider error {code}")

        return payload["data"]
