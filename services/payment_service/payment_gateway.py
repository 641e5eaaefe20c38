"""Payment gateway client: payment links, link status and webhook authenticity."""
import hashlib
import hmac
import logging
from datetime import datetime
from typing import Any, Dict, Optional

import httpx
from pydantic import BaseModel

from shared.config import Settings

logger = logging.getLogger(__name__)


class PaymentGatewayError(RuntimeError):
    pass


class PaymentLink(BaseModel):
    """Checkout link returned by the gateway."""
    order_code: int
    amount: int
    checkout_url: str
    payment_link_id: Optional[str] = None
    status: str = "PENDING"
    expired_at: Optional[int] = None


class PaymentLinkInfo(BaseModel):
    """Current state of a payment link."""
    order_code: int
    amount: int
    amount_paid: int = 0
    amount_remaining: int = 0
    status: str
    created_at: Optional[str] = None


def hmac_sha256_hex(key: str, message: bytes) -> str:
    return hmac.new(key.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_webhook_signature(raw_body: bytes, signature: Optional[str], checksum_key: str) -> bool:
    """
    Check a webhook signature against the raw request body.

    Fails closed when the signature or the checksum key is missing. The whole
    hex digest is compared, case-insensitively.
    """
    if not signature or not checksum_key:
        return False

    expected = hmac_sha256_hex(checksum_key, raw_body)
    received = signature.strip().lower()
    return hmac.compare_digest(expected, received)


class PaymentGatewayClient:
    """Client for the payment-link API."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        self.settings = settings
        self.http_client = http_client

    def _headers(self) -> Dict[str, str]:
        return {
            "x-client-id": self.settings.payment_client_id,
            "x-api-key": self.settings.payment_api_key,
            "Content-Type": "application/json",
        }

    def _link_signature(self, order_code: int, amount: int, description: str) -> str:
        # Fields in alphabetical order, as the gateway recomputes it
        data = (
            f"amount={amount}&cancelUrl={self.settings.payment_cancel_url}"
            f"&description={description}&orderCode={order_code}"
            f"&returnUrl={self.settings.payment_return_url}"
        )
        return hmac_sha256_hex(self.settings.payment_checksum_key, data.encode("utf-8"))

    async def _request(self, method: str, path: str, payload: Optional[dict] = None) -> Dict[str, Any]:
        url = f"{self.settings.payment_base_url}{path}"
        try:
            response = await self.http_client.request(
                method,
                url,
                json=payload,
                headers=self._headers(),
                timeout=self.settings.http_timeout_seconds,
            )
        except httpx.HTTPError as e:
            raise PaymentGatewayError(f"Payment gateway unreachable: {str(e)}") from e

        if response.status_code >= 400:
            raise PaymentGatewayError(
                f"Payment gateway error {response.status_code}: {response.text}"
            )

        body = response.json()
        if body.get("code") != "00" or body.get("data") is None:
            raise PaymentGatewayError(
                f"Payment gateway rejected request: {body.get('code')} {body.get('desc')}"
            )
        return body["data"]

    async def create_payment_link(
        self,
        order_code: int,
        amount: int,
        description: str,
        expired_at: datetime,
        buyer_name: Optional[str] = None,
        buyer_email: Optional[str] = None,
        buyer_phone: Optional[str] = None,
    ) -> PaymentLink:
        expired_at_ts = int(expired_at.timestamp())
        payload = {
            "orderCode": order_code,
            "amount": amount,
            "description": description,
            "items": [{"name": "EV rental", "quantity": 1, "price": amount}],
            "cancelUrl": self.settings.payment_cancel_url,
            "returnUrl": self.settings.payment_return_url,
            "buyerName": buyer_name,
            "buyerEmail": buyer_email,
            "buyerPhone": buyer_phone,
            "expiredAt": expired_at_ts,
            "signature": self._link_signature(order_code, amount, description),
        }

        data = await self._request("POST", "/v2/payment-requests", payload)
        logger.info(f"Payment link created for order {order_code}: {data.get('checkoutUrl')}")

        return PaymentLink(
            order_code=order_code,
            amount=amount,
            checkout_url=data["checkoutUrl"],
            payment_link_id=data.get("paymentLinkId"),
            status=data.get("status", "PENDING"),
            expired_at=expired_at_ts,
        )

    async def get_payment_link_info(self, order_code: int) -> PaymentLinkInfo:
        data = await self._request("GET", f"/v2/payment-requests/{order_code}")
        return PaymentLinkInfo(
            order_code=data.get("orderCode", order_code),
            amount=data.get("amount", 0),
            amount_paid=data.get("amountPaid", 0),
            amount_remaining=data.get("amountRemaining", 0),
            status=data.get("status", "PENDING"),
            created_at=data.get("createdAt"),
        )

    def verify_webhook(self, raw_body: bytes, signature: Optional[str]) -> bool:
        valid = verify_webhook_signature(raw_body, signature, self.settings.payment_checksum_key)
        if not valid:
            logger.warning("Webhook signature verification failed")
        return valid
