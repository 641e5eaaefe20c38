"""Payout gateway client: outbound bank transfers for refunds."""
import json
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx
from pydantic import BaseModel

from shared.config import Settings

from .payment_gateway import hmac_sha256_hex

logger = logging.getLogger(__name__)

# Bank code -> routing BIN. Unknown codes fall back to the configured default BIN.
BANK_BINS: Dict[str, str] = {
    "VCB": "970436", "BIDV": "970418", "VIB": "970441",
    "MB": "970422", "TCB": "970407", "ACB": "970416",
    "VPB": "970432", "TPB": "970423", "HDB": "970437",
    "MSB": "970426", "SCB": "970429", "OCB": "970448",
    "SHB": "970443", "EIB": "970431", "VAB": "970425",
    "NAB": "970428", "BAB": "970409", "PGB": "970430",
    "GPB": "970408", "AGB": "970405", "LVB": "970434",
    "KLB": "970452", "VBSP": "970427",
}


class PayoutGatewayError(RuntimeError):
    pass


class BankAccountInfo(BaseModel):
    account_number: str
    account_name: Optional[str] = None
    bank_code: str


class PayoutResult(BaseModel):
    success: bool
    transaction_id: Optional[str] = None
    status: Optional[str] = None
    message: str


class PayoutInfo(BaseModel):
    transaction_id: str
    status: str
    amount: Decimal
    created_at: Optional[str] = None
    completed_at: Optional[str] = None


def resolve_bank_bin(bank_code: str, default_bin: str) -> str:
    return BANK_BINS.get((bank_code or "").upper(), default_bin)


def sign_payload(payload: Dict[str, Any], checksum_key: str) -> str:
    """HMAC-SHA256 over ``key=value`` pairs of the payload sorted by key."""
    parts = []
    for key in sorted(payload):
        value = payload[key]
        if not isinstance(value, str):
            value = json.dumps(value, separators=(",", ":"))
        parts.append(f"{key}={value}")
    return hmac_sha256_hex(checksum_key, "&".join(parts).encode("utf-8"))


class PayoutGatewayClient:
    """Client for the payout API."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        self.settings = settings
        self.http_client = http_client

    async def _send(
        self,
        method: str,
        path: str,
        payload: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> httpx.Response:
        headers = {
            "x-client-id": self.settings.payout_client_id,
            "x-api-key": self.settings.payout_api_key,
        }
        if idempotency_key:
            headers["x-idempotency-key"] = idempotency_key
        if payload is not None:
            headers["x-signature"] = sign_payload(payload, self.settings.payout_checksum_key)

        return await self.http_client.request(
            method,
            f"{self.settings.payout_base_url}{path}",
            json=payload,
            headers=headers,
            timeout=self.settings.http_timeout_seconds,
        )

    async def create_payout(
        self, refund_id: int, bank_info: BankAccountInfo, amount: Decimal
    ) -> PayoutResult:
        """Send `amount` to the customer's account. Never raises; failures come back as results."""
        reference_id = f"refund_{refund_id}_{datetime.utcnow():%Y%m%d%H%M%S}"
        payload = {
            "referenceId": reference_id,
            "amount": int(amount),
            "description": f"Refund for rental #{refund_id}",
            "toBin": resolve_bank_bin(bank_info.bank_code, self.settings.payout_default_bank_bin),
            "toAccountNumber": bank_info.account_number,
            "category": ["refund"],
        }

        logger.info(f"Creating payout {reference_id} for refund #{refund_id} ({payload['amount']})")

        try:
            response = await self._send("POST", "/v1/payouts", payload, idempotency_key=reference_id)
        except httpx.HTTPError as e:
            logger.error(f"Payout request for refund #{refund_id} failed: {str(e)}")
            return PayoutResult(success=False, message=f"Payout gateway unreachable: {str(e)}")

        if response.status_code >= 400:
            logger.error(f"Payout failed for refund #{refund_id}: {response.status_code} - {response.text}")
            return PayoutResult(
                success=False,
                message=f"Payout API error: {response.status_code} - {response.text}",
            )

        try:
            body = response.json()
        except ValueError:
            return PayoutResult(success=False, message="Payout response is not valid JSON")

        data = body.get("data")
        if not data:
            logger.error(f"Payout response data is null for refund #{refund_id}: {response.text}")
            return PayoutResult(
                success=False,
                message=body.get("desc") or "Payout response data is null",
            )

        return PayoutResult(
            success=True,
            transaction_id=str(data.get("id")),
            status=data.get("approvalState"),
            message="Payout initiated successfully",
        )

    async def get_payout_status(self, transaction_id: str) -> PayoutInfo:
        try:
            response = await self._send("GET", f"/v1/payouts/{transaction_id}")
        except httpx.HTTPError as e:
            raise PayoutGatewayError(f"Payout gateway unreachable: {str(e)}") from e

        if response.status_code >= 400:
            raise PayoutGatewayError(f"Failed to get payout status: {response.status_code}")

        data = response.json().get("data") or {}
        transactions = data.get("transactions") or []
        latest = transactions[-1] if transactions else {}

        return PayoutInfo(
            transaction_id=str(data.get("id", transaction_id)),
            status=latest.get("state", "PENDING"),
            amount=Decimal(str(latest.get("amount", 0))),
            created_at=data.get("createdAt"),
            completed_at=latest.get("transactionDatetime"),
        )

    async def get_account_balance(self) -> Decimal:
        try:
            response = await self._send("GET", "/v1/payouts-account/balance")
        except httpx.HTTPError as e:
            raise PayoutGatewayError(f"Payout gateway unreachable: {str(e)}") from e

        if response.status_code >= 400:
            raise PayoutGatewayError(f"Failed to get account balance: {response.status_code}")

        data = response.json().get("data") or {}
        return Decimal(str(data.get("balance", "0")))
