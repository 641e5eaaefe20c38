"""
Tests for the payment and payout gateway clients.
"""
import hashlib
import hmac
import json
from datetime import datetime, timedelta
from decimal import Decimal

import httpx
import pytest

from services.payment_service.payment_gateway import (
    PaymentGatewayClient,
    PaymentGatewayError,
    verify_webhook_signature,
)
from services.payment_service.payout_gateway import (
    BankAccountInfo,
    PayoutGatewayClient,
    PayoutGatewayError,
    resolve_bank_bin,
    sign_payload,
)

KEY = "secret"


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def test_webhook_signature_accepts_matching_digest():
    body = b'{"code":"00","data":{"orderCode":123456}}'
    digest = hmac.new(KEY.encode(), body, hashlib.sha256).hexdigest()

    assert verify_webhook_signature(body, digest, KEY)
    assert verify_webhook_signature(body, digest.upper(), KEY)


@pytest.mark.parametrize("signature,key", [
    (None, KEY),
    ("", KEY),
    ("00" * 32, KEY),
    ("abc", KEY),
])
def test_webhook_signature_fails_closed(signature, key):
    assert not verify_webhook_signature(b"{}", signature, key)


def test_webhook_signature_requires_configured_key():
    body = b"{}"
    digest = hmac.new(b"", body, hashlib.sha256).hexdigest()

    assert not verify_webhook_signature(body, digest, "")


def test_webhook_signature_rejects_tampered_body():
    body = b'{"code":"00","data":{"orderCode":123456}}'
    digest = hmac.new(KEY.encode(), body, hashlib.sha256).hexdigest()

    assert not verify_webhook_signature(body.replace(b"123456", b"654321"), digest, KEY)


def test_bank_bin_lookup_falls_back_to_default():
    assert resolve_bank_bin("bidv", "970436") == "970418"
    assert resolve_bank_bin("UNKNOWN", "970436") == "970436"


def test_payload_signature_uses_sorted_pairs():
    payload = {"b": 2, "a": "x", "c": ["refund"]}
    expected = hmac.new(b"k", b'a=x&b=2&c=["refund"]', hashlib.sha256).hexdigest()

    assert sign_payload(payload, "k") == expected


@pytest.mark.asyncio
async def test_create_payment_link(settings):
    requests = []

    def handler(request: httpx.Request):
        requests.append(request)
        return httpx.Response(200, json={
            "code": "00",
            "desc": "success",
            "data": {"checkoutUrl": "https://pay.example/abc", "paymentLinkId": "abc", "status": "PENDING"},
        })

    async with mock_client(handler) as http_client:
        gateway = PaymentGatewayClient(settings, http_client)
        link = await gateway.create_payment_link(
            order_code=123456,
            amount=500000,
            description="Invoice 1",
            expired_at=datetime.utcnow() + timedelta(minutes=15),
        )

    assert link.checkout_url == "https://pay.example/abc"
    assert requests[0].url.path == "/v2/payment-requests"

    sent = json.loads(requests[0].content)
    signed = (
        f"amount=500000&cancelUrl={settings.payment_cancel_url}&description=Invoice 1"
        f"&orderCode=123456&returnUrl={settings.payment_return_url}"
    )
    assert sent["signature"] == hmac.new(
        settings.payment_checksum_key.encode(), signed.encode(), hashlib.sha256
    ).hexdigest()


@pytest.mark.asyncio
async def test_payment_gateway_rejection_raises(settings):
    def handler(request):
        return httpx.Response(200, json={"code": "231", "desc": "Order exists", "data": None})

    async with mock_client(handler) as http_client:
        gateway = PaymentGatewayClient(settings, http_client)
        with pytest.raises(PaymentGatewayError):
            await gateway.get_payment_link_info(123456)


@pytest.mark.asyncio
async def test_payment_link_info(settings):
    def handler(request):
        assert request.url.path == "/v2/payment-requests/123456"
        return httpx.Response(200, json={"code": "00", "data": {
            "orderCode": 123456, "amount": 500000, "amountPaid": 500000, "amountRemaining": 0, "status": "PAID",
        }})

    async with mock_client(handler) as http_client:
        info = await PaymentGatewayClient(settings, http_client).get_payment_link_info(123456)

    assert info.status == "PAID"
    assert info.amount_paid == 500000


@pytest.mark.asyncio
async def test_create_payout_sends_signed_idempotent_request(settings):
    requests = []

    def handler(request: httpx.Request):
        requests.append(request)
        return httpx.Response(200, json={"code": "00", "data": {"id": "po_789", "approvalState": "APPROVING"}})

    bank = BankAccountInfo(account_number="0011001234567", bank_code="TCB")
    async with mock_client(handler) as http_client:
        result = await PayoutGatewayClient(settings, http_client).create_payout(9, bank, Decimal("500000.00"))

    assert result.success
    assert result.transaction_id == "po_789"

    request = requests[0]
    body = json.loads(request.content)
    assert request.url.path == "/v1/payouts"
    assert body["toBin"] == "970407"
    assert body["amount"] == 500000
    assert body["category"] == ["refund"]
    assert body["referenceId"].startswith("refund_9_")
    assert request.headers["x-idempotency-key"] == body["referenceId"]
    assert request.headers["x-client-id"] == settings.payout_client_id
    assert request.headers["x-signature"] == sign_payload(body, settings.payout_checksum_key)


@pytest.mark.asyncio
@pytest.mark.parametrize("response", [
    httpx.Response(400, json={"code": "14", "desc": "Insufficient balance"}),
    httpx.Response(200, json={"code": "14", "desc": "Insufficient balance", "data": None}),
    httpx.Response(200, content=b"<html>oops</html>"),
])
async def test_create_payout_failures_become_results(settings, response):
    async with mock_client(lambda request: response) as http_client:
        result = await PayoutGatewayClient(settings, http_client).create_payout(
            9, BankAccountInfo(account_number="1", bank_code="VCB"), Decimal("1000")
        )

    assert not result.success
    assert result.message


@pytest.mark.asyncio
async def test_create_payout_network_error_becomes_result(settings):
    def handler(request):
        raise httpx.ConnectError("connection refused")

    async with mock_client(handler) as http_client:
        result = await PayoutGatewayClient(settings, http_client).create_payout(
            9, BankAccountInfo(account_number="1", bank_code="VCB"), Decimal("1000")
        )

    assert not result.success
    assert "unreachable" in result.message


@pytest.mark.asyncio
async def test_payout_status_reports_latest_transaction(settings):
    def handler(request):
        assert request.url.path == "/v1/payouts/po_789"
        return httpx.Response(200, json={"code": "00", "data": {
            "id": "po_789",
            "createdAt": "2026-10-01T10:00:00",
            "transactions": [
                {"state": "PROCESSING", "amount": 500000},
                {"state": "SUCCEEDED", "amount": 500000, "transactionDatetime": "2026-10-01T10:05:00"},
            ],
        }})

    async with mock_client(handler) as http_client:
        info = await PayoutGatewayClient(settings, http_client).get_payout_status("po_789")

    assert info.status == "SUCCEEDED"
    assert info.amount == Decimal("500000")
    assert info.completed_at == "2026-10-01T10:05:00"


@pytest.mark.asyncio
async def test_payout_balance(settings):
    def handler(request):
        assert request.url.path == "/v1/payouts-account/balance"
        return httpx.Response(200, json={"code": "00", "data": {"accountNumber": "1", "balance": "2500000"}})

    async with mock_client(handler) as http_client:
        balance = await PayoutGatewayClient(settings, http_client).get_account_balance()

    assert balance == Decimal("2500000")


@pytest.mark.asyncio
async def test_payout_balance_error_raises(settings):
    async with mock_client(lambda request: httpx.Response(503)) as http_client:
        with pytest.raises(PayoutGatewayError):
            await PayoutGatewayClient(settings, http_client).get_account_balance()
