"""
Tests for the payment service's HTTP contract.
"""
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from shared.models import RefundStatus
from services.payment_service import app as payment_app
from services.payment_service.refund_orchestrator import RefundResult
from services.payment_service.webhook_processor import (
    InvalidWebhookSignature,
    MalformedWebhookPayload,
    WebhookResult,
)


@pytest.fixture
def processor(monkeypatch):
    stub = AsyncMock()
    monkeypatch.setattr(payment_app, "webhook_processor", stub)
    return stub


@pytest.fixture
def client():
    # No lifespan: the endpoint only talks to the patched processor
    return TestClient(payment_app.app)


def test_processed_webhook_returns_success(client, processor):
    processor.handle.return_value = WebhookResult(success=True, message="Booking confirmed", invoice_id=1)

    response = client.post(
        "/payments/webhook",
        content=b'{"code":"00","data":{"orderCode":123456}}',
        headers={"x-payos-signature": "abc"},
    )

    assert response.status_code == 200
    assert response.json()["success"] is True
    raw_body, signature = processor.handle.await_args.args
    assert raw_body == b'{"code":"00","data":{"orderCode":123456}}'
    assert signature == "abc"


@pytest.mark.parametrize("error", [
    InvalidWebhookSignature("bad signature"),
    MalformedWebhookPayload("no orderCode"),
])
def test_rejected_webhook_returns_400(client, processor, error):
    processor.handle.side_effect = error

    response = client.post("/payments/webhook", content=b"{}")

    assert response.status_code == 400


def test_unexpected_failure_returns_500(client, processor):
    processor.handle.side_effect = RuntimeError("database gone")

    response = client.post("/payments/webhook", content=b"{}", headers={"x-payos-signature": "abc"})

    assert response.status_code == 500


@pytest.fixture
def refunds(monkeypatch):
    stub = AsyncMock()
    monkeypatch.setattr(payment_app, "refund_orchestrator", stub)
    return stub


def test_wrong_status_approve_reports_current_status(client, refunds):
    refunds.approve_refund.return_value = RefundResult(
        success=False,
        refund_id=3,
        status=RefundStatus.APPROVED,
        message="Cannot approve refund with status approved",
    )

    response = client.post("/refunds/3/approve")

    assert response.status_code == 400
    detail = response.json()["detail"]
    assert detail["status"] == "approved"
    assert detail["refundId"] == 3
    assert detail["message"] == "Cannot approve refund with status approved"


def test_missing_refund_is_404(client, refunds):
    refunds.approve_refund.return_value = RefundResult(
        success=False, not_found=True, message="Refund 9 not found"
    )

    response = client.post("/refunds/9/approve")

    assert response.status_code == 404
    assert response.json()["detail"]["message"] == "Refund 9 not found"


def test_refund_result_body_is_camel_case(client, refunds):
    refunds.approve_refund.return_value = RefundResult(
        success=True, refund_id=3, status=RefundStatus.APPROVED, message="Refund approved"
    )

    response = client.post("/refunds/3/approve")

    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "message": "Refund approved",
        "refundId": 3,
        "status": "approved",
        "payoutTransactionId": None,
    }
