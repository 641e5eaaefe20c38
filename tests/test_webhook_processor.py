"""
Tests for payment webhook processing and invoice confirmation.
"""
import asyncio
import json
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from shared.models import InvoiceStatus, RentalContract, RentalStatus, Transaction, TransactionType
from shared.repositories import InvoiceRepository, TransactionRepository
from services.payment_service.contract_orchestrator import BookingContractOrchestrator
from services.payment_service.webhook_processor import (
    InvalidWebhookSignature,
    MalformedWebhookPayload,
    PaymentWebhookProcessor,
    read_notification,
)


@pytest.fixture
def processor(database, payment_gateway, holds, publisher, availability):
    orchestrator = BookingContractOrchestrator(database.session_factory, holds, availability, publisher)
    return PaymentWebhookProcessor(database.session_factory, payment_gateway, orchestrator, holds)


def paid_body(order_code) -> bytes:
    return json.dumps({
        "code": "00",
        "desc": "success",
        "success": True,
        "data": {"orderCode": order_code, "amount": 500000, "code": "00", "desc": "success"},
    }).encode()


async def load_invoice(database, invoice_id):
    async with database.session_factory() as session:
        return await InvoiceRepository(session).get(invoice_id)


async def count_contracts(database) -> int:
    async with database.session_factory() as session:
        return await session.scalar(select(func.count()).select_from(RentalContract))


async def ledger(database, invoice_id):
    async with database.session_factory() as session:
        return await TransactionRepository(session).list_for_invoice(invoice_id)


@pytest.mark.parametrize("payload,order_code,paid", [
    ({"code": "00", "data": {"orderCode": 123456}}, 123456, True),
    ({"success": True, "data": {"orderCode": "654321"}}, 654321, True),
    ({"data": {"orderCode": 111111, "status": "paid"}}, 111111, True),
    ({"code": "01", "data": {"orderCode": 222222, "code": "00"}}, 222222, True),
    ({"orderCode": 333333, "code": "00"}, 333333, True),
    ({"code": "01", "data": {"orderCode": 444444, "status": "CANCELLED"}}, 444444, False),
])
def test_read_notification_accepts_gateway_shapes(payload, order_code, paid):
    """The order code and payment outcome are read from every known payload shape."""
    notification = read_notification(payload)

    assert notification.order_code == order_code
    assert notification.paid is paid


@pytest.mark.parametrize("payload", [
    [],
    {"code": "00"},
    {"code": "00", "data": {"orderCode": "abc"}},
    {"code": "00", "data": {"orderCode": True}},
])
def test_read_notification_rejects_missing_order_code(payload):
    with pytest.raises(MalformedWebhookPayload):
        read_notification(payload)


@pytest.mark.asyncio
async def test_invalid_signature_is_rejected_before_parsing(processor, make_booking, database):
    """A delivery with a bad signature never touches the invoice."""
    invoice, _ = await make_booking()

    with pytest.raises(InvalidWebhookSignature):
        await processor.handle(paid_body(invoice.order_code), "deadbeef")

    with pytest.raises(InvalidWebhookSignature):
        await processor.handle(paid_body(invoice.order_code), None)

    current = await load_invoice(database, invoice.id)
    assert current.status == InvoiceStatus.PENDING.value


@pytest.mark.asyncio
async def test_signed_garbage_is_malformed(processor, sign_body):
    body = b"not json"
    with pytest.raises(MalformedWebhookPayload):
        await processor.handle(body, sign_body(body))


@pytest.mark.asyncio
async def test_paid_webhook_confirms_booking(
    processor, make_booking, database, holds, publisher, availability, sign_body
):
    """A paid notification marks the invoice paid and creates exactly one contract."""
    invoice, hold = await make_booking()
    body = paid_body(invoice.order_code)

    result = await processor.handle(body, sign_body(body))

    assert result.success
    assert result.contract_id is not None

    current = await load_invoice(database, invoice.id)
    assert current.status == InvoiceStatus.PAID.value
    assert current.amount_paid == Decimal("500000")
    assert current.paid_at is not None
    assert current.contract_id == result.contract_id

    async with database.session_factory() as session:
        contract = await session.get(RentalContract, result.contract_id)
    assert contract.status == RentalStatus.CONFIRMED.value
    assert contract.vehicle_id == hold.vehicle_id
    assert contract.renter_id == hold.renter_id

    entries = await ledger(database, invoice.id)
    assert [e.type for e in entries] == [TransactionType.PAYMENT.value]

    assert hold.booking_token in holds.removed
    assert availability.released == [hold.booking_token]
    assert len(publisher.of("booking_created")) == 1
    assert publisher.of("contract_generation")[0].contract_id == result.contract_id
    assert publisher.of("receipt_generation")[0].invoice_id == invoice.id


@pytest.mark.asyncio
async def test_duplicate_delivery_is_a_noop(processor, make_booking, database, publisher, sign_body):
    """Replaying the same notification does not pay or confirm twice."""
    invoice, _ = await make_booking()
    body = paid_body(invoice.order_code)

    first = await processor.handle(body, sign_body(body))
    second = await processor.handle(body, sign_body(body))

    assert first.success and not first.duplicate
    assert second.success and second.duplicate
    assert second.contract_id == first.contract_id

    assert await count_contracts(database) == 1
    assert len(await ledger(database, invoice.id)) == 1
    assert len(publisher.of("booking_created")) == 1


@pytest.mark.asyncio
async def test_concurrent_deliveries_pay_once(processor, make_booking, database, sign_body):
    """Two racing deliveries produce a single Paid transition and a single contract."""
    invoice, _ = await make_booking()
    body = paid_body(invoice.order_code)

    results = await asyncio.gather(
        processor.handle(body, sign_body(body)),
        processor.handle(body, sign_body(body)),
    )

    assert all(r.success for r in results)
    assert sum(1 for r in results if r.duplicate) == 1
    assert await count_contracts(database) == 1

    async with database.session_factory() as session:
        payments = await session.scalar(
            select(func.count()).select_from(Transaction).where(Transaction.invoice_id == invoice.id)
        )
    assert payments == 1


@pytest.mark.asyncio
async def test_expired_hold_keeps_payment_without_contract(
    processor, make_booking, database, holds, sign_body
):
    """Payment is recorded even when the booking hold expired; the contract waits for reconciliation."""
    invoice, hold = await make_booking(with_hold=False)
    body = paid_body(invoice.order_code)

    result = await processor.handle(body, sign_body(body))

    assert result.success
    assert result.contract_id is None
    assert "hold" in result.message.lower()

    current = await load_invoice(database, invoice.id)
    assert current.status == InvoiceStatus.PAID.value
    assert current.contract_id is None
    assert await count_contracts(database) == 0
    assert holds.removed == []

    # The hold shows up again (e.g. restored by support) and reconciliation completes the booking
    await holds.save(hold)
    reconciled = await processor.reconcile_invoice(invoice.id)

    assert reconciled.success
    assert reconciled.contract_id is not None
    assert hold.booking_token in holds.removed


@pytest.mark.asyncio
async def test_cancelled_notification_cancels_pending_invoice(processor, make_booking, database, sign_body):
    invoice, _ = await make_booking()
    body = json.dumps({"code": "01", "data": {"orderCode": invoice.order_code, "status": "CANCELLED"}}).encode()

    result = await processor.handle(body, sign_body(body))

    assert result.success
    current = await load_invoice(database, invoice.id)
    assert current.status == InvoiceStatus.CANCELLED.value


@pytest.mark.asyncio
async def test_unknown_order_code_is_acknowledged(processor, sign_body):
    body = paid_body(999999)

    result = await processor.handle(body, sign_body(body))

    assert result.success
    assert result.invoice_id is None


@pytest.mark.asyncio
async def test_check_and_update_applies_gateway_status(processor, make_booking, database, payment_gateway):
    """Polling the gateway confirms a payment whose webhook was lost."""
    invoice, _ = await make_booking()
    payment_gateway.link_status = "PAID"

    result = await processor.check_and_update(invoice.order_code)

    assert result.success
    assert result.contract_id is not None
    current = await load_invoice(database, invoice.id)
    assert current.status == InvoiceStatus.PAID.value


@pytest.mark.asyncio
async def test_check_and_update_leaves_pending_link_alone(processor, make_booking, database, payment_gateway):
    invoice, _ = await make_booking()
    payment_gateway.link_status = "PENDING"

    await processor.check_and_update(invoice.order_code)

    current = await load_invoice(database, invoice.id)
    assert current.status == InvoiceStatus.PENDING.value
