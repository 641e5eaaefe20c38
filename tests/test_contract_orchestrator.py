"""
Tests for turning paid booking holds into rental contracts.
"""
from datetime import datetime

import pytest
from sqlalchemy import func, select

from shared.models import InvoiceStatus, RentalContract
from shared.repositories import InvoiceRepository
from services.payment_service.contract_orchestrator import BookingContractOrchestrator


def orchestrator_for(database, holds, availability, publisher):
    return BookingContractOrchestrator(database.session_factory, holds, availability, publisher)


async def mark_paid(database, invoice):
    async with database.session_factory() as session:
        await InvoiceRepository(session).mark_paid(invoice.id, invoice.amount_due, datetime.utcnow())
        await session.commit()


async def count_contracts(database) -> int:
    async with database.session_factory() as session:
        return await session.scalar(select(func.count()).select_from(RentalContract))


@pytest.mark.asyncio
async def test_unpaid_invoice_is_refused(database, holds, availability, publisher, make_booking):
    invoice, _ = await make_booking()
    orchestrator = orchestrator_for(database, holds, availability, publisher)

    result = await orchestrator.confirm_booking_after_payment(invoice.id)

    assert not result.success
    assert result.message == "You must pay your invoice first"
    assert await count_contracts(database) == 0
    assert publisher.events == []


@pytest.mark.asyncio
async def test_missing_invoice_is_not_found(database, holds, availability, publisher):
    orchestrator = orchestrator_for(database, holds, availability, publisher)

    result = await orchestrator.confirm_booking_after_payment(4040)

    assert not result.success
    assert result.not_found


@pytest.mark.asyncio
async def test_second_confirmation_returns_existing_contract(
    database, holds, availability, publisher, make_booking
):
    invoice, _ = await make_booking()
    await mark_paid(database, invoice)
    orchestrator = orchestrator_for(database, holds, availability, publisher)

    first = await orchestrator.confirm_booking_after_payment(invoice.id)
    second = await orchestrator.confirm_booking_after_payment(invoice.id)

    assert first.success and second.success
    assert second.contract_id == first.contract_id
    assert await count_contracts(database) == 1
    assert len(publisher.of("booking_created")) == 1


@pytest.mark.asyncio
async def test_publish_failures_do_not_undo_the_contract(
    database, holds, availability, make_booking, publisher_factory
):
    """Side-effect publication failures are logged; the contract stands."""
    invoice, _ = await make_booking()
    await mark_paid(database, invoice)
    publisher = publisher_factory(fail_on={"booking_created", "contract_generation"})
    orchestrator = orchestrator_for(database, holds, availability, publisher)

    result = await orchestrator.confirm_booking_after_payment(invoice.id)

    assert result.success
    assert await count_contracts(database) == 1
    assert [kind for kind, _ in publisher.events] == ["receipt_generation"]

    async with database.session_factory() as session:
        current = await InvoiceRepository(session).get(invoice.id)
    assert current.status == InvoiceStatus.PAID.value
    assert current.contract_id == result.contract_id


@pytest.mark.asyncio
async def test_envelopes_carry_renter_details(database, holds, availability, publisher, make_booking, renter):
    invoice, hold = await make_booking()
    await mark_paid(database, invoice)
    orchestrator = orchestrator_for(database, holds, availability, publisher)

    result = await orchestrator.confirm_booking_after_payment(invoice.id)

    booking = publisher.of("booking_created")[0]
    assert booking.booking_id == result.contract_id
    assert booking.station_id == hold.station_id
    assert booking.renter_email == renter.email
    assert booking.total_cost == hold.total_cost

    contract_request = publisher.of("contract_generation")[0]
    assert contract_request.renter_name == renter.full_name

    receipt_request = publisher.of("receipt_generation")[0]
    assert receipt_request.contract_id == result.contract_id
    assert receipt_request.renter_id == renter.id
