"""Turns a paid booking hold into a confirmed rental contract."""
import logging
from datetime import datetime
from typing import Optional

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import async_sessionmaker

from shared.booking_holds import BookingHold, BookingHoldStore, VehicleAvailability
from shared.events import (
    BookingCreatedEvent,
    ContractGenerationRequestedEvent,
    ReceiptGenerationRequestedEvent,
)
from shared.models import Invoice, InvoiceStatus, RentalContract, RentalStatus, Renter
from shared.producers import EventPublisher
from shared.repositories import ContractRepository, InvoiceRepository, PeopleRepository

logger = logging.getLogger(__name__)


class ContractConfirmationResult(BaseModel):
    success: bool
    message: str
    contract_id: Optional[int] = None
    not_found: bool = False


class BookingContractOrchestrator:
    """
    Creates the rental contract for a paid invoice.

    Running it twice for the same invoice never creates a second contract:
    the invoice is linked to its contract with a conditional update, and a
    linked invoice short-circuits to the contract it already has.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        holds: BookingHoldStore,
        availability: VehicleAvailability,
        publisher: EventPublisher,
    ):
        self.session_factory = session_factory
        self.holds = holds
        self.availability = availability
        self.publisher = publisher

    async def confirm_booking_after_payment(self, invoice_id: int) -> ContractConfirmationResult:
        async with self.session_factory() as session:
            invoices = InvoiceRepository(session)

            invoice = await invoices.get(invoice_id)
            if invoice is None:
                return ContractConfirmationResult(
                    success=False, not_found=True, message=f"Invoice {invoice_id} not found"
                )

            if invoice.status != InvoiceStatus.PAID.value:
                return ContractConfirmationResult(
                    success=False, message="You must pay your invoice first"
                )

            if invoice.contract_id is not None:
                return ContractConfirmationResult(
                    success=True,
                    contract_id=invoice.contract_id,
                    message="Contract already exists for this invoice",
                )

            hold = await self.holds.get(invoice.booking_token)
            if hold is None:
                logger.warning(
                    f"Booking hold {invoice.booking_token} for invoice {invoice_id} not found or expired"
                )
                return ContractConfirmationResult(
                    success=False, not_found=True, message="Booking hold not found or expired"
                )

            renter = await PeopleRepository(session).get_renter(hold.renter_id)

            contract = RentalContract(
                renter_id=hold.renter_id,
                vehicle_id=hold.vehicle_id,
                station_id=hold.station_id,
                start_time=hold.start_time,
                end_time=hold.end_time,
                total_cost=hold.total_cost,
                status=RentalStatus.CONFIRMED.value,
                created_at=datetime.utcnow(),
            )
            await ContractRepository(session).add(contract)

            if not await invoices.link_contract(invoice.id, contract.id):
                await session.rollback()
                current = await invoices.get(invoice_id, refresh=True)
                logger.info(
                    f"Invoice {invoice_id} was confirmed concurrently as contract {current.contract_id}"
                )
                return ContractConfirmationResult(
                    success=True,
                    contract_id=current.contract_id,
                    message="Contract already exists for this invoice",
                )

            await session.commit()

        logger.info(f"Contract {contract.id} created for invoice {invoice_id} (booking {hold.booking_token})")

        try:
            await self.availability.release_slot(hold)
        except Exception as e:
            logger.error(f"Failed to release vehicle slot for booking {hold.booking_token}: {str(e)}")

        await self._publish_follow_ups(contract, invoice, hold, renter)

        return ContractConfirmationResult(
            success=True,
            contract_id=contract.id,
            message="Booking confirmed and contract created",
        )

    async def _publish_follow_ups(
        self,
        contract: RentalContract,
        invoice: Invoice,
        hold: BookingHold,
        renter: Optional[Renter],
    ):
        """Publish post-confirmation events. A failed publish is logged, never raised."""
        try:
            await self.publisher.publish_booking_created(
                BookingCreatedEvent(
                    booking_id=contract.id,
                    renter_id=hold.renter_id,
                    renter_email=renter.email if renter else None,
                    renter_name=renter.full_name if renter else None,
                    vehicle_id=hold.vehicle_id,
                    station_id=hold.station_id,
                    start_time=hold.start_time,
                    end_time=hold.end_time,
                    total_cost=hold.total_cost,
                )
            )
        except Exception as e:
            logger.error(f"Failed to publish BookingCreated for contract {contract.id}: {str(e)}")

        if renter is None:
            logger.warning(
                f"Renter {hold.renter_id} not found; skipping documents for contract {contract.id}"
            )
            return

        try:
            await self.publisher.publish_contract_generation(
                ContractGenerationRequestedEvent(
                    contract_id=contract.id,
                    renter_email=renter.email,
                    renter_name=renter.full_name,
                )
            )
        except Exception as e:
            logger.error(f"Failed to request contract document for contract {contract.id}: {str(e)}")

        try:
            await self.publisher.publish_receipt_generation(
                ReceiptGenerationRequestedEvent(
                    invoice_id=invoice.id,
                    contract_id=contract.id,
                    renter_id=renter.id,
                    renter_email=renter.email,
                    renter_name=renter.full_name,
                )
            )
        except Exception as e:
            logger.error(f"Failed to request receipt for invoice {invoice.id}: {str(e)}")
