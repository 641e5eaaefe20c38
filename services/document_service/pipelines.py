"""Queue handlers that render, store and email rental documents.

Handlers return normally when the work is done or the entity no longer
exists, and raise when a side effect fails so the delivery is dead-lettered.
"""
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from shared.events import (
    ContractGenerationRequestedEvent,
    PdfGenerationRequestedEvent,
    ReceiptGenerationRequestedEvent,
)
from shared.mail import MailTransport
from shared.repositories import ContractRepository, InvoiceRepository, PeopleRepository

from .rendering import render_contract_pdf, render_receipt_pdf
from .storage import DocumentStore

logger = logging.getLogger(__name__)


class DocumentPipelines:
    """Contract, receipt and legacy PDF generation."""

    def __init__(self, session_factory: async_sessionmaker, store: DocumentStore, mail: MailTransport):
        self.session_factory = session_factory
        self.store = store
        self.mail = mail

    async def _contract_document(
        self, contract_id: int, renter_name: str, staff_name: Optional[str]
    ) -> Optional[bytes]:
        """Return the stored contract PDF, rendering and storing it on first use."""
        name = self.store.contract_name(contract_id)
        existing = await self.store.load(name)
        if existing is not None:
            logger.info(f"Reusing stored document {name}")
            return existing

        async with self.session_factory() as session:
            contract = await ContractRepository(session).get(contract_id)

        if contract is None:
            logger.warning(f"Contract {contract_id} not found for document generation")
            return None

        pdf_bytes = render_contract_pdf(contract, renter_name, staff_name)
        await self.store.save(name, pdf_bytes)
        return pdf_bytes

    async def handle_contract_generation(self, event: ContractGenerationRequestedEvent):
        logger.info(f"Processing contract generation for contract {event.contract_id}")
        pdf_bytes = await self._contract_document(event.contract_id, event.renter_name, event.staff_name)
        if pdf_bytes is None:
            return

        await self.mail.send_contract(event.renter_email, event.renter_name, pdf_bytes, event.contract_id)
        logger.info(f"Contract emailed to {event.renter_email} for contract {event.contract_id}")

    async def handle_pdf_generation(self, event: PdfGenerationRequestedEvent):
        """Legacy contract document request, rendered without a staff name."""
        logger.info(f"Processing legacy PDF generation for contract {event.contract_id}")
        pdf_bytes = await self._contract_document(event.contract_id, event.renter_name, None)
        if pdf_bytes is None:
            return

        await self.mail.send_contract(event.renter_email, event.renter_name, pdf_bytes, event.contract_id)
        logger.info(f"Contract PDF emailed to {event.renter_email} for contract {event.contract_id}")

    async def handle_receipt_generation(self, event: ReceiptGenerationRequestedEvent):
        logger.info(f"Processing receipt generation for invoice {event.invoice_id}")
        name = self.store.receipt_name(event.invoice_id)
        pdf_bytes = await self.store.load(name)

        if pdf_bytes is None:
            async with self.session_factory() as session:
                invoice = await InvoiceRepository(session).get(event.invoice_id)
                renter = None
                if event.renter_id is not None:
                    renter = await PeopleRepository(session).get_renter(event.renter_id)

            if invoice is None:
                logger.warning(f"Invoice {event.invoice_id} not found for receipt generation")
                return

            pdf_bytes = render_receipt_pdf(invoice, renter, event.renter_name)
            await self.store.save(name, pdf_bytes)

        await self.mail.send_receipt(event.renter_email, event.renter_name, pdf_bytes, event.invoice_id)
        logger.info(f"Receipt emailed to {event.renter_email} for invoice {event.invoice_id}")
