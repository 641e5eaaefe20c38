"""Repository-style accessors over an AsyncSession.

State transitions on invoices and refunds are conditional updates: the row
only changes when it is still in the expected status, and the caller learns
from the row count whether it won. This is how concurrent webhook deliveries
and refund calls are kept from clobbering each other without explicit locks.
"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .models import (
    TERMINAL_REFUND_STATUSES,
    AccidentReport,
    Invoice,
    InvoiceStatus,
    Refund,
    RefundStatus,
    RentalContract,
    Renter,
    Staff,
    Transaction,
    TransactionType,
)

logger = logging.getLogger(__name__)


class InvoiceRepository:
    """Invoice accessors."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, invoice_id: int, refresh: bool = False) -> Optional[Invoice]:
        return await self.session.get(Invoice, invoice_id, populate_existing=refresh)

    async def get_by_order_code(self, order_code: int) -> Optional[Invoice]:
        result = await self.session.execute(
            select(Invoice).where(Invoice.order_code == order_code)
        )
        return result.scalar_one_or_none()

    async def transition(
        self,
        invoice_id: int,
        expected: InvoiceStatus,
        new_status: InvoiceStatus,
        **values: Any,
    ) -> bool:
        """Move an invoice from `expected` to `new_status`; False if it was not in `expected`."""
        result = await self.session.execute(
            update(Invoice)
            .where(Invoice.id == invoice_id, Invoice.status == expected.value)
            .values(status=new_status.value, **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def mark_paid(self, invoice_id: int, amount: Decimal, paid_at: datetime) -> bool:
        return await self.transition(
            invoice_id,
            InvoiceStatus.PENDING,
            InvoiceStatus.PAID,
            amount_paid=amount,
            paid_at=paid_at,
        )

    async def link_contract(self, invoice_id: int, contract_id: int) -> bool:
        """Attach a contract to an invoice that has none yet."""
        result = await self.session.execute(
            update(Invoice)
            .where(Invoice.id == invoice_id, Invoice.contract_id.is_(None))
            .values(contract_id=contract_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def set_order_code(self, invoice_id: int, order_code: int) -> None:
        await self.session.execute(
            update(Invoice)
            .where(Invoice.id == invoice_id)
            .values(order_code=order_code)
            .execution_options(synchronize_session=False)
        )


class ContractRepository:
    """Rental contract accessors."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, contract_id: int) -> Optional[RentalContract]:
        return await self.session.get(RentalContract, contract_id)

    async def add(self, contract: RentalContract) -> RentalContract:
        self.session.add(contract)
        await self.session.flush()
        return contract


class RefundRepository:
    """Refund accessors."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, refund_id: int, refresh: bool = False) -> Optional[Refund]:
        return await self.session.get(Refund, refund_id, populate_existing=refresh)

    async def add(self, refund: Refund) -> Refund:
        self.session.add(refund)
        await self.session.flush()
        return refund

    async def get_by_status(self, status: RefundStatus) -> Sequence[Refund]:
        result = await self.session.execute(
            select(Refund).where(Refund.status == status.value).order_by(Refund.requested_at)
        )
        return result.scalars().all()

    async def get_open_for_invoice(self, invoice_id: int) -> Optional[Refund]:
        """Return the non-terminal refund on an invoice, if any."""
        result = await self.session.execute(
            select(Refund)
            .where(
                Refund.invoice_id == invoice_id,
                Refund.status.not_in(TERMINAL_REFUND_STATUSES),
            )
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def transition(
        self,
        refund_id: int,
        expected: RefundStatus,
        new_status: RefundStatus,
        **values: Any,
    ) -> bool:
        result = await self.session.execute(
            update(Refund)
            .where(Refund.id == refund_id, Refund.status == expected.value)
            .values(status=new_status.value, **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


class TransactionRepository:
    """Append-only ledger."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def append(
        self,
        invoice_id: int,
        type: TransactionType,
        amount: Optional[Decimal] = None,
        note: Optional[str] = None,
    ) -> Transaction:
        entry = Transaction(
            invoice_id=invoice_id,
            type=type.value,
            amount=amount,
            note=note,
            created_at=datetime.utcnow(),
        )
        self.session.add(entry)
        await self.session.flush()
        logger.debug(f"Ledger entry {type.value} appended for invoice {invoice_id}")
        return entry

    async def list_for_invoice(self, invoice_id: int) -> Sequence[Transaction]:
        result = await self.session.execute(
            select(Transaction)
            .where(Transaction.invoice_id == invoice_id)
            .order_by(Transaction.created_at, Transaction.id)
        )
        return result.scalars().all()


class PeopleRepository:
    """Read-only lookups for renters and staff."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_renter(self, renter_id: int) -> Optional[Renter]:
        return await self.session.get(Renter, renter_id)

    async def get_staff(self, staff_id: int) -> Optional[Staff]:
        return await self.session.get(Staff, staff_id)

    async def get_station_staff(self, station_id: int) -> Sequence[Staff]:
        result = await self.session.execute(
            select(Staff).where(Staff.station_id == station_id)
        )
        return result.scalars().all()


class AccidentRepository:
    """Read-only accident report lookups."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, accident_id: int) -> Optional[AccidentReport]:
        return await self.session.get(AccidentReport, accident_id)
