"""Refund lifecycle: request, approve, pay out, reject and retry.

    Pending --approve--> Approved --process--> Processing --payout ok--> Completed
       |                                           |
       +--reject--> Rejected                       +--payout failed--> Failed

Completed, Failed and Rejected are terminal. A failed refund is retried by
requesting a new one. Every transition is a conditional update on the
expected status, so a second caller racing the same refund loses cleanly.
"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional, Sequence

from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from shared.models import Invoice, InvoiceStatus, Refund, RefundStatus, TransactionType
from shared.repositories import InvoiceRepository, RefundRepository, TransactionRepository

from .payout_gateway import BankAccountInfo, PayoutGatewayClient, PayoutInfo

logger = logging.getLogger(__name__)


class RefundResult(BaseModel):
    success: bool
    message: str
    refund_id: Optional[int] = None
    status: Optional[RefundStatus] = None
    payout_transaction_id: Optional[str] = None
    not_found: bool = False


def max_refundable(invoice: Invoice) -> Decimal:
    return (invoice.amount_paid or Decimal("0")) - (invoice.refund_amount or Decimal("0"))


class RefundOrchestrator:
    """Drives refunds through their state machine and the payout gateway."""

    def __init__(self, session_factory: async_sessionmaker, payout_gateway: PayoutGatewayClient):
        self.session_factory = session_factory
        self.payout_gateway = payout_gateway

    async def request_refund(
        self,
        invoice_id: int,
        amount: Decimal,
        reason: str,
        staff_id: Optional[int] = None,
        note: Optional[str] = None,
    ) -> RefundResult:
        """Open a Pending refund on a paid invoice."""
        if amount <= 0:
            return RefundResult(success=False, message="Refund amount must be positive")

        async with self.session_factory() as session:
            invoices = InvoiceRepository(session)
            refunds = RefundRepository(session)

            invoice = await invoices.get(invoice_id)
            if invoice is None:
                return RefundResult(
                    success=False, not_found=True, message=f"Invoice {invoice_id} not found"
                )

            if invoice.status != InvoiceStatus.PAID.value:
                return RefundResult(
                    success=False,
                    message=f"Only paid invoices can be refunded (invoice is {invoice.status})",
                )

            if not invoice.amount_paid or invoice.amount_paid <= 0:
                return RefundResult(success=False, message="Invoice has no paid amount")

            open_refund = await refunds.get_open_for_invoice(invoice_id)
            if open_refund is not None:
                return RefundResult(
                    success=False,
                    refund_id=open_refund.id,
                    status=RefundStatus(open_refund.status),
                    message=f"Refund #{open_refund.id} is already {open_refund.status} for this invoice",
                )

            refundable = max_refundable(invoice)
            if amount > refundable:
                return RefundResult(
                    success=False,
                    message=f"Refund amount {amount} exceeds refundable amount {refundable}",
                )

            try:
                refund = await refunds.add(
                    Refund(
                        invoice_id=invoice_id,
                        amount=amount,
                        reason=reason,
                        staff_id=staff_id,
                        note=note,
                        status=RefundStatus.PENDING.value,
                        requested_at=datetime.utcnow(),
                    )
                )
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.warning(f"Concurrent refund request on invoice {invoice_id} rejected")
                return RefundResult(
                    success=False, message="Another refund is already open for this invoice"
                )

        logger.info(f"Refund #{refund.id} requested for invoice {invoice_id} ({amount})")
        return RefundResult(
            success=True,
            refund_id=refund.id,
            status=RefundStatus.PENDING,
            message="Refund requested",
        )

    async def _transition(
        self,
        refund_id: int,
        expected: RefundStatus,
        new_status: RefundStatus,
        action: str,
        **values,
    ) -> RefundResult:
        async with self.session_factory() as session:
            refunds = RefundRepository(session)
            refund = await refunds.get(refund_id)
            if refund is None:
                return RefundResult(
                    success=False, not_found=True, message=f"Refund {refund_id} not found"
                )

            if await refunds.transition(refund_id, expected, new_status, **values):
                await session.commit()
                logger.info(f"Refund #{refund_id} {expected.value} -> {new_status.value}")
                return RefundResult(
                    success=True,
                    refund_id=refund_id,
                    status=new_status,
                    message=f"Refund {new_status.value}",
                )

            await session.rollback()
            current = await refunds.get(refund_id, refresh=True)
            return RefundResult(
                success=False,
                refund_id=refund_id,
                status=RefundStatus(current.status),
                message=f"Cannot {action} refund with status {current.status}",
            )

    async def approve_refund(self, refund_id: int) -> RefundResult:
        return await self._transition(refund_id, RefundStatus.PENDING, RefundStatus.APPROVED, "approve")

    async def reject_refund(self, refund_id: int, reason: str) -> RefundResult:
        return await self._transition(
            refund_id,
            RefundStatus.PENDING,
            RefundStatus.REJECTED,
            "reject",
            note=f"Rejected. Reason: {reason}",
            processed_at=datetime.utcnow(),
        )

    async def process_refund(self, refund_id: int, bank_info: BankAccountInfo) -> RefundResult:
        """Pay out an approved refund and settle the invoice."""
        claimed = await self._transition(
            refund_id, RefundStatus.APPROVED, RefundStatus.PROCESSING, "process"
        )
        if not claimed.success:
            return claimed

        async with self.session_factory() as session:
            refund = await RefundRepository(session).get(refund_id)
            amount = refund.amount
            invoice_id = refund.invoice_id

        try:
            payout = await self.payout_gateway.create_payout(refund_id, bank_info, amount)
        except Exception as e:
            logger.error(f"Error processing refund #{refund_id}: {str(e)}", exc_info=True)
            return await self._fail(refund_id, f"Processing error: {str(e)}")

        if not payout.success:
            return await self._fail(refund_id, f"Payout failed: {payout.message}")

        return await self._complete(refund_id, invoice_id, amount, payout.transaction_id)

    async def _fail(self, refund_id: int, note: str) -> RefundResult:
        async with self.session_factory() as session:
            await RefundRepository(session).transition(
                refund_id,
                RefundStatus.PROCESSING,
                RefundStatus.FAILED,
                note=note,
                processed_at=datetime.utcnow(),
            )
            await session.commit()

        logger.warning(f"Refund #{refund_id} failed: {note}")
        return RefundResult(
            success=False, refund_id=refund_id, status=RefundStatus.FAILED, message=note
        )

    async def _complete(
        self, refund_id: int, invoice_id: int, amount: Decimal, transaction_id: Optional[str]
    ) -> RefundResult:
        now = datetime.utcnow()
        async with self.session_factory() as session:
            invoices = InvoiceRepository(session)
            refunds = RefundRepository(session)

            completed = await refunds.transition(
                refund_id,
                RefundStatus.PROCESSING,
                RefundStatus.COMPLETED,
                processed_at=now,
                payout_transaction_id=transaction_id,
            )
            if not completed:
                await session.rollback()
                current = await refunds.get(refund_id, refresh=True)
                logger.error(
                    f"Refund #{refund_id} left Processing before payout {transaction_id} "
                    f"was recorded; it is now {current.status}"
                )
                return RefundResult(
                    success=False,
                    refund_id=refund_id,
                    status=RefundStatus(current.status),
                    payout_transaction_id=transaction_id,
                    message=f"Cannot complete refund with status {current.status}",
                )

            invoice = await invoices.get(invoice_id)
            refunded = (invoice.refund_amount or Decimal("0")) + amount
            new_status = (
                InvoiceStatus.REFUNDED
                if refunded >= (invoice.amount_paid or Decimal("0"))
                else InvoiceStatus.PARTIALLY_REFUNDED
            )
            settled = await invoices.transition(
                invoice_id,
                InvoiceStatus.PAID,
                new_status,
                refund_amount=refunded,
                refunded_at=now,
            )
            if not settled:
                logger.error(f"Invoice {invoice_id} changed while settling refund #{refund_id}")

            await TransactionRepository(session).append(
                invoice_id,
                TransactionType.REFUND,
                amount,
                note=f"Refund #{refund_id} payout {transaction_id}",
            )
            await session.commit()

        logger.info(f"Refund #{refund_id} completed; invoice {invoice_id} is {new_status.value}")
        return RefundResult(
            success=True,
            refund_id=refund_id,
            status=RefundStatus.COMPLETED,
            payout_transaction_id=transaction_id,
            message="Refund completed",
        )

    async def retry_failed_refund(self, refund_id: int, staff_id: Optional[int] = None) -> RefundResult:
        """Open a new Pending refund for the same amount as a failed one."""
        async with self.session_factory() as session:
            refund = await RefundRepository(session).get(refund_id)

        if refund is None:
            return RefundResult(success=False, not_found=True, message=f"Refund {refund_id} not found")

        if refund.status != RefundStatus.FAILED.value:
            return RefundResult(
                success=False,
                refund_id=refund_id,
                status=RefundStatus(refund.status),
                message=f"Only failed refunds can be retried (refund is {refund.status})",
            )

        return await self.request_refund(
            refund.invoice_id,
            refund.amount,
            f"[RETRY] {refund.reason or ''}".strip(),
            staff_id=staff_id if staff_id is not None else refund.staff_id,
            note=f"Retry of failed refund #{refund_id}",
        )

    async def get_pending_refunds(self) -> Sequence[Refund]:
        async with self.session_factory() as session:
            return await RefundRepository(session).get_by_status(RefundStatus.PENDING)

    async def get_refund(self, refund_id: int) -> Optional[Refund]:
        async with self.session_factory() as session:
            return await RefundRepository(session).get(refund_id)

    async def can_refund_be_processed(self, invoice_id: int) -> bool:
        async with self.session_factory() as session:
            invoice = await InvoiceRepository(session).get(invoice_id)
            if invoice is None or invoice.status != InvoiceStatus.PAID.value:
                return False
            if max_refundable(invoice) <= 0:
                return False
            return await RefundRepository(session).get_open_for_invoice(invoice_id) is None

    async def calculate_max_refund_amount(self, invoice_id: int) -> Decimal:
        async with self.session_factory() as session:
            invoice = await InvoiceRepository(session).get(invoice_id)
            if invoice is None or invoice.status != InvoiceStatus.PAID.value:
                return Decimal("0")
            return max_refundable(invoice)

    async def get_payout_status(self, refund_id: int) -> Optional[PayoutInfo]:
        refund = await self.get_refund(refund_id)
        if refund is None or not refund.payout_transaction_id:
            return None
        return await self.payout_gateway.get_payout_status(refund.payout_transaction_id)

    async def get_payout_balance(self) -> Decimal:
        return await self.payout_gateway.get_account_balance()
