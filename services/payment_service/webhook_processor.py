"""Payment webhook processing.

Gateway deliveries are at-least-once and may race each other. The invoice is
moved Pending -> Paid with a conditional update, so only the delivery that
wins the transition records the payment and confirms the booking; every other
delivery is acknowledged as a no-op.
"""
import json
import logging
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import async_sessionmaker

from shared.booking_holds import BookingHoldStore
from shared.models import InvoiceStatus, TransactionType
from shared.repositories import InvoiceRepository, TransactionRepository

from .contract_orchestrator import BookingContractOrchestrator, ContractConfirmationResult
from .payment_gateway import PaymentGatewayClient

logger = logging.getLogger(__name__)

CANCELLED_STATUSES = ("CANCELLED", "EXPIRED")


class InvalidWebhookSignature(Exception):
    pass


class MalformedWebhookPayload(ValueError):
    pass


class WebhookNotification(BaseModel):
    """The parts of a gateway notification the processor acts on."""
    order_code: int
    paid: bool
    status: Optional[str] = None


class WebhookResult(BaseModel):
    success: bool
    message: str
    invoice_id: Optional[int] = None
    contract_id: Optional[int] = None
    duplicate: bool = False


def _as_order_code(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def read_notification(payload: Any) -> WebhookNotification:
    """
    Extract the order code and payment outcome from a notification.

    The order code is read from ``data.orderCode`` or a top-level
    ``orderCode``, as a number or a numeric string. The payment counts as
    successful when any of ``code == "00"``, ``success == true``,
    ``data.status == "PAID"`` or ``data.code == "00"`` holds.
    """
    if not isinstance(payload, dict):
        raise MalformedWebhookPayload("Webhook body must be a JSON object")

    data = payload.get("data")
    if not isinstance(data, dict):
        data = {}

    order_code = _as_order_code(data.get("orderCode"))
    if order_code is None:
        order_code = _as_order_code(payload.get("orderCode"))
    if order_code is None:
        raise MalformedWebhookPayload("Webhook body has no usable orderCode")

    status = data.get("status")
    status = status.upper() if isinstance(status, str) else None

    paid = (
        payload.get("code") == "00"
        or payload.get("success") is True
        or status == "PAID"
        or data.get("code") == "00"
    )
    return WebhookNotification(order_code=order_code, paid=paid, status=status)


class PaymentWebhookProcessor:
    """Applies gateway payment notifications to invoices."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        gateway: PaymentGatewayClient,
        orchestrator: BookingContractOrchestrator,
        holds: BookingHoldStore,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.orchestrator = orchestrator
        self.holds = holds

    async def handle(self, raw_body: bytes, signature: Optional[str]) -> WebhookResult:
        """Verify, parse and apply one webhook delivery."""
        if not self.gateway.verify_webhook(raw_body, signature):
            raise InvalidWebhookSignature("Invalid webhook signature")

        try:
            payload = json.loads(raw_body)
        except ValueError as e:
            raise MalformedWebhookPayload(f"Webhook body is not valid JSON: {str(e)}") from e

        notification = read_notification(payload)
        logger.info(
            f"Webhook received for order {notification.order_code} "
            f"(paid={notification.paid}, status={notification.status})"
        )
        return await self.apply(notification)

    async def apply(self, notification: WebhookNotification) -> WebhookResult:
        async with self.session_factory() as session:
            invoice = await InvoiceRepository(session).get_by_order_code(notification.order_code)
            if invoice is None:
                logger.warning(f"No invoice for order code {notification.order_code}")
                return WebhookResult(
                    success=True, message=f"Unknown order code {notification.order_code}; ignored"
                )
            invoice_id = invoice.id

        if notification.paid:
            return await self.confirm_payment(invoice_id, notification.order_code)

        if notification.status in CANCELLED_STATUSES:
            return await self.cancel_payment(invoice_id, notification.status)

        logger.info(f"Order {notification.order_code} not paid (status={notification.status}); nothing to do")
        return WebhookResult(success=True, invoice_id=invoice_id, message="Payment not completed")

    async def confirm_payment(self, invoice_id: int, order_code: Optional[int] = None) -> WebhookResult:
        """Mark the invoice paid once and confirm its booking."""
        async with self.session_factory() as session:
            invoices = InvoiceRepository(session)
            invoice = await invoices.get(invoice_id)
            if invoice is None:
                return WebhookResult(success=False, message=f"Invoice {invoice_id} not found")

            if invoice.status == InvoiceStatus.PAID.value:
                logger.info(f"Invoice {invoice_id} already paid; duplicate delivery ignored")
                return WebhookResult(
                    success=True,
                    invoice_id=invoice_id,
                    contract_id=invoice.contract_id,
                    duplicate=True,
                    message="Invoice already paid",
                )

            won = await invoices.mark_paid(invoice_id, invoice.amount_due, datetime.utcnow())
            if not won:
                await session.rollback()
                current = await invoices.get(invoice_id, refresh=True)
                if current.status == InvoiceStatus.PAID.value:
                    logger.info(f"Invoice {invoice_id} was paid by a concurrent delivery")
                    return WebhookResult(
                        success=True,
                        invoice_id=invoice_id,
                        contract_id=current.contract_id,
                        duplicate=True,
                        message="Invoice already paid",
                    )

                logger.warning(f"Payment for invoice {invoice_id} ignored; invoice is {current.status}")
                return WebhookResult(
                    success=True,
                    invoice_id=invoice_id,
                    message=f"Invoice is {current.status}; payment not applied",
                )

            await TransactionRepository(session).append(
                invoice_id,
                TransactionType.PAYMENT,
                invoice.amount_due,
                note=f"Gateway order {order_code}" if order_code else None,
            )
            await session.commit()
            booking_token = invoice.booking_token

        logger.info(f"Invoice {invoice_id} marked paid")

        result = await self.confirm_booking(invoice_id, booking_token)
        if not result.success:
            # The payment stands; the contract is created later by reconciliation
            logger.error(f"Contract confirmation failed for invoice {invoice_id}: {result.message}")
            return WebhookResult(success=True, invoice_id=invoice_id, message=result.message)

        return WebhookResult(
            success=True,
            invoice_id=invoice_id,
            contract_id=result.contract_id,
            message=result.message,
        )

    async def confirm_booking(
        self, invoice_id: int, booking_token: Optional[str]
    ) -> ContractConfirmationResult:
        """Run contract confirmation and consume the booking hold once it succeeds."""
        result = await self.orchestrator.confirm_booking_after_payment(invoice_id)
        if result.success and booking_token:
            await self.holds.remove(booking_token)
        return result

    async def reconcile_invoice(self, invoice_id: int) -> ContractConfirmationResult:
        """Confirm the booking of an already-paid invoice, e.g. after a failed confirmation."""
        async with self.session_factory() as session:
            invoice = await InvoiceRepository(session).get(invoice_id)

        if invoice is None:
            return ContractConfirmationResult(
                success=False, not_found=True, message=f"Invoice {invoice_id} not found"
            )
        return await self.confirm_booking(invoice_id, invoice.booking_token)

    async def cancel_payment(self, invoice_id: int, status: str) -> WebhookResult:
        async with self.session_factory() as session:
            cancelled = await InvoiceRepository(session).transition(
                invoice_id, InvoiceStatus.PENDING, InvoiceStatus.CANCELLED
            )
            await session.commit()

        if cancelled:
            logger.info(f"Invoice {invoice_id} cancelled (gateway status {status})")
            return WebhookResult(success=True, invoice_id=invoice_id, message="Invoice cancelled")

        return WebhookResult(
            success=True, invoice_id=invoice_id, message="Invoice no longer pending; not cancelled"
        )

    async def check_and_update(self, order_code: int) -> WebhookResult:
        """Poll the gateway for an order and apply its status, for missed webhooks."""
        info = await self.gateway.get_payment_link_info(order_code)
        status = info.status.upper()
        notification = WebhookNotification(
            order_code=order_code, paid=status == "PAID", status=status
        )
        return await self.apply(notification)
