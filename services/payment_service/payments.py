"""Payment link creation and status lookups for invoices."""
import logging
import random
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import async_sessionmaker

from shared.booking_holds import BookingHoldStore
from shared.config import Settings
from shared.models import InvoiceStatus
from shared.repositories import ContractRepository, InvoiceRepository, PeopleRepository

from .payment_gateway import PaymentGatewayClient, PaymentLink, PaymentLinkInfo

logger = logging.getLogger(__name__)

ORDER_CODE_ATTEMPTS = 5


class PaymentRequestError(ValueError):
    pass


class PaymentNotFound(LookupError):
    pass


class PaymentLinkService:
    """Issues gateway payment links for pending invoices."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        gateway: PaymentGatewayClient,
        holds: BookingHoldStore,
        settings: Settings,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.holds = holds
        self.settings = settings

    async def create_payment(self, invoice_id: int, renter_id: int) -> PaymentLink:
        async with self.session_factory() as session:
            invoices = InvoiceRepository(session)
            invoice = await invoices.get(invoice_id)
            if invoice is None:
                raise PaymentNotFound(f"Invoice {invoice_id} not found")

            if invoice.status != InvoiceStatus.PENDING.value:
                raise PaymentRequestError(f"Invoice {invoice_id} is {invoice.status}; nothing to pay")

            renter = await PeopleRepository(session).get_renter(renter_id)
            if renter is None:
                raise PaymentNotFound(f"Renter {renter_id} not found")

            if invoice.booking_token:
                hold = await self.holds.get(invoice.booking_token)
                if hold is None:
                    raise PaymentRequestError("Booking hold expired; please book again")
                owner_id = hold.renter_id
            else:
                # Invoices raised against an existing contract
                if invoice.contract_id is None:
                    raise PaymentRequestError(f"Invoice {invoice_id} has no booking hold or contract")
                contract = await ContractRepository(session).get(invoice.contract_id)
                if contract is None:
                    raise PaymentRequestError(f"Contract {invoice.contract_id} for invoice {invoice_id} not found")
                owner_id = contract.renter_id

            if owner_id != renter_id:
                raise PaymentRequestError("Invoice does not belong to this renter")

            order_code = await self._new_order_code(invoices)
            await invoices.set_order_code(invoice_id, order_code)

            expired_at = datetime.utcnow() + timedelta(minutes=self.settings.payment_link_expiry_minutes)
            link = await self.gateway.create_payment_link(
                order_code=order_code,
                amount=int(invoice.amount_due),
                description=f"Invoice {invoice_id}",
                expired_at=expired_at,
                buyer_name=renter.full_name,
                buyer_email=renter.email,
                buyer_phone=renter.phone_number,
            )

            # Only keep the order code once the gateway has accepted it
            await session.commit()

        logger.info(f"Payment link for invoice {invoice_id} issued with order code {order_code}")
        return link

    async def _new_order_code(self, invoices: InvoiceRepository) -> int:
        for _ in range(ORDER_CODE_ATTEMPTS):
            order_code = random.randint(100000, 999999)
            if await invoices.get_by_order_code(order_code) is None:
                return order_code
        raise PaymentRequestError("Could not allocate a unique order code")

    async def get_status_by_order_code(self, order_code: int) -> PaymentLinkInfo:
        return await self.gateway.get_payment_link_info(order_code)

    async def get_status_by_invoice(self, invoice_id: int) -> PaymentLinkInfo:
        async with self.session_factory() as session:
            invoice = await InvoiceRepository(session).get(invoice_id)

        if invoice is None:
            raise PaymentNotFound(f"Invoice {invoice_id} not found")
        if invoice.order_code is None:
            raise PaymentNotFound(f"No payment link has been issued for invoice {invoice_id}")

        return await self.gateway.get_payment_link_info(invoice.order_code)
