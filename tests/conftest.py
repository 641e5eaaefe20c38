"""
Pytest configuration and fixtures.
"""
import hashlib
import hmac
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

import pytest

from shared.booking_holds import BookingHold
from shared.config import Settings
from shared.database import Database
from shared.models import Invoice, InvoiceStatus, Renter, Staff
from services.payment_service.payment_gateway import PaymentLink, PaymentLinkInfo, verify_webhook_signature
from services.payment_service.payout_gateway import PayoutResult

CHECKSUM_KEY = "test-checksum-key"


class FakeHoldStore:
    """In-memory stand-in for the Redis booking hold store."""

    def __init__(self):
        self.holds = {}
        self.removed = []

    async def get(self, booking_token):
        if not booking_token:
            return None
        return self.holds.get(booking_token)

    async def save(self, hold):
        self.holds[hold.booking_token] = hold

    async def remove(self, booking_token):
        self.holds.pop(booking_token, None)
        self.removed.append(booking_token)


class FakeAvailability:
    def __init__(self):
        self.released = []

    async def release_slot(self, hold):
        self.released.append(hold.booking_token)
        return True


class RecordingPublisher:
    """Records published envelopes; kinds listed in `fail_on` raise like a dead broker."""

    def __init__(self, fail_on=()):
        self.events = []
        self.fail_on = set(fail_on)

    async def _record(self, kind, event):
        if kind in self.fail_on:
            raise ConnectionError(f"broker unavailable ({kind})")
        self.events.append((kind, event))

    async def publish_booking_created(self, event):
        await self._record("booking_created", event)

    async def publish_contract_generation(self, event):
        await self._record("contract_generation", event)

    async def publish_receipt_generation(self, event):
        await self._record("receipt_generation", event)

    async def publish_pdf_generation(self, event):
        await self._record("pdf_generation", event)

    async def publish_accident_reported(self, event):
        await self._record("accident_reported", event)

    async def publish_email(self, event):
        await self._record("email", event)

    def of(self, kind):
        return [event for k, event in self.events if k == kind]


class FakePaymentGateway:
    """Real signature check, canned link status."""

    def __init__(self, checksum_key=CHECKSUM_KEY):
        self.checksum_key = checksum_key
        self.link_status = "PENDING"
        self.created = []

    def verify_webhook(self, raw_body, signature):
        return verify_webhook_signature(raw_body, signature, self.checksum_key)

    async def get_payment_link_info(self, order_code):
        return PaymentLinkInfo(order_code=order_code, amount=0, status=self.link_status)

    async def create_payment_link(self, **kwargs):
        self.created.append(kwargs)
        return PaymentLink(
            order_code=kwargs["order_code"],
            amount=kwargs["amount"],
            checkout_url=f"https://pay.example/{kwargs['order_code']}",
        )


class FakePayoutGateway:
    def __init__(self, result: Optional[PayoutResult] = None, error: Optional[Exception] = None):
        self.result = result or PayoutResult(
            success=True, transaction_id="po_123", status="APPROVED", message="Payout initiated successfully"
        )
        self.error = error
        self.calls = []

    async def create_payout(self, refund_id, bank_info, amount):
        self.calls.append((refund_id, bank_info, amount))
        if self.error:
            raise self.error
        return self.result


@pytest.fixture
def settings(tmp_path):
    return Settings(
        payment_checksum_key=CHECKSUM_KEY,
        payout_checksum_key="test-payout-key",
        payout_client_id="client",
        payout_api_key="api-key",
        document_storage_path=str(tmp_path / "documents"),
    )


@pytest.fixture
async def database(tmp_path):
    db = Database(f"sqlite+aiosqlite:///{tmp_path}/test.db")
    await db.create_tables()
    yield db
    await db.close()


@pytest.fixture
def holds():
    return FakeHoldStore()


@pytest.fixture
def availability():
    return FakeAvailability()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def publisher_factory():
    return RecordingPublisher


@pytest.fixture
def payment_gateway():
    return FakePaymentGateway()


@pytest.fixture
def add_rows(database):
    """Persist rows and return them with their ids populated."""

    async def _add(*rows):
        async with database.session_factory() as session:
            session.add_all(rows)
            await session.commit()
        return rows

    return _add


@pytest.fixture
def renter():
    return Renter(full_name="Nguyen Van An", email="an@example.com", phone_number="0901234567")


@pytest.fixture
def make_booking(add_rows, holds, renter):
    """Create a renter, a pending invoice and the booking hold it was issued for."""

    async def _make(amount=Decimal("500000"), order_code=123456, invoice_id=None, with_hold=True):
        token = uuid.uuid4().hex
        invoice = Invoice(
            id=invoice_id,
            amount_due=amount,
            status=InvoiceStatus.PENDING.value,
            order_code=order_code,
            booking_token=token,
            issued_at=datetime.utcnow(),
        )
        if renter.id is None:
            await add_rows(renter)
        await add_rows(invoice)

        start = datetime(2026, 11, 1, 9, 0)
        hold = BookingHold(
            booking_token=token,
            renter_id=renter.id,
            station_id=3,
            vehicle_id=17,
            start_time=start,
            end_time=start + timedelta(days=2),
            total_cost=amount,
            invoice_id=invoice.id,
            created_at=datetime.utcnow(),
            expires_at=datetime.utcnow() + timedelta(minutes=10),
        )
        if with_hold:
            await holds.save(hold)
        return invoice, hold

    return _make


@pytest.fixture
def paid_invoice(add_rows):
    """Create an invoice that has already been paid."""

    async def _make(amount_paid=Decimal("500000"), invoice_id=None, refund_amount=None):
        invoice = Invoice(
            id=invoice_id,
            amount_due=amount_paid,
            amount_paid=amount_paid,
            paid_at=datetime.utcnow(),
            status=InvoiceStatus.PAID.value,
            refund_amount=refund_amount,
            issued_at=datetime.utcnow(),
        )
        await add_rows(invoice)
        return invoice

    return _make


@pytest.fixture
def station_staff(add_rows):
    async def _make(station_id=3):
        return await add_rows(
            Staff(full_name="Tran Thi Binh", email="binh@example.com", station_id=station_id),
            Staff(full_name="Le Van Cuong", email=None, station_id=station_id),
        )

    return _make


@pytest.fixture
def sign_body():
    """Sign a webhook body the way the gateway does."""

    def _sign(body: bytes) -> str:
        return hmac.new(CHECKSUM_KEY.encode("utf-8"), body, hashlib.sha256).hexdigest()

    return _sign


@pytest.fixture
def payout_factory():
    return FakePayoutGateway
