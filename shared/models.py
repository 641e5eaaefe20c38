"""Database models for the rental payment pipeline."""
from datetime import datetime
from enum import Enum

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, Numeric, String, Text

from .database import Base


class InvoiceStatus(str, Enum):
    """Invoice status."""
    PENDING = "pending"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


class RentalStatus(str, Enum):
    """Rental contract status."""
    TO_BE_CONFIRMED = "to_be_confirmed"
    CONFIRMED = "confirmed"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class RefundStatus(str, Enum):
    """Refund status."""
    PENDING = "pending"
    APPROVED = "approved"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REJECTED = "rejected"


# A refund in any other state still blocks a new request on the same invoice
TERMINAL_REFUND_STATUSES = (
    RefundStatus.COMPLETED.value,
    RefundStatus.FAILED.value,
    RefundStatus.REJECTED.value,
)


class TransactionType(str, Enum):
    """Ledger entry type."""
    PAYMENT = "payment"
    REFUND = "refund"


class Renter(Base):
    """EV renter (owned by the account service, read here)."""

    __tablename__ = "renters"

    id = Column(Integer, primary_key=True, autoincrement=True)
    full_name = Column(String(200), nullable=False)
    email = Column(String(255), nullable=False)
    phone_number = Column(String(32), nullable=True)


class Staff(Base):
    """Station staff member (owned by the staff service, read here)."""

    __tablename__ = "staff"

    id = Column(Integer, primary_key=True, autoincrement=True)
    full_name = Column(String(200), nullable=False)
    email = Column(String(255), nullable=True)
    station_id = Column(Integer, nullable=True, index=True)


class RentalContract(Base):
    """Rental contract created once an invoice is paid."""

    __tablename__ = "rental_contracts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    renter_id = Column(Integer, ForeignKey("renters.id"), nullable=False, index=True)
    vehicle_id = Column(Integer, nullable=True)
    station_id = Column(Integer, nullable=True, index=True)
    staff_id = Column(Integer, ForeignKey("staff.id"), nullable=True)

    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    total_cost = Column(Numeric(14, 2), nullable=True)
    status = Column(String(30), default=RentalStatus.TO_BE_CONFIRMED.value, nullable=False, index=True)

    note = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class Invoice(Base):
    """Invoice issued for a booking hold or an existing contract."""

    __tablename__ = "invoices"

    id = Column(Integer, primary_key=True, autoincrement=True)
    contract_id = Column(Integer, ForeignKey("rental_contracts.id"), nullable=True, index=True)

    issued_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    amount_due = Column(Numeric(14, 2), nullable=False)
    amount_paid = Column(Numeric(14, 2), nullable=True)
    paid_at = Column(DateTime, nullable=True)
    status = Column(String(30), default=InvoiceStatus.PENDING.value, nullable=False, index=True)

    # Gateway order code and the booking hold the invoice was issued for
    order_code = Column(Integer, nullable=True, unique=True)
    booking_token = Column(String(64), nullable=True, index=True)

    refund_amount = Column(Numeric(14, 2), nullable=True)
    refunded_at = Column(DateTime, nullable=True)
    note = Column(Text, nullable=True)


class Refund(Base):
    """Refund of (part of) a paid invoice, paid out through the payout gateway."""

    __tablename__ = "refunds"

    id = Column(Integer, primary_key=True, autoincrement=True)
    invoice_id = Column(Integer, ForeignKey("invoices.id"), nullable=False)

    amount = Column(Numeric(14, 2), nullable=False)
    reason = Column(Text, nullable=True)
    status = Column(String(20), default=RefundStatus.PENDING.value, nullable=False, index=True)
    staff_id = Column(Integer, nullable=True)

    requested_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    processed_at = Column(DateTime, nullable=True)

    payout_transaction_id = Column(String(100), nullable=True)
    note = Column(Text, nullable=True)

    __table_args__ = (
        Index("ix_refunds_invoice_status", "invoice_id", "status"),
        # At most one refund per invoice outside the terminal states
        Index(
            "uq_refunds_open_invoice",
            "invoice_id",
            unique=True,
            postgresql_where=status.not_in(TERMINAL_REFUND_STATUSES),
            sqlite_where=status.not_in(TERMINAL_REFUND_STATUSES),
        ),
    )


class Transaction(Base):
    """Append-only ledger entry."""

    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    invoice_id = Column(Integer, ForeignKey("invoices.id"), nullable=False, index=True)
    type = Column(String(20), nullable=False)
    amount = Column(Numeric(14, 2), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    note = Column(Text, nullable=True)


class AccidentReport(Base):
    """Accident/issue reported on a vehicle (owned by the accident service, read here)."""

    __tablename__ = "accident_reports"

    id = Column(Integer, primary_key=True, autoincrement=True)
    vehicle_id = Column(Integer, nullable=False, index=True)
    contract_id = Column(Integer, nullable=True)
    staff_id = Column(Integer, nullable=True)
    vehicle_license_plate = Column(String(32), nullable=True)
    description = Column(Text, nullable=True)
    location = Column(String(255), nullable=True)
    image_url = Column(String(500), nullable=True)
    reported_at = Column(DateTime, default=datetime.utcnow, nullable=False)
