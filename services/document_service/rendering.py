"""PDF rendering for rental contracts and payment receipts."""
import io
from datetime import datetime
from decimal import Decimal
from typing import Optional

from reportlab.lib.pagesizes import A4
from reportlab.pdfgen import canvas

from shared.models import Invoice, RentalContract, Renter

DATE_FORMAT = "%d/%m/%Y %H:%M"


def _money(amount: Optional[Decimal]) -> str:
    return f"{amount or 0:,.0f} VND"


def _when(value: Optional[datetime]) -> str:
    return value.strftime(DATE_FORMAT) if value else "-"


def _section(c: canvas.Canvas, y: float, title: str, lines: list) -> float:
    """Draw a titled block of lines and return the next free y position."""
    c.setFont("Helvetica-Bold", 12)
    c.drawString(40, y, title)
    c.setFont("Helvetica", 11)
    for line in lines:
        y -= 18
        c.drawString(40, y, line)
    return y - 30


def render_contract_pdf(
    contract: RentalContract,
    renter_name: str,
    staff_name: Optional[str] = None,
) -> bytes:
    """Return the rental contract as A4 PDF bytes."""
    buf = io.BytesIO()
    c = canvas.Canvas(buf, pagesize=A4)
    _, h = A4

    c.setFont("Helvetica-Bold", 18)
    c.drawString(40, h - 60, "EV Rental Contract")
    c.setFont("Helvetica", 11)
    c.drawString(40, h - 80, f"Contract No: {contract.id}")
    c.drawString(40, h - 96, f"Issued: {_when(contract.created_at)}")

    y = _section(c, h - 130, "Renter", [renter_name or "(Not provided)"])
    y = _section(c, y, "Rental", [
        f"Vehicle: #{contract.vehicle_id}" if contract.vehicle_id else "Vehicle: (to be assigned)",
        f"Station: #{contract.station_id}" if contract.station_id else "Station: -",
        f"From: {_when(contract.start_time)}",
        f"To:   {_when(contract.end_time)}",
        f"Total cost: {_money(contract.total_cost)}",
    ])
    y = _section(c, y, "Status", [contract.status])

    if staff_name:
        _section(c, y, "Handled by", [staff_name])

    c.setFont("Helvetica", 9)
    c.drawString(40, 56, "The renter agrees to return the vehicle at the end of the rental period")
    c.drawString(40, 42, "in the condition it was received.")
    c.drawString(40, 26, f"Generated: {datetime.utcnow().isoformat()}Z")

    c.showPage()
    c.save()
    return buf.getvalue()


def render_receipt_pdf(invoice: Invoice, renter: Optional[Renter], renter_name: str) -> bytes:
    """Return the payment receipt for an invoice as A4 PDF bytes."""
    buf = io.BytesIO()
    c = canvas.Canvas(buf, pagesize=A4)
    _, h = A4

    c.setFont("Helvetica-Bold", 18)
    c.drawString(40, h - 60, "Payment Receipt")
    c.setFont("Helvetica", 11)
    c.drawString(40, h - 80, f"Invoice No: {invoice.id}")
    if invoice.contract_id:
        c.drawString(40, h - 96, f"Contract No: {invoice.contract_id}")

    customer = [renter_name or "(Not provided)"]
    if renter is not None:
        customer.append(renter.email)
        if renter.phone_number:
            customer.append(renter.phone_number)
    y = _section(c, h - 130, "Customer", customer)

    _section(c, y, "Payment", [
        f"Amount due: {_money(invoice.amount_due)}",
        f"Amount paid: {_money(invoice.amount_paid)}",
        f"Paid at: {_when(invoice.paid_at)}",
        f"Gateway order: {invoice.order_code or '-'}",
        f"Status: {invoice.status}",
    ])

    c.setFont("Helvetica", 9)
    c.drawString(40, 40, "This receipt is generated automatically after successful payment.")
    c.drawString(40, 26, f"Generated: {datetime.utcnow().isoformat()}Z")

    c.showPage()
    c.save()
    return buf.getvalue()
