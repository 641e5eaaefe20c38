"""Event envelope definitions for the post-payment message pipeline.

Envelopes are flat JSON objects with camelCase field names. Each carries its
event type and a schema version so producers and consumers can be deployed
independently; a consumer rejects envelopes newer than it understands.
"""
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, ClassVar, Dict, Optional, Type

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel


class EventType(str, Enum):
    """Event types carried on the rental queues."""

    BOOKING_CREATED = "booking.created"
    CONTRACT_GENERATION_REQUESTED = "contract.generation.requested"
    RECEIPT_GENERATION_REQUESTED = "receipt.generation.requested"
    PDF_GENERATION_REQUESTED = "pdf.generation.requested"
    ACCIDENT_REPORTED = "accident.reported"
    EMAIL_REQUESTED = "email.requested"


class UnsupportedEnvelopeVersion(ValueError):
    """Raised when an envelope was written by a newer producer than this consumer."""


class BaseEvent(BaseModel):
    """Base envelope with the fields every message carries."""

    SCHEMA_VERSION: ClassVar[int] = 1

    event_type: EventType
    version: int = Field(default=1)

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        frozen = True

    def to_json(self) -> bytes:
        """Serialize to the wire format."""
        return self.model_dump_json(by_alias=True).encode()

    @classmethod
    def from_json(cls, body: bytes):
        """Deserialize from the wire format, refusing newer schema versions."""
        event = cls.model_validate_json(body)
        if event.version > cls.SCHEMA_VERSION:
            raise UnsupportedEnvelopeVersion(
                f"{cls.__name__} version {event.version} is newer than "
                f"supported version {cls.SCHEMA_VERSION}"
            )
        return event


class BookingCreatedEvent(BaseEvent):
    """Emitted when a paid booking has been turned into a contract."""
    event_type: EventType = EventType.BOOKING_CREATED
    booking_id: int
    renter_id: int
    renter_email: Optional[str] = None
    renter_name: Optional[str] = None
    vehicle_id: Optional[int] = None
    vehicle_license_plate: Optional[str] = None
    station_id: int
    station_name: Optional[str] = None
    start_time: datetime
    end_time: datetime
    total_cost: Decimal


class ContractGenerationRequestedEvent(BaseEvent):
    """Request to render, store and email a rental contract."""
    event_type: EventType = EventType.CONTRACT_GENERATION_REQUESTED
    contract_id: int
    renter_email: str
    renter_name: str
    staff_name: Optional[str] = None


class ReceiptGenerationRequestedEvent(BaseEvent):
    """Request to render, store and email a payment receipt."""
    event_type: EventType = EventType.RECEIPT_GENERATION_REQUESTED
    invoice_id: int
    contract_id: int
    renter_id: Optional[int] = None
    renter_email: str
    renter_name: str


class PdfGenerationRequestedEvent(BaseEvent):
    """Legacy contract document request (no staff name)."""
    event_type: EventType = EventType.PDF_GENERATION_REQUESTED
    contract_id: int
    renter_email: str
    renter_name: str


class AccidentReportedEvent(BaseEvent):
    """Emitted when an accident or issue is reported on a vehicle."""
    event_type: EventType = EventType.ACCIDENT_REPORTED
    accident_id: int
    vehicle_id: int
    contract_id: Optional[int] = None
    staff_id: Optional[int] = None
    location: Optional[str] = None
    image_url: Optional[str] = None
    description: Optional[str] = None
    vehicle_license_plate: Optional[str] = None
    reported_at: Optional[datetime] = None


class EmailRequestedEvent(BaseEvent):
    """Outbound email request."""
    event_type: EventType = EventType.EMAIL_REQUESTED
    to_email: str
    subject: str
    body: str
    is_html: bool = True
    message_type: str = "General"


# Event Registry for deserialization
EVENT_REGISTRY: Dict[EventType, Type[BaseEvent]] = {
    EventType.BOOKING_CREATED: BookingCreatedEvent,
    EventType.CONTRACT_GENERATION_REQUESTED: ContractGenerationRequestedEvent,
    EventType.RECEIPT_GENERATION_REQUESTED: ReceiptGenerationRequestedEvent,
    EventType.PDF_GENERATION_REQUESTED: PdfGenerationRequestedEvent,
    EventType.ACCIDENT_REPORTED: AccidentReportedEvent,
    EventType.EMAIL_REQUESTED: EmailRequestedEvent,
}


def deserialize_event(event_data: Dict[str, Any]) -> BaseEvent:
    """Deserialize an envelope of any registered type from a dictionary."""
    event_type = EventType(event_data.get("eventType") or event_data["event_type"])
    event_class = EVENT_REGISTRY[event_type]
    return event_class.model_validate(event_data)
