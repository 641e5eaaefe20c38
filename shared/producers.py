"""Typed producers: one method per envelope, each bound to its configured queue."""
import logging

from .config import Settings
from .events import (
    AccidentReportedEvent,
    BookingCreatedEvent,
    ContractGenerationRequestedEvent,
    EmailRequestedEvent,
    PdfGenerationRequestedEvent,
    ReceiptGenerationRequestedEvent,
)
from .message_broker import MessageProducer

logger = logging.getLogger(__name__)


class EventPublisher:
    """Publishes rental pipeline envelopes to their queues."""

    def __init__(self, producer: MessageProducer, settings: Settings):
        self.producer = producer
        self.settings = settings

    async def publish_booking_created(self, event: BookingCreatedEvent):
        await self.producer.publish(event, self.settings.notification_queue)
        logger.info(f"BookingCreated event published for booking {event.booking_id}")

    async def publish_contract_generation(self, event: ContractGenerationRequestedEvent):
        await self.producer.publish(event, self.settings.contract_generation_queue)
        logger.info(f"Contract generation requested for contract {event.contract_id}")

    async def publish_receipt_generation(self, event: ReceiptGenerationRequestedEvent):
        await self.producer.publish(event, self.settings.receipt_generation_queue)
        logger.info(
            f"Receipt generation requested for invoice {event.invoice_id} "
            f"(contract {event.contract_id})"
        )

    async def publish_pdf_generation(self, event: PdfGenerationRequestedEvent):
        await self.producer.publish(event, self.settings.pdf_generation_queue)
        logger.info(f"PDF generation requested for contract {event.contract_id}")

    async def publish_accident_reported(self, event: AccidentReportedEvent):
        await self.producer.publish(event, self.settings.accident_queue)
        logger.info(f"AccidentReported event published for accident {event.accident_id}")

    async def publish_email(self, event: EmailRequestedEvent):
        await self.producer.publish(event, self.settings.email_queue)
        logger.info(f"{event.message_type} email queued for {event.to_email}")
