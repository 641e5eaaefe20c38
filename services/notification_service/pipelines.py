"""Queue handlers for email delivery, accident alerts and booking notifications."""
import logging
from datetime import datetime

from sqlalchemy.ext.asyncio import async_sessionmaker

from shared.events import AccidentReportedEvent, BookingCreatedEvent, EmailRequestedEvent
from shared.mail import MailTransport
from shared.notifications import LiveNotificationChannel
from shared.producers import EventPublisher
from shared.repositories import AccidentRepository, PeopleRepository

logger = logging.getLogger(__name__)

ADMIN_GROUP = "admin"


def station_group(station_id: int) -> str:
    return f"station-{station_id}"


def user_group(renter_id: int) -> str:
    return f"user-{renter_id}"


class NotificationPipelines:
    """Side effects for the notification-facing queues."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        mail: MailTransport,
        channel: LiveNotificationChannel,
        publisher: EventPublisher,
    ):
        self.session_factory = session_factory
        self.mail = mail
        self.channel = channel
        self.publisher = publisher

    async def handle_email(self, event: EmailRequestedEvent):
        await self.mail.send(event.to_email, event.subject, event.body, is_html=event.is_html)
        logger.info(f"{event.message_type} email delivered to {event.to_email}")

    async def handle_accident(self, event: AccidentReportedEvent):
        async with self.session_factory() as session:
            report = await AccidentRepository(session).get(event.accident_id)

        if report is None:
            logger.warning(f"Accident {event.accident_id} not found; alert dropped")
            return

        plate = event.vehicle_license_plate or report.vehicle_license_plate or "Unknown Vehicle"
        location = event.location or report.location or "Unknown Location"

        await self.channel.send_to_group(ADMIN_GROUP, "ReceiveAccidentNotification", {
            "type": "AccidentReported",
            "accidentId": event.accident_id,
            "vehicleId": event.vehicle_id,
            "vehicleLicensePlate": plate,
            "contractId": event.contract_id,
            "location": location,
            "imageUrl": event.image_url or report.image_url,
            "reportedAt": event.reported_at or report.reported_at,
            "message": f"Issue #{event.accident_id} reported at {location} requires your attention!",
            "priority": "MEDIUM",
            "requiresImmediateAction": True,
        })
        logger.warning(f"Accident alert sent to admins for vehicle {event.vehicle_id}")

    async def handle_booking_created(self, event: BookingCreatedEvent):
        renter_name = event.renter_name or "a renter"
        station_name = event.station_name or f"station #{event.station_id}"
        booking = event.model_dump(by_alias=True, mode="json")

        await self.channel.send_to_group(station_group(event.station_id), "ReceiveBookingNotification", {
            "type": "NewBooking",
            "bookingId": event.booking_id,
            "renterName": event.renter_name or "Unknown Renter",
            "vehicleLicensePlate": event.vehicle_license_plate or "Unknown Vehicle",
            "stationId": event.station_id,
            "stationName": station_name,
            "startTime": event.start_time,
            "message": f"New booking at {station_name} by {renter_name}",
        })
        await self.channel.send_to_group(ADMIN_GROUP, "ReceiveBookingNotification", {
            "type": "NEW_BOOKING",
            "message": f"New booking created - Station: {station_name}",
            "booking": booking,
            "timestamp": datetime.utcnow(),
        })
        if event.renter_id > 0:
            await self.channel.send_to_group(user_group(event.renter_id), "ReceiveBookingConfirmation", {
                "type": "BookingConfirmed",
                "bookingId": event.booking_id,
                "message": f"Your booking at {station_name} has been created successfully!",
            })

        logger.info(f"Booking notification sent to station {event.station_id} for booking {event.booking_id}")

        async with self.session_factory() as session:
            staff_members = await PeopleRepository(session).get_station_staff(event.station_id)

        for staff in staff_members:
            if not staff.email:
                continue
            await self.publisher.publish_email(EmailRequestedEvent(
                to_email=staff.email,
                subject=f"New booking #{event.booking_id} at {station_name}",
                body=(
                    f"<p>Hello {staff.full_name},</p>"
                    f"<p>{renter_name} booked a vehicle at {station_name} "
                    f"from {event.start_time:%d/%m/%Y %H:%M} to {event.end_time:%d/%m/%Y %H:%M}.</p>"
                    f"<p>Total cost: {event.total_cost:,.0f} VND</p>"
                ),
                message_type="StaffNotification",
            ))
