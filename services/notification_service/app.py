"""Notification Service FastAPI application."""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import List, Optional

import httpx
from aio_pika.exceptions import ChannelClosed
from fastapi import FastAPI, HTTPException
from redis import asyncio as aioredis

from shared.config import Settings
from shared.database import Database
from shared.events import AccidentReportedEvent, BookingCreatedEvent, EmailRequestedEvent
from shared.mail import MailTransport
from shared.message_broker import BrokerConnection, DeadLetterQueue, DurableConsumer, MessageProducer
from shared.notifications import LiveNotificationChannel
from shared.producers import EventPublisher
from shared.repositories import AccidentRepository

from .pipelines import NotificationPipelines

# Settings
settings = Settings(
    service_name="notification-service",
    service_port=8005,
)

# Configure logging
logging.basicConfig(
    level=settings.log_level,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

database = Database(settings.database_url)
broker = BrokerConnection(settings.rabbitmq_url)

redis_client: Optional[aioredis.Redis] = None
http_client: Optional[httpx.AsyncClient] = None
publisher: Optional[EventPublisher] = None
stop_event = asyncio.Event()
consumer_tasks: List[asyncio.Task] = []

WORK_QUEUES = (
    settings.notification_queue,
    settings.contract_generation_queue,
    settings.receipt_generation_queue,
    settings.pdf_generation_queue,
    settings.accident_queue,
    settings.email_queue,
)


def build_consumers(pipelines: NotificationPipelines) -> List[DurableConsumer]:
    return [
        DurableConsumer(
            broker,
            settings.email_queue,
            EmailRequestedEvent,
            pipelines.handle_email,
            prefetch_count=settings.consumer_prefetch_count,
            poll_interval=settings.consumer_poll_interval,
            name="Email",
        ),
        DurableConsumer(
            broker,
            settings.accident_queue,
            AccidentReportedEvent,
            pipelines.handle_accident,
            prefetch_count=settings.accident_prefetch_count,
            poll_interval=settings.consumer_poll_interval,
            name="Accident alert",
        ),
        DurableConsumer(
            broker,
            settings.notification_queue,
            BookingCreatedEvent,
            pipelines.handle_booking_created,
            prefetch_count=settings.consumer_prefetch_count,
            poll_interval=settings.consumer_poll_interval,
            name="Booking notification",
        ),
    ]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager for the application."""
    global redis_client, http_client, publisher

    # Startup
    logger.info("Starting Notification Service...")

    await database.create_tables()
    await broker.connect()

    redis_client = aioredis.from_url(settings.redis_url, decode_responses=True)
    http_client = httpx.AsyncClient(timeout=settings.http_timeout_seconds)
    publisher = EventPublisher(MessageProducer(broker), settings)

    pipelines = NotificationPipelines(
        database.session_factory,
        MailTransport(settings, http_client),
        LiveNotificationChannel(redis_client, settings.notification_channel_prefix),
        publisher,
    )

    stop_event.clear()
    for consumer in build_consumers(pipelines):
        consumer_tasks.append(asyncio.create_task(consumer.run(stop_event)))

    logger.info("Notification Service started successfully")

    yield

    # Shutdown
    logger.info("Shutting down Notification Service...")
    stop_event.set()
    await asyncio.gather(*consumer_tasks, return_exceptions=True)
    consumer_tasks.clear()
    await http_client.aclose()
    await redis_client.aclose()
    await broker.disconnect()
    await database.close()


app = FastAPI(title="Notification Service", lifespan=lifespan)


@app.post("/accidents/{accident_id}/alert", status_code=202)
async def raise_accident_alert(accident_id: int):
    """Queue an alert for a reported accident."""
    async with database.session_factory() as session:
        report = await AccidentRepository(session).get(accident_id)

    if report is None:
        raise HTTPException(status_code=404, detail="Accident report not found")

    await publisher.publish_accident_reported(
        AccidentReportedEvent(
            accident_id=report.id,
            vehicle_id=report.vehicle_id,
            contract_id=report.contract_id,
            staff_id=report.staff_id,
            location=report.location,
            image_url=report.image_url,
            description=report.description,
            vehicle_license_plate=report.vehicle_license_plate,
            reported_at=report.reported_at,
        )
    )
    return {"status": "queued", "accidentId": accident_id}


def dead_letter_queue(queue_name: str) -> DeadLetterQueue:
    if queue_name not in WORK_QUEUES:
        raise HTTPException(status_code=404, detail=f"Unknown queue {queue_name}")
    return DeadLetterQueue(broker, queue_name)


@app.get("/dead-letters/{queue_name}")
async def list_dead_letters(queue_name: str, limit: int = 50):
    """Inspect dead-lettered messages of a work queue without removing them."""
    dlq = dead_letter_queue(queue_name)
    try:
        messages = await dlq.peek(limit)
    except ChannelClosed:
        raise HTTPException(status_code=404, detail=f"{dlq.dead_letter_name} has not been declared")
    return {"queue": dlq.dead_letter_name, "count": len(messages), "messages": messages}


@app.post("/dead-letters/{queue_name}/replay")
async def replay_dead_letters(queue_name: str, limit: int = 50):
    """Move dead-lettered messages back onto their work queue."""
    dlq = dead_letter_queue(queue_name)
    try:
        replayed = await dlq.replay(limit)
    except ChannelClosed:
        raise HTTPException(status_code=404, detail=f"{dlq.dead_letter_name} has not been declared")
    logger.info(f"Replayed {replayed} dead letters from {dlq.dead_letter_name}")
    return {"queue": queue_name, "replayed": replayed}


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "service": "notification-service",
        "broker": broker.is_connected,
        "consumers": sum(1 for task in consumer_tasks if not task.done()),
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.service_port)
