"""Document Service FastAPI application."""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import List, Optional

import httpx
from fastapi import FastAPI, HTTPException
from fastapi.responses import Response

from shared.config import Settings
from shared.database import Database
from shared.events import (
    ContractGenerationRequestedEvent,
    PdfGenerationRequestedEvent,
    ReceiptGenerationRequestedEvent,
)
from shared.mail import MailTransport
from shared.message_broker import BrokerConnection, DurableConsumer, MessageProducer
from shared.producers import EventPublisher
from shared.repositories import ContractRepository, PeopleRepository

from .pipelines import DocumentPipelines
from .storage import DocumentNotFound, DocumentStore

# Settings
settings = Settings(
    service_name="document-service",
    service_port=8006,
)

# Configure logging
logging.basicConfig(
    level=settings.log_level,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

database = Database(settings.database_url)
broker = BrokerConnection(settings.rabbitmq_url)
store = DocumentStore(settings.document_storage_path)

http_client: Optional[httpx.AsyncClient] = None
publisher: Optional[EventPublisher] = None
stop_event = asyncio.Event()
consumer_tasks: List[asyncio.Task] = []


def build_consumers(pipelines: DocumentPipelines) -> List[DurableConsumer]:
    return [
        DurableConsumer(
            broker,
            settings.contract_generation_queue,
            ContractGenerationRequestedEvent,
            pipelines.handle_contract_generation,
            prefetch_count=settings.consumer_prefetch_count,
            poll_interval=settings.consumer_poll_interval,
            name="Contract generation",
        ),
        DurableConsumer(
            broker,
            settings.receipt_generation_queue,
            ReceiptGenerationRequestedEvent,
            pipelines.handle_receipt_generation,
            prefetch_count=settings.consumer_prefetch_count,
            poll_interval=settings.consumer_poll_interval,
            name="Receipt generation",
        ),
        DurableConsumer(
            broker,
            settings.pdf_generation_queue,
            PdfGenerationRequestedEvent,
            pipelines.handle_pdf_generation,
            prefetch_count=settings.consumer_prefetch_count,
            poll_interval=settings.consumer_poll_interval,
            name="PDF generation",
        ),
    ]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager for the application."""
    global http_client, publisher

    # Startup
    logger.info("Starting Document Service...")

    await database.create_tables()
    await broker.connect()

    http_client = httpx.AsyncClient(timeout=settings.http_timeout_seconds)
    publisher = EventPublisher(MessageProducer(broker), settings)
    pipelines = DocumentPipelines(database.session_factory, store, MailTransport(settings, http_client))

    stop_event.clear()
    for consumer in build_consumers(pipelines):
        consumer_tasks.append(asyncio.create_task(consumer.run(stop_event)))

    logger.info("Document Service started successfully")

    yield

    # Shutdown
    logger.info("Shutting down Document Service...")
    stop_event.set()
    await asyncio.gather(*consumer_tasks, return_exceptions=True)
    consumer_tasks.clear()
    await http_client.aclose()
    await broker.disconnect()
    await database.close()


app = FastAPI(title="Document Service", lifespan=lifespan)


async def pdf_response(name: str) -> Response:
    try:
        content = await store.get(name)
    except DocumentNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    return Response(
        content=content,
        media_type="application/pdf",
        headers={"Content-Disposition": f'inline; filename="{name}"'},
    )


@app.get("/documents/contracts/{contract_id}")
async def get_contract_document(contract_id: int):
    return await pdf_response(store.contract_name(contract_id))


@app.get("/documents/receipts/{invoice_id}")
async def get_receipt_document(invoice_id: int):
    return await pdf_response(store.receipt_name(invoice_id))


@app.post("/documents/contracts/{contract_id}/regenerate", status_code=202)
async def regenerate_contract_document(contract_id: int):
    """Queue the contract document to be produced and emailed again."""
    async with database.session_factory() as session:
        contract = await ContractRepository(session).get(contract_id)
        if contract is None:
            raise HTTPException(status_code=404, detail="Contract not found")
        renter = await PeopleRepository(session).get_renter(contract.renter_id)

    if renter is None:
        raise HTTPException(status_code=404, detail="Renter not found")

    await publisher.publish_pdf_generation(
        PdfGenerationRequestedEvent(
            contract_id=contract_id,
            renter_email=renter.email,
            renter_name=renter.full_name,
        )
    )
    return {"status": "queued", "contractId": contract_id}


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "service": "document-service",
        "broker": broker.is_connected,
        "consumers": sum(1 for task in consumer_tasks if not task.done()),
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.service_port)
