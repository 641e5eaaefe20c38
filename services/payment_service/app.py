"""Payment Service FastAPI application."""
import logging
from contextlib import asynccontextmanager
from typing import List, Optional

import httpx
from fastapi import FastAPI, Header, HTTPException, Request
from redis import asyncio as aioredis

from shared.booking_holds import BookingHoldStore, VehicleAvailability
from shared.config import Settings
from shared.database import Database
from shared.message_broker import BrokerConnection, MessageProducer
from shared.models import RefundStatus
from shared.producers import EventPublisher

from .contract_orchestrator import BookingContractOrchestrator
from .payment_gateway import PaymentGatewayClient, PaymentGatewayError
from .payments import PaymentLinkService, PaymentNotFound, PaymentRequestError
from .payout_gateway import PayoutGatewayClient, PayoutGatewayError
from .refund_orchestrator import RefundOrchestrator, RefundResult
from .schemas import (
    CreatePaymentRequest,
    ProcessRefundRequest,
    RefundRequest,
    RefundResponse,
    RejectRefundRequest,
    RetryRefundRequest,
    api_body,
)
from .webhook_processor import InvalidWebhookSignature, MalformedWebhookPayload, PaymentWebhookProcessor

# Settings
settings = Settings(
    service_name="payment-service",
    service_port=8003,
)

# Configure logging
logging.basicConfig(
    level=settings.log_level,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Database and message broker
database = Database(settings.database_url)
broker = BrokerConnection(settings.rabbitmq_url)

redis_client: Optional[aioredis.Redis] = None
http_client: Optional[httpx.AsyncClient] = None
holds: Optional[BookingHoldStore] = None
payment_links: Optional[PaymentLinkService] = None
contract_orchestrator: Optional[BookingContractOrchestrator] = None
webhook_processor: Optional[PaymentWebhookProcessor] = None
refund_orchestrator: Optional[RefundOrchestrator] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager for the application."""
    global redis_client, http_client, holds, payment_links
    global contract_orchestrator, webhook_processor, refund_orchestrator

    # Startup
    logger.info("Starting Payment Service...")

    await database.create_tables()
    await broker.connect()

    redis_client = aioredis.from_url(settings.redis_url, decode_responses=True)
    http_client = httpx.AsyncClient(timeout=settings.http_timeout_seconds)

    holds = BookingHoldStore(redis_client, settings.booking_hold_prefix)
    gateway = PaymentGatewayClient(settings, http_client)
    publisher = EventPublisher(MessageProducer(broker), settings)

    contract_orchestrator = BookingContractOrchestrator(
        database.session_factory, holds, VehicleAvailability(redis_client), publisher
    )
    webhook_processor = PaymentWebhookProcessor(
        database.session_factory, gateway, contract_orchestrator, holds
    )
    payment_links = PaymentLinkService(database.session_factory, gateway, holds, settings)
    refund_orchestrator = RefundOrchestrator(
        database.session_factory, PayoutGatewayClient(settings, http_client)
    )

    logger.info("Payment Service started successfully")

    yield

    # Shutdown
    logger.info("Shutting down Payment Service...")
    await http_client.aclose()
    await redis_client.aclose()
    await broker.disconnect()
    await database.close()


app = FastAPI(title="Payment Service", lifespan=lifespan)


def refund_response(result: RefundResult) -> dict:
    """Map a refund operation result onto an HTTP response; failures still carry the refund status."""
    body = api_body(result)
    if result.not_found:
        raise HTTPException(status_code=404, detail=body)
    if not result.success:
        raise HTTPException(status_code=400, detail=body)
    return body


# Payment endpoints
@app.post("/payments/webhook")
async def payment_webhook(request: Request, x_payos_signature: Optional[str] = Header(None)):
    """Gateway payment notification."""
    raw_body = await request.body()
    try:
        result = await webhook_processor.handle(raw_body, x_payos_signature)
    except InvalidWebhookSignature:
        raise HTTPException(status_code=400, detail="Invalid webhook signature")
    except MalformedWebhookPayload as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Error processing payment webhook: {str(e)}", exc_info=True)
        raise HTTPException(status_code=500, detail="Webhook processing failed")

    return {"success": result.success, "message": result.message}


@app.post("/payments/create")
async def create_payment(request: CreatePaymentRequest):
    """Create a gateway payment link for a pending invoice."""
    try:
        link = await payment_links.create_payment(request.invoice_id, request.renter_id)
    except PaymentNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except PaymentRequestError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except PaymentGatewayError as e:
        logger.error(f"Payment link creation failed: {str(e)}")
        raise HTTPException(status_code=502, detail=str(e))

    return api_body(link)


@app.get("/payments/status/{order_code}")
async def get_payment_status(order_code: int):
    try:
        info = await payment_links.get_status_by_order_code(order_code)
    except PaymentGatewayError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return api_body(info)


@app.get("/payments/invoices/{invoice_id}/status")
async def get_invoice_payment_status(invoice_id: int):
    try:
        info = await payment_links.get_status_by_invoice(invoice_id)
    except PaymentNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except PaymentGatewayError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return api_body(info)


@app.post("/payments/check-and-update/{order_code}")
async def check_and_update_payment(order_code: int):
    """Reconcile an order against the gateway when its webhook never arrived."""
    try:
        result = await webhook_processor.check_and_update(order_code)
    except PaymentGatewayError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return api_body(result)


@app.post("/payments/invoices/{invoice_id}/confirm")
async def confirm_invoice_booking(invoice_id: int):
    """Create the contract for a paid invoice whose confirmation did not complete."""
    result = await webhook_processor.reconcile_invoice(invoice_id)
    if result.not_found:
        raise HTTPException(status_code=404, detail=result.message)
    if not result.success:
        raise HTTPException(status_code=400, detail=result.message)
    return api_body(result)


# Refund endpoints
@app.post("/refunds")
async def request_refund(request: RefundRequest):
    result = await refund_orchestrator.request_refund(
        request.invoice_id, request.amount, request.reason, request.staff_id, request.note
    )
    return refund_response(result)


@app.get("/refunds/pending", response_model=List[RefundResponse])
async def get_pending_refunds():
    refunds = await refund_orchestrator.get_pending_refunds()
    return [RefundResponse.model_validate(refund) for refund in refunds]


@app.get("/refunds/payout-balance")
async def get_payout_balance():
    try:
        balance = await refund_orchestrator.get_payout_balance()
    except PayoutGatewayError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return {"balance": balance}


@app.get("/refunds/{refund_id}", response_model=RefundResponse)
async def get_refund(refund_id: int):
    refund = await refund_orchestrator.get_refund(refund_id)
    if refund is None:
        raise HTTPException(status_code=404, detail="Refund not found")
    return RefundResponse.model_validate(refund)


@app.post("/refunds/{refund_id}/approve")
async def approve_refund(refund_id: int):
    return refund_response(await refund_orchestrator.approve_refund(refund_id))


@app.post("/refunds/{refund_id}/process")
async def process_refund(refund_id: int, request: ProcessRefundRequest):
    result = await refund_orchestrator.process_refund(refund_id, request.to_bank_info())
    if result.status == RefundStatus.FAILED:
        # The payout failure is recorded on the refund itself
        return api_body(result)
    return refund_response(result)


@app.post("/refunds/{refund_id}/reject")
async def reject_refund(refund_id: int, request: RejectRefundRequest):
    return refund_response(await refund_orchestrator.reject_refund(refund_id, request.reason))


@app.post("/refunds/{refund_id}/retry")
async def retry_refund(refund_id: int, request: Optional[RetryRefundRequest] = None):
    staff_id = request.staff_id if request else None
    return refund_response(await refund_orchestrator.retry_failed_refund(refund_id, staff_id))


@app.get("/refunds/{refund_id}/payout-status")
async def get_refund_payout_status(refund_id: int):
    try:
        info = await refund_orchestrator.get_payout_status(refund_id)
    except PayoutGatewayError as e:
        raise HTTPException(status_code=502, detail=str(e))
    if info is None:
        raise HTTPException(status_code=404, detail="No payout recorded for this refund")
    return api_body(info)


@app.get("/invoices/{invoice_id}/refundable")
async def get_refundable_amount(invoice_id: int):
    return {
        "invoiceId": invoice_id,
        "canRefund": await refund_orchestrator.can_refund_be_processed(invoice_id),
        "maxRefundAmount": await refund_orchestrator.calculate_max_refund_amount(invoice_id),
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "payment-service", "broker": broker.is_connected}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.service_port)
