from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, Dict, Optional

import httpx
import structlog
import uvicorn
from fastapi import APIRouter, Body, Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from gateway.config import Settings
from gateway.consumer import build_queue, start_workers
from gateway.database import create_engine, init_db
from gateway.errors import AuthenticationFailed, GatewayError
from gateway.idempotency import IdempotencyGuard
from gateway.log import configure_logging
from gateway.models import Merchant
from gateway.queues import JobQueue
from gateway.schemas import (
    CaptureRequest,
    JobStatusRead,
    OrderCreate,
    OrderRead,
    PublicOrderRead,
    RefundCreate,
    RefundRead,
    WebhookConfigRead,
    WebhookConfigUpdate,
    WebhookLogPage,
    WebhookRetryRead,
    parse_payment_create,
)
from gateway.seeder import seed_test_merchant
from gateway.services import GatewayService
from gateway.store import EntityStore

logger = structlog.get_logger().bind(component="api")

router = APIRouter(prefix="/api/v1")


def build_service(store: EntityStore, queue: JobQueue, settings: Settings) -> GatewayService:
    guard = IdempotencyGuard(store, ttl=timedelta(hours=settings.idempotency_ttl_hours))
    return GatewayService(store, queue, guard)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if getattr(app.state, "service", None) is not None:
        # Components were injected by the caller, who owns their lifecycle
        yield
        return

    settings: Settings = app.state.settings
    configure_logging(settings.log_level)
    engine = create_engine(settings.database_url)
    await init_db(engine)
    store = EntityStore(engine)
    await seed_test_merchant(store, settings)
    queue = build_queue(settings, store)
    await queue.connect()
    http = httpx.AsyncClient()
    if settings.embedded_workers:
        await start_workers(store, queue, http, settings)

    app.state.service = build_service(store, queue, settings)
    logger.info("api_started", embedded_workers=settings.embedded_workers)
    try:
        yield
    finally:
        await queue.close()
        await http.aclose()
        await store.close()
        app.state.service = None
        logger.info("api_stopped")


def get_service(request: Request) -> GatewayService:
    return request.app.state.service


async def current_merchant(
    request: Request,
    x_api_key: Optional[str] = Header(None),
    x_api_secret: Optional[str] = Header(None),
) -> Merchant:
    if not x_api_key or not x_api_secret:
        raise AuthenticationFailed("Invalid API credentials")
    merchant = await get_service(request).store.authenticate_merchant(x_api_key, x_api_secret)
    if merchant is None:
        raise AuthenticationFailed("Invalid API credentials")
    return merchant


# Orders

@router.post("/orders", response_model=OrderRead, status_code=201)
async def create_order(
    order_data: OrderCreate,
    merchant: Merchant = Depends(current_merchant),
    service: GatewayService = Depends(get_service),
):
    return await service.create_order(merchant, order_data)


@router.get("/orders/{order_id}", response_model=OrderRead)
async def get_order(
    order_id: str,
    merchant: Merchant = Depends(current_merchant),
    service: GatewayService = Depends(get_service),
):
    return await service.get_order(merchant, order_id)


@router.get("/orders/{order_id}/public", response_model=PublicOrderRead)
async def get_public_order(order_id: str, service: GatewayService = Depends(get_service)):
    return await service.get_public_order(order_id)


# Payments

@router.post("/payments", status_code=201)
async def create_payment(
    body: Dict[str, Any] = Body(...),
    idempotency_key: Optional[str] = Header(None),
    merchant: Merchant = Depends(current_merchant),
    service: GatewayService = Depends(get_service),
):
    payment = await service.create_payment(merchant, body, idempotency_key)
    return JSONResponse(status_code=201, content=payment)


@router.post("/payments/public", status_code=201)
async def create_public_payment(body: Dict[str, Any] = Body(...), service: GatewayService = Depends(get_service)):
    payment = await service.create_public_payment(parse_payment_create(body))
    return JSONResponse(status_code=201, content=payment)


@router.get("/payments")
async def list_payments(
    limit: int = Query(50, ge=1, le=500),
    merchant: Merchant = Depends(current_merchant),
    service: GatewayService = Depends(get_service),
):
    return {"data": await service.list_payments(merchant, limit)}


@router.get("/payments/{payment_id}/public")
async def get_public_payment(payment_id: str, service: GatewayService = Depends(get_service)):
    return await service.get_public_payment(payment_id)


@router.get("/payments/{payment_id}")
async def get_payment(
    payment_id: str,
    merchant: Merchant = Depends(current_merchant),
    service: GatewayService = Depends(get_service),
):
    return await service.get_payment(merchant, payment_id)


@router.post("/payments/{payment_id}/capture")
async def capture_payment(
    payment_id: str,
    capture: Optional[CaptureRequest] = Body(None),
    merchant: Merchant = Depends(current_merchant),
    service: GatewayService = Depends(get_service),
):
    amount = capture.amount if capture else None
    return await service.capture_payment(merchant, payment_id, amount)


# Refunds

@router.post("/payments/{payment_id}/refunds", response_model=RefundRead, status_code=201)
async def create_refund(
    payment_id: str,
    refund_data: RefundCreate,
    merchant: Merchant = Depends(current_merchant),
    service: GatewayService = Depends(get_service),
):
    return await service.create_refund(merchant, payment_id, refund_data)


@router.get("/refunds/{refund_id}", response_model=RefundRead)
async def get_refund(
    refund_id: str,
    merchant: Merchant = Depends(current_merchant),
    service: GatewayService = Depends(get_service),
):
    return await service.get_refund(merchant, refund_id)


# Webhooks

@router.get("/webhooks", response_model=WebhookLogPage)
async def list_webhooks(
    limit: int = Query(10, ge=1, le=100),
    offset: int = Query(0, ge=0),
    merchant: Merchant = Depends(current_merchant),
    service: GatewayService = Depends(get_service),
):
    return await service.list_webhook_logs(merchant, limit, offset)


@router.post("/webhooks/{log_id}/retry", response_model=WebhookRetryRead)
async def retry_webhook(
    log_id: str,
    merchant: Merchant = Depends(current_merchant),
    service: GatewayService = Depends(get_service),
):
    log = await service.retry_webhook(merchant, log_id)
    return WebhookRetryRead(id=log.id, status=log.status)


@router.get("/merchant/webhook", response_model=WebhookConfigRead)
async def get_webhook_config(
    merchant: Merchant = Depends(current_merchant),
    service: GatewayService = Depends(get_service),
):
    return await service.get_webhook_config(merchant)


@router.post("/merchant/webhook", response_model=WebhookConfigRead, response_model_exclude={"webhook_secret"})
async def set_webhook_config(
    config: WebhookConfigUpdate,
    merchant: Merchant = Depends(current_merchant),
    service: GatewayService = Depends(get_service),
):
    return await service.set_webhook_url(merchant, config.webhook_url)


@router.post("/merchant/webhook/regenerate", response_model=WebhookConfigRead, response_model_exclude={"webhook_url"})
async def regenerate_webhook_secret(
    merchant: Merchant = Depends(current_merchant),
    service: GatewayService = Depends(get_service),
):
    return await service.regenerate_webhook_secret(merchant)


# Test helpers

@router.get("/test/merchant")
async def test_merchant(request: Request, service: GatewayService = Depends(get_service)):
    settings: Settings = request.app.state.settings
    merchant = await service.store.get_merchant_by_email(settings.test_merchant_email)
    if merchant is None:
        return JSONResponse(status_code=404, content={"seeded": False})
    return {"id": merchant.id, "email": merchant.email, "api_key": merchant.api_key, "seeded": True}


@router.get("/test/jobs/status", response_model=JobStatusRead)
async def jobs_status(service: GatewayService = Depends(get_service)):
    return await service.job_status()


async def handle_gateway_error(request: Request, exc: GatewayError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def handle_request_validation_error(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    description = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
    return JSONResponse(
        status_code=400,
        content={"error": {"code": "BAD_REQUEST_ERROR", "description": description}},
    )


async def handle_unexpected_error(request: Request, exc: Exception):
    logger.exception("unhandled_error", path=request.url.path)
    return JSONResponse(
        status_code=500,
        content={"error": {"code": "INTERNAL_ERROR", "description": "Internal server error"}},
    )


def create_app(settings: Optional[Settings] = None, service: Optional[GatewayService] = None) -> FastAPI:
    app = FastAPI(title="Payment Gateway", lifespan=lifespan)
    app.state.settings = settings or Settings.from_env()
    app.state.service = service
    app.include_router(router)
    app.add_exception_handler(GatewayError, handle_gateway_error)
    app.add_exception_handler(RequestValidationError, handle_request_validation_error)
    app.add_exception_handler(Exception, handle_unexpected_error)
    return app


app = create_app()

if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
