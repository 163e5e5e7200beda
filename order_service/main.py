"""
main.py — FastAPI Entry Point for the Order Service

This module provides the REST API of the food ordering backend.
It translates HTTP requests into calls on the payment flow coordinator and maps the
service's error kinds to status codes in one place.

Responsibilities:
    • Accept new orders (manual transfer or Paystack checkout, per deployment)
    • Receive and authenticate Paystack webhooks
    • Staff endpoints: payment verification, status updates, archiving (x-api-key)
    • Serve the menu (products, proteins) and let staff add products
    • Start the background notification worker
    • Provide system health information
"""

import hmac
import threading
from functools import lru_cache
from typing import List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from . import config
from .assembler import OrderAssembler
from .catalog import CatalogResolver
from .clients import PaystackClient
from .config import PaymentFlow
from .errors import ErrorKind, OrderServiceError, Unauthorized
from .logging_config import get_logger, setup_logging
from .models import (ArchiveRequest, ManualOrderPlaced, Menu, NewOrderRequest, NewProductRequest,
                     Order, Product, Protein, UpdateOrderStatusRequest, VerifyPaymentRequest)
from .notifications import NotificationDispatcher, start_notification_worker
from .store import CatalogReader, OrderStore, create_session_factory
from .webhooks import SIGNATURE_HEADER, WebhookIngestionGuard
from .workflow import PaymentFlowCoordinator

# Initialization
# Configure logging and initialize FastAPI app
setup_logging()
log = get_logger(__name__)
app = FastAPI(title="Atmos Food Order Service")


# Service wiring (one instance per process, overridable in tests)
@lru_cache
def get_session_factory():
    return create_session_factory(config.DATABASE_URL)


@lru_cache
def get_catalog_reader() -> CatalogReader:
    return CatalogReader(get_session_factory())


@lru_cache
def get_coordinator() -> PaymentFlowCoordinator:
    gateway = PaystackClient() if config.PAYMENT_FLOW == PaymentFlow.GATEWAY else None
    return PaymentFlowCoordinator(
        store=OrderStore(get_session_factory()),
        assembler=OrderAssembler(CatalogResolver(get_catalog_reader())),
        notifier=NotificationDispatcher(),
        gateway=gateway,
        flow=config.PAYMENT_FLOW,
    )


def get_webhook_guard(coordinator: PaymentFlowCoordinator = Depends(get_coordinator)) -> WebhookIngestionGuard:
    return WebhookIngestionGuard(coordinator, secret_key=config.PAYSTACK_SECRET_KEY)


def require_admin(x_api_key: Optional[str] = Header(None)):
    """Protects staff routes with the shared ADMIN_API_KEY."""
    if not config.ADMIN_API_KEY:
        log.error("ADMIN_API_KEY is not set. Staff routes are disabled.")
        raise HTTPException(status_code=500, detail="Internal server error: Security not configured.")
    if not hmac.compare_digest((x_api_key or "").encode(), config.ADMIN_API_KEY.encode()):
        raise Unauthorized("Unauthorized: Invalid or missing API key.")


# Error mapping
@app.exception_handler(OrderServiceError)
async def order_service_error_handler(request: Request, exc: OrderServiceError):
    content = {"success": False, "error": exc.kind.value, "message": exc.message}
    if exc.detail is not None:
        content["errors"] = jsonable_encoder(exc.detail)
    return JSONResponse(status_code=exc.status_code, content=content)


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={
        "success": False,
        "error": ErrorKind.VALIDATION_FAILED.value,
        "message": "Validation failed",
        # the rejected input is not echoed back, it may not even be valid JSON (inf, nan)
        "errors": jsonable_encoder([{k: v for k, v in err.items() if k != "input"} for err in exc.errors()]),
    })


# Startup Event: Launch Notification Worker
@app.on_event("startup")
def on_startup():
    """
    Starts the background thread delivering queued Telegram notifications.

    The thread runs as a daemon and stops automatically when the app terminates.
    Without a bot token notifications are only queued.
    """
    log.info(f"Order service starting (payment flow: {config.PAYMENT_FLOW.value})...")
    if not config.TELEGRAM_BOT_TOKEN:
        log.warning("TELEGRAM_BOT_TOKEN not set. Notification worker not started.")
        return
    worker_thread = threading.Thread(target=start_notification_worker, daemon=True)
    worker_thread.start()
    log.info("Notification worker thread started.")


# Public endpoints
@app.post("/api/orders")
def create_order(order: NewOrderRequest,
                 coordinator: PaymentFlowCoordinator = Depends(get_coordinator)):
    """
    Places a new order.

    Manual flow: the order is stored and bank transfer instructions are returned.
    Gateway flow: only a Paystack checkout URL is returned; the order is stored once
    the payment is confirmed by webhook.
    """
    log.info(f"New order received ({order.deliveryMethod.value}, {len(order.items)} item(s)).")
    result = coordinator.place_order(order)

    if isinstance(result, ManualOrderPlaced):
        return {
            "success": True,
            "orderId": result.order.id,
            "orderReference": result.order.orderReference,
            "totalAmount": result.order.totalAmount,
            "paymentInstructions": result.paymentInstructions,
        }
    return {
        "success": True,
        "orderReference": result.orderReference,
        "authorizationUrl": result.authorizationUrl,
        "reference": result.reference,
    }


@app.post("/api/orders/webhook")
async def paystack_webhook(request: Request, guard: WebhookIngestionGuard = Depends(get_webhook_guard)):
    """Receives Paystack events. The raw body is needed for the signature check."""
    body = await request.body()
    return await run_in_threadpool(guard.handle, body, request.headers.get(SIGNATURE_HEADER))


@app.get("/api/orders/{order_id}", response_model=Order)
def get_order(order_id: str, coordinator: PaymentFlowCoordinator = Depends(get_coordinator)):
    return coordinator.get_order(order_id)


# Staff endpoints
@app.get("/api/orders", response_model=List[Order], dependencies=[Depends(require_admin)])
def list_orders(includeArchived: bool = False,
                limit: Optional[int] = Query(None, ge=1, le=500),
                coordinator: PaymentFlowCoordinator = Depends(get_coordinator)):
    return coordinator.list_orders(include_archived=includeArchived, limit=limit)


@app.post("/api/orders/verify-payment", dependencies=[Depends(require_admin)])
def verify_payment(payload: VerifyPaymentRequest,
                   coordinator: PaymentFlowCoordinator = Depends(get_coordinator)):
    order = coordinator.verify_payment(payload.orderId, payload.receiptImage)
    return {"success": True, "message": "Payment verified successfully", "order": order}


@app.patch("/api/orders/{order_id}/status", response_model=Order, dependencies=[Depends(require_admin)])
def update_order_status(order_id: str, payload: UpdateOrderStatusRequest,
                        coordinator: PaymentFlowCoordinator = Depends(get_coordinator)):
    return coordinator.update_order_status(order_id, payload.status)


@app.patch("/api/orders/{order_id}/archive", response_model=Order, dependencies=[Depends(require_admin)])
def archive_order(order_id: str, payload: ArchiveRequest,
                  coordinator: PaymentFlowCoordinator = Depends(get_coordinator)):
    return coordinator.set_archived(order_id, payload.isArchived)


@app.post("/api/orders/archive", dependencies=[Depends(require_admin)])
def archive_active_orders(coordinator: PaymentFlowCoordinator = Depends(get_coordinator)):
    count = coordinator.archive_active_orders()
    return {"success": True, "archived": count}


# Catalog endpoints
@app.get("/api/products", response_model=List[Product])
def list_products(catalog: CatalogReader = Depends(get_catalog_reader)):
    """Available products with their protein add-ons."""
    return catalog.list_products()


@app.get("/api/products/proteins", response_model=List[Protein])
def list_proteins(catalog: CatalogReader = Depends(get_catalog_reader)):
    return catalog.list_proteins()


@app.get("/api/products/menu", response_model=Menu)
def get_menu(catalog: CatalogReader = Depends(get_catalog_reader)):
    """Products and proteins in one response, as the storefront renders them."""
    return Menu(products=catalog.list_products(), proteins=catalog.list_proteins())


@app.post("/api/products", response_model=Product, status_code=201, dependencies=[Depends(require_admin)])
def create_product(payload: NewProductRequest, catalog: CatalogReader = Depends(get_catalog_reader)):
    return catalog.add_product(payload)


# Health Check Endpoint
@app.get("/health")
def health_check():
    """
    Simple health check endpoint for monitoring systems and container orchestrators.

    Returns:
        dict: A basic JSON object indicating service availability.
    """
    return {"status": "ok", "paymentFlow": config.PAYMENT_FLOW.value}
