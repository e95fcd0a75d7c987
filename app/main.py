"""
FastAPI Application Entry Point

Restaurant Checkout Service - hosted checkout and payment reconciliation.
Supports the mock gateway (development) and the real gateway (staging,
production).

Endpoints:
    - POST /checkout: Create (or reuse) the checkout session for an order
    - GET /checkout/{session_id}/status: Live gateway status of a session
    - POST /webhook: Signed gateway payment notifications
    - POST /webhook/simulation: Simulated gateway event (development only)
    - GET /orders/{id}/status: Order status for client polling
    - POST /orders/{id}/verify-payment: Client-triggered gateway check
    - POST /orders, GET /orders/{id}: Order creation and lookup
    - POST /orders/{id}/status, POST /orders/{id}/cancel: Restaurant actions
    - GET /health: System health check
"""

import asyncio
import sys
import logging
from datetime import datetime
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Depends, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
import redis.asyncio as aioredis

# Windows-specific event loop policy
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

from app.core.config import get_settings, setup_logging
from app.core.exceptions import (
    CheckoutError,
    ConfigurationError,
    NOT_CONFIRMED_MESSAGE,
    PAYMENT_FAILED_MESSAGE,
)
from app.database import get_db, init_db, engine
from app.models import Order, OrderStatus
from app.schemas import (
    CheckoutRequest,
    CheckoutResponse,
    CheckoutStatusResponse,
    ErrorResponse,
    HealthResponse,
    OrderCreate,
    OrderResponse,
    OrderStatusResponse,
    SimulatedWebhookRequest,
    StatusUpdateRequest,
    VerifyPaymentResponse,
    WebhookResponse,
)
from app.services.checkout import CheckoutOrchestrator
from app.services.locks import BaseKeyedLock, get_checkout_lock
from app.services.orders import create_order, get_order, get_order_by_session
from app.services.payment import BaseGatewayClient, MockGatewayClient, get_gateway_client
from app.services.reconciler import StatusReconciler
from app.services.state_machine import StatusSource
from app.services.webhook import WebhookEvent, WebhookOutcome, WebhookReceiver

# Initialize configuration and logging
settings = get_settings()
setup_logging()
logger = logging.getLogger(__name__)


# =============================================================================
# APPLICATION LIFECYCLE
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application startup and shutdown events.

    Missing secrets abort startup.
    """
    logger.info("=" * 60)
    logger.info(f"🚀 Starting {settings.app_name}")
    logger.info(f"   Version: {settings.app_version}")
    logger.info(f"   Environment: {settings.env_mode.value}")
    logger.info(f"   Debug: {settings.debug}")
    logger.info("=" * 60)

    missing = settings.validate_startup_config()
    if missing:
        logger.critical(f"❌ Missing required configuration: {missing}")
        raise ConfigurationError(f"Missing required configuration: {', '.join(missing)}")

    await init_db()
    logger.info("✅ Database initialized")

    gateway = get_gateway_client()
    lock = get_checkout_lock()
    logger.info(f"✅ Gateway: {gateway.provider_name}")
    logger.info(f"✅ Checkout lock: {lock.backend_name}")

    logger.info("=" * 60)
    logger.info("✅ Application ready!")
    logger.info("=" * 60)

    yield  # Application runs

    logger.info("Shutting down...")
    await gateway.aclose()
    await lock.aclose()
    await engine.dispose()
    logger.info("✅ Cleanup complete")


# =============================================================================
# APPLICATION INSTANCE
# =============================================================================

app = FastAPI(
    title=settings.app_name,
    description=(
        "Hosted checkout and payment reconciliation for the restaurant order "
        "pipeline. Webhooks, client polls and forced verifications converge "
        "on one forward-only order status."
    ),
    version=settings.app_version,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# DEPENDENCIES
# =============================================================================

def get_reconciler(
    gateway: BaseGatewayClient = Depends(get_gateway_client),
) -> StatusReconciler:
    return StatusReconciler(
        gateway,
        allow_retry=settings.allow_checkout_retry,
        auto_accept=settings.auto_accept_orders,
    )


def get_orchestrator(
    gateway: BaseGatewayClient = Depends(get_gateway_client),
    lock: BaseKeyedLock = Depends(get_checkout_lock),
) -> CheckoutOrchestrator:
    return CheckoutOrchestrator(
        gateway,
        lock,
        lock_timeout=settings.checkout_lock_timeout_seconds,
        allow_retry=settings.allow_checkout_retry,
    )


def get_webhook_receiver(
    reconciler: StatusReconciler = Depends(get_reconciler),
) -> WebhookReceiver:
    return WebhookReceiver(settings.webhook_secret, reconciler)


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def order_status_response(order: Order) -> OrderStatusResponse:
    return OrderStatusResponse(
        id=order.id,
        status=order.status,
        session_id=order.checkout_session_id,
        status_changed_at=order.status_changed_at,
    )


def status_message(status: OrderStatus) -> str | None:
    """Customer-facing hint for statuses that need one."""
    if status == OrderStatus.PAYMENT_FAILED:
        return PAYMENT_FAILED_MESSAGE
    if status == OrderStatus.AWAITING_PAYMENT:
        return NOT_CONFIRMED_MESSAGE
    return None


def webhook_response(outcome: WebhookOutcome) -> WebhookResponse:
    if not outcome.processed:
        return WebhookResponse(processed=False)
    return WebhookResponse(
        processed=True,
        order_id=outcome.result.order.id,
        status=outcome.result.order.status,
        applied=outcome.result.applied,
    )


# =============================================================================
# ROOT & HEALTH ENDPOINTS
# =============================================================================

@app.get("/", tags=["Root"])
async def root() -> dict[str, str]:
    """API root with navigation links."""
    return {
        "message": f"Welcome to {settings.app_name}",
        "version": settings.app_version,
        "environment": settings.env_mode.value,
        "documentation": "/docs",
        "health": "/health",
    }


@app.get(
    "/health",
    response_model=HealthResponse,
    tags=["Health"],
    summary="System Health Check",
)
async def health_check(
    db: AsyncSession = Depends(get_db),
    gateway: BaseGatewayClient = Depends(get_gateway_client),
) -> HealthResponse:
    """Verify all system components are operational."""

    db_status = "healthy"
    try:
        await db.execute(select(func.now()))
    except Exception as e:
        db_status = f"unhealthy: {e}"
        logger.error(f"Database health check failed: {e}")

    redis_status = "healthy"
    try:
        client = aioredis.Redis.from_url(settings.redis_url, socket_timeout=2)
        try:
            await client.ping()
        finally:
            await client.aclose()
    except Exception as e:
        redis_status = f"unhealthy: {e}"
        logger.error(f"Redis health check failed: {e}")

    gateway_status = "healthy" if await gateway.health_check() else "unhealthy"

    overall = "operational" if all(
        s == "healthy" for s in [db_status, redis_status, gateway_status]
    ) else "degraded"

    return HealthResponse(
        status=overall,
        database=db_status,
        redis=redis_status,
        gateway=gateway_status,
        timestamp=datetime.now(),
    )


# =============================================================================
# CHECKOUT ENDPOINTS
# =============================================================================

@app.post(
    "/checkout",
    response_model=CheckoutResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
    tags=["Checkout"],
    summary="Create or reuse the checkout session for an order",
)
async def initiate_checkout(
    body: CheckoutRequest,
    db: AsyncSession = Depends(get_db),
    orchestrator: CheckoutOrchestrator = Depends(get_orchestrator),
) -> CheckoutResponse:
    """
    Idempotent: repeating the call for the same order returns the same
    session while it is live.
    """
    logger.info(f"Checkout requested for order #{body.order_id}")
    session = await orchestrator.initiate_checkout(db, body.order_id)
    return CheckoutResponse(
        order_id=body.order_id,
        session_id=session.session_id,
        pay_url=session.pay_url,
    )


@app.get(
    "/checkout/{session_id}/status",
    response_model=CheckoutStatusResponse,
    responses={404: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
    tags=["Checkout"],
    summary="Live gateway status of a checkout session",
)
async def checkout_status(
    session_id: str,
    db: AsyncSession = Depends(get_db),
    reconciler: StatusReconciler = Depends(get_reconciler),
) -> CheckoutStatusResponse:
    order = await get_order_by_session(db, session_id)
    session = await reconciler.gateway.get_session_status(session_id)

    if settings.reconcile_on_status_poll:
        await reconciler.apply_observed_status(
            db,
            order,
            session.status,
            StatusSource.POLL,
            session_id=session.session_id,
            transaction_id=session.transaction_id,
        )

    return CheckoutStatusResponse(
        session_id=session_id,
        order_id=order.id,
        status=session.status,
        order_status=order.status,
        transaction_id=session.transaction_id,
    )


# =============================================================================
# WEBHOOK ENDPOINTS
# =============================================================================

@app.post(
    "/webhook",
    response_model=WebhookResponse,
    responses={400: {"model": ErrorResponse}, 401: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    tags=["Webhook"],
    summary="Gateway payment notification",
)
async def payment_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    receiver: WebhookReceiver = Depends(get_webhook_receiver),
) -> WebhookResponse:
    """
    Signed with HMAC-SHA256 over the raw body. Deliveries are
    at-least-once; repeats are acknowledged without further effect.
    """
    body = await request.body()
    signature = request.headers.get(settings.webhook_signature_header)
    client = request.client.host if request.client else None

    outcome = await receiver.handle(db, body, signature, client)
    return webhook_response(outcome)


@app.post(
    "/webhook/simulation",
    response_model=WebhookResponse,
    tags=["Simulation"],
    summary="Simulated gateway event (development)",
)
async def simulation_webhook(
    body: SimulatedWebhookRequest,
    db: AsyncSession = Depends(get_db),
    receiver: WebhookReceiver = Depends(get_webhook_receiver),
) -> WebhookResponse:
    """
    Settles the mock gateway session and runs the event through the same
    receiver path as a real, authenticated delivery.
    """
    if not settings.is_development:
        raise HTTPException(
            status_code=403,
            detail="Simulation endpoint only available in development mode"
        )

    order = await get_order(db, body.order_id)
    event = WebhookEvent.model_validate({
        "eventType": body.event_type,
        "reference": order.reference,
        "sessionId": order.checkout_session_id,
    })

    gateway = receiver.reconciler.gateway
    if isinstance(gateway, MockGatewayClient) and order.checkout_session_id in gateway.sessions:
        settle = {
            "PAID": gateway.mark_paid,
            "FAILED": gateway.mark_failed,
            "EXPIRED": gateway.mark_expired,
        }.get(event.observed_status.value if event.observed_status else "")
        if settle:
            session = settle(order.checkout_session_id)
            event.transaction_id = session.transaction_id

    logger.info(f"Simulation webhook: {body.event_type} for order #{order.id}")
    outcome = await receiver.process(db, event)
    return webhook_response(outcome)


# =============================================================================
# ORDER ENDPOINTS
# =============================================================================

@app.get(
    "/orders/{order_id}/status",
    response_model=OrderStatusResponse,
    responses={404: {"model": ErrorResponse}},
    tags=["Orders"],
    summary="Order status for client polling",
)
async def order_status(
    order_id: int,
    db: AsyncSession = Depends(get_db),
    reconciler: StatusReconciler = Depends(get_reconciler),
) -> OrderStatusResponse:
    order = await get_order(db, order_id)

    if (
        settings.lazy_verify_on_order_poll
        and order.status == OrderStatus.AWAITING_PAYMENT
        and order.checkout_session_id
    ):
        try:
            await reconciler.verify_with_gateway(db, order, StatusSource.POLL)
        except CheckoutError as e:
            # Polling must keep answering while the gateway is down
            logger.warning(f"Order #{order.id}: lazy verification failed - {e.message}")

    return order_status_response(order)


@app.post(
    "/orders/{order_id}/verify-payment",
    response_model=VerifyPaymentResponse,
    responses={404: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
    tags=["Orders"],
    summary="Force a gateway check of the order's payment",
)
async def verify_payment(
    order_id: int,
    db: AsyncSession = Depends(get_db),
    reconciler: StatusReconciler = Depends(get_reconciler),
) -> VerifyPaymentResponse:
    """
    Used by clients returning to the foreground after the hosted payment
    page, when waiting for the webhook is not an option.
    """
    order = await get_order(db, order_id)
    result = await reconciler.verify_with_gateway(db, order, StatusSource.VERIFY)

    return VerifyPaymentResponse(
        order_id=order.id,
        status=result.order.status,
        gateway_status=result.session.status if result.session else None,
        applied=result.applied,
        outcome=result.outcome.value,
        message=status_message(result.order.status),
    )


@app.post(
    "/orders",
    response_model=OrderResponse,
    status_code=201,
    tags=["Orders"],
    summary="Create an order awaiting payment",
)
async def create_order_endpoint(
    order_data: OrderCreate,
    db: AsyncSession = Depends(get_db),
) -> OrderResponse:
    order = await create_order(
        db,
        items=[item.model_dump() for item in order_data.items],
        currency=(order_data.currency or settings.default_currency).upper(),
        user_id=order_data.user_id,
        customer_name=order_data.customer_name,
        customer_email=order_data.customer_email,
    )
    return OrderResponse.model_validate(order)


@app.get(
    "/orders/{order_id}",
    response_model=OrderResponse,
    responses={404: {"model": ErrorResponse}},
    tags=["Orders"],
)
async def read_order(
    order_id: int,
    db: AsyncSession = Depends(get_db),
) -> OrderResponse:
    """Get a specific order by ID."""
    order = await get_order(db, order_id)
    return OrderResponse.model_validate(order)


@app.post(
    "/orders/{order_id}/status",
    response_model=OrderStatusResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    tags=["Restaurant"],
    summary="Advance an order (kitchen / front of house)",
)
async def advance_order(
    order_id: int,
    body: StatusUpdateRequest,
    db: AsyncSession = Depends(get_db),
    reconciler: StatusReconciler = Depends(get_reconciler),
) -> OrderStatusResponse:
    order = await get_order(db, order_id)
    result = await reconciler.apply_restaurant_action(db, order, body.status)
    return order_status_response(result.order)


@app.post(
    "/orders/{order_id}/cancel",
    response_model=OrderStatusResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    tags=["Restaurant"],
    summary="Cancel an order before preparation starts",
)
async def cancel_order(
    order_id: int,
    db: AsyncSession = Depends(get_db),
    reconciler: StatusReconciler = Depends(get_reconciler),
) -> OrderStatusResponse:
    order = await get_order(db, order_id)
    result = await reconciler.apply_restaurant_action(db, order, OrderStatus.CANCELLED)
    return order_status_response(result.order)


# =============================================================================
# ERROR HANDLERS
# =============================================================================

@app.exception_handler(CheckoutError)
async def checkout_exception_handler(request: Request, exc: CheckoutError) -> JSONResponse:
    """Map checkout errors to their status code without leaking internals."""
    log = logger.warning if exc.status_code < 500 else logger.error
    log(
        f"{request.method} {request.url.path} -> {exc.status_code} "
        f"{type(exc).__name__}: {exc.message} "
        f"(order={exc.order_id}, session={exc.session_id})"
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(settings.debug))


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all exception handler."""
    logger.exception(f"Unhandled exception on {request.method} {request.url.path}: {exc}")

    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": "Internal Server Error",
            "detail": str(exc) if settings.debug else "An unexpected error occurred",
        },
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("app.main:app", host=settings.api_host, port=settings.api_port)
