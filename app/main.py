"""
FastAPI Application Entry Point

Restaurant Ordering Backend - session-scoped orders with live updates.

Endpoints:
    - POST /api/orders: Place an order
    - GET /api/orders: List a session's orders at an outlet
    - GET /api/orders/stream: SSE order events for an outlet
    - GET /api/orders/{order_id}: Fetch an order (session or admin)
    - PUT /api/orders/{order_id}: Admin partial update
    - POST /api/orders/{order_id}/add-items: Add items to an unpaid order
    - GET /health: System health check

Version: 1.0.0
"""

import asyncio
import sys
import logging
import secrets
from datetime import datetime
from typing import Optional
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Depends, Query, Request, Header
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func

# Windows-specific event loop policy
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

# Internal imports
from app.core.config import get_settings, setup_logging
from app.database import get_db, init_db, engine
from app.schemas import (
    OrderCreate,
    OrderItemsAdd,
    OrderUpdate,
    OrderResponse,
    OrderEnvelope,
    OrderListResponse,
    ErrorResponse,
    HealthResponse,
    StreamUnavailableResponse,
)
from app.services.events import get_event_broker, BaseOrderEventBroker
from app.services.orders import OrderService, OrderServiceError
from app.services.stream import order_event_stream

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
    """
    # Startup
    logger.info("=" * 60)
    logger.info(f"🚀 Starting {settings.app_name}")
    logger.info(f"   Version: {settings.app_version}")
    logger.info(f"   Environment: {settings.env_mode.value}")
    logger.info(f"   Debug: {settings.debug}")
    logger.info("=" * 60)

    await init_db()
    logger.info("✅ Database initialized")

    broker = get_event_broker()
    logger.info(f"✅ Event Broker: {broker.provider_name}")
    logger.info(f"✅ Push delivery: {'enabled' if settings.push_enabled else 'disabled (polling only)'}")

    missing = settings.validate_production_config()
    if missing:
        logger.warning(f"⚠️ Missing production config: {missing}")

    logger.info("=" * 60)
    logger.info("✅ Application ready!")
    logger.info("=" * 60)

    yield  # Application runs

    # Shutdown
    logger.info("Shutting down...")
    await broker.close()
    await engine.dispose()
    logger.info("✅ Cleanup complete")


# =============================================================================
# APPLICATION INSTANCE
# =============================================================================

app = FastAPI(
    title=settings.app_name,
    description=(
        "Session-scoped restaurant ordering API with a server-sent event "
        "stream of order changes per outlet."
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

def get_broker() -> BaseOrderEventBroker:
    return get_event_broker()


def get_order_service(
    db: AsyncSession = Depends(get_db),
    broker: BaseOrderEventBroker = Depends(get_broker),
) -> OrderService:
    return OrderService(db, broker, list_limit=settings.order_list_limit)


def is_admin(token: Optional[str]) -> bool:
    """Constant-time comparison against the configured admin token."""
    expected = get_settings().admin_api_token
    if not expected or not token:
        return False
    return secrets.compare_digest(token, expected)


def require_admin(
    x_admin_token: Optional[str] = Header(None, alias="X-Admin-Token"),
) -> None:
    if not is_admin(x_admin_token):
        raise HTTPException(status_code=401, detail="Unauthorized")


# =============================================================================
# ROOT & HEALTH ENDPOINTS
# =============================================================================

@app.get("/", tags=["Root"])
async def root() -> dict[str, str]:
    """API root with navigation links."""
    return {
        "message": f"🍽️ Welcome to {settings.app_name}",
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
    broker: BaseOrderEventBroker = Depends(get_broker),
) -> HealthResponse:
    """Verify all system components are operational."""

    db_status = "healthy"
    try:
        await db.execute(select(func.now()))
    except Exception as e:
        db_status = f"unhealthy: {str(e)}"
        logger.error(f"Database health check failed: {e}")

    broker_status = "healthy" if await broker.health_check() else "unhealthy"

    overall = "operational" if all(
        s == "healthy" for s in [db_status, broker_status]
    ) else "degraded"

    return HealthResponse(
        status=overall,
        database=db_status,
        event_broker=broker_status,
        push_enabled=settings.push_enabled,
        timestamp=datetime.now(),
    )


# =============================================================================
# ORDER API ENDPOINTS
# =============================================================================

@app.post(
    "/api/orders",
    response_model=OrderEnvelope,
    status_code=201,
    responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
    tags=["Orders"],
    summary="Place Order",
)
async def create_order(
    order_data: OrderCreate,
    service: OrderService = Depends(get_order_service),
) -> OrderEnvelope:
    """
    Place a new order for a guest session.

    The stored total is recomputed from the items; the order starts
    as taken/unpaid.
    """
    logger.info(f"Creating order for outlet {order_data.outlet_id}")
    order = await service.create_order(order_data)
    return OrderEnvelope(
        message="Order created successfully",
        order=OrderResponse.model_validate(order),
    )


@app.get(
    "/api/orders",
    response_model=OrderListResponse,
    responses={400: {"model": ErrorResponse}},
    tags=["Orders"],
    summary="List Session Orders",
)
async def list_orders(
    outlet_id: Optional[str] = Query(None, alias="outletId"),
    session_id: Optional[str] = Query(None, alias="sessionId"),
    service: OrderService = Depends(get_order_service),
) -> OrderListResponse:
    """Orders of one session at one outlet, newest first."""
    orders = await service.list_orders(outlet_id or "", session_id or "")
    return OrderListResponse(
        orders=[OrderResponse.model_validate(order) for order in orders],
    )


@app.get(
    "/api/orders/stream",
    tags=["Live Updates"],
    summary="Order Event Stream (SSE)",
    responses={501: {"model": StreamUnavailableResponse}},
)
async def stream_orders(
    request: Request,
    outlet_id: Optional[str] = Query(None, alias="outletId"),
    broker: BaseOrderEventBroker = Depends(get_broker),
):
    """
    Server-sent events for every order change at an outlet.

    Answers 501 with ``{"fallback": "polling"}`` when push delivery is
    disabled for this deployment; clients should then poll instead.
    """
    if not outlet_id:
        raise OrderServiceError("Outlet ID is required")

    if not settings.push_enabled:
        logger.info(f"Stream requested for outlet {outlet_id} but push is disabled")
        return JSONResponse(
            status_code=501,
            content=StreamUnavailableResponse(
                error="Live updates are not available on this deployment",
            ).model_dump(),
        )

    return StreamingResponse(
        order_event_stream(
            outlet_id,
            broker,
            request.is_disconnected,
            keepalive_seconds=settings.stream_keepalive_seconds,
        ),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@app.get(
    "/api/orders/{order_id}",
    response_model=OrderEnvelope,
    responses={401: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    tags=["Orders"],
)
async def get_order(
    order_id: str,
    session_id: Optional[str] = Query(None, alias="sessionId"),
    x_admin_token: Optional[str] = Header(None, alias="X-Admin-Token"),
    service: OrderService = Depends(get_order_service),
) -> OrderEnvelope:
    """
    Get a specific order.

    Guests pass their session id and only ever see their own orders.
    Without a session id the admin token is required.
    """
    if session_id is None and not is_admin(x_admin_token):
        raise HTTPException(status_code=401, detail="Session ID required or unauthorized access")

    order = await service.get_order(order_id, session_id)
    return OrderEnvelope(order=OrderResponse.model_validate(order))


@app.put(
    "/api/orders/{order_id}",
    response_model=OrderEnvelope,
    responses={400: {"model": ErrorResponse}, 401: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    tags=["Orders"],
    dependencies=[Depends(require_admin)],
)
async def update_order(
    order_id: str,
    changes: OrderUpdate,
    service: OrderService = Depends(get_order_service),
) -> OrderEnvelope:
    """Admin partial update of statuses, comments and items."""
    order = await service.update_order(order_id, changes)
    return OrderEnvelope(
        message="Order updated successfully",
        order=OrderResponse.model_validate(order),
    )


@app.post(
    "/api/orders/{order_id}/add-items",
    response_model=OrderEnvelope,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    tags=["Orders"],
)
async def add_items(
    order_id: str,
    payload: OrderItemsAdd,
    service: OrderService = Depends(get_order_service),
) -> OrderEnvelope:
    """Add a batch of items to one of the session's unpaid orders."""
    order = await service.add_items(order_id, payload.session_id, payload.items)
    return OrderEnvelope(
        message="Items added successfully",
        order=OrderResponse.model_validate(order),
    )


# =============================================================================
# ERROR HANDLERS
# =============================================================================

@app.exception_handler(OrderServiceError)
async def order_error_handler(request: Request, exc: OrderServiceError) -> JSONResponse:
    """Domain errors carry their own status code."""
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=exc.message, detail=exc.detail).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_error_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=str(exc.detail)).model_dump(),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Invalid request bodies are client errors (400), never retried."""
    errors = jsonable_encoder(exc.errors())
    fields = ", ".join(".".join(str(p) for p in err.get("loc", ())[1:]) for err in errors)
    return JSONResponse(
        status_code=400,
        content={
            **ErrorResponse(error="Invalid order data", detail=fields or None).model_dump(),
            "errors": errors,
        },
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all exception handler."""
    logger.exception(f"Unhandled exception: {exc}")

    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": "Internal Server Error",
            "detail": str(exc) if settings.debug else "An unexpected error occurred",
        },
    )


