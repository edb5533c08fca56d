"""
FastAPI Application Entry Point

Restaurant Dispatch Service - order lifecycle and driver dispatch.
In-memory store and mock push in development, PostgreSQL and Expo push in
staging/production.

Endpoints:
    - POST /api/orders: Checkout (create order)
    - GET  /api/orders: List orders visible to the caller
    - POST /api/orders/{id}/status|advance|cancel: Status commands
    - POST /api/orders/{id}/assign: Manual driver assignment (admin)
    - GET  /api/orders/{id}/eta|events: Tracking ETA and audit trail
    - POST /api/dispatch: Run auto-dispatch for an order (admin)
    - POST /api/coupons/validate: Checkout coupon check
    - POST /api/drivers/{id}/online|location: Driver app commands
    - GET  /api/drivers: Driver roster (admin)
    - WS   /ws/orders/{id}: Live order document
    - GET  /health: System health check
"""

import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import Depends, FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import redis.asyncio as redis

from restaurant_dispatch.core.config import get_settings, setup_logging
from restaurant_dispatch.core.exceptions import DispatchServiceError, PermissionDeniedError
from restaurant_dispatch.dependencies import (
    get_coupon_service,
    get_current_caller,
    get_dispatch_engine,
    get_driver_service,
    get_order_service,
    get_sweeper,
)
from restaurant_dispatch.models import Driver, Location, Order, OrderStatus
from restaurant_dispatch.schemas import (
    AssignDriverRequest,
    CouponValidateRequest,
    CouponValidateResponse,
    DispatchRequest,
    DispatchResponse,
    DriverOnlineRequest,
    ErrorResponse,
    EtaResponse,
    HealthResponse,
    NoteCreate,
    OrderCreate,
    OrderEventResponse,
    StatusUpdate,
)
from restaurant_dispatch.services.auth import (
    Caller,
    require_admin,
    require_authenticated,
    resolve_caller,
)
from restaurant_dispatch.services.coupons import CouponService
from restaurant_dispatch.services.dispatch import DispatchEngine
from restaurant_dispatch.services.drivers import DriverService
from restaurant_dispatch.services.notifications import get_notification_queue, get_push_gateway
from restaurant_dispatch.services.orders import OrderService
from restaurant_dispatch.services.store import get_document_store

# Initialize configuration and logging
settings = get_settings()
setup_logging()
logger = logging.getLogger(__name__)

ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    401: {"model": ErrorResponse},
    403: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
}


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

    store = get_document_store()
    await store.initialize()
    logger.info(f"✅ Document Store: {store.provider_name}")

    queue = get_notification_queue()
    await queue.start()
    logger.info(f"✅ Push Gateway: {queue.gateway.provider_name}")

    # Celery beat sweeps the SQL store; the in-memory store is only visible here
    sweep_task = None
    if settings.is_development:
        sweep_task = asyncio.create_task(
            get_sweeper().run_every(settings.sweep_interval_minutes * 60),
            name="stale-order-sweep",
        )
    app.state.sweep_task = sweep_task

    # Validate production config
    if settings.use_real_services:
        missing = settings.validate_production_config()
        if missing:
            logger.warning(f"⚠️ Missing production config: {missing}")

    logger.info("=" * 60)
    logger.info("✅ Application ready!")
    logger.info("=" * 60)

    yield  # Application runs

    # Shutdown
    logger.info("Shutting down...")
    if sweep_task is not None:
        sweep_task.cancel()
        with suppress(asyncio.CancelledError):
            await sweep_task
    await get_driver_service().stop_all()
    await queue.stop(drain=True)
    await get_push_gateway().close()
    await store.close()
    logger.info("✅ Cleanup complete")


# =============================================================================
# APPLICATION INSTANCE
# =============================================================================

app = FastAPI(
    title=settings.app_name,
    description=(
        "Order lifecycle and driver dispatch for the restaurant ordering platform. "
        "Status state machine, nearest-driver assignment, push fan-out and stale-order sweep."
    ),
    version=settings.app_version,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def ensure_can_view(order: Order, caller: Caller) -> None:
    """Admins see every order; customers their own; drivers the ones assigned to them."""
    if caller.is_admin or order.customer_id == caller.uid or order.driver_id == caller.uid:
        return
    raise PermissionDeniedError("Not allowed to view this order", {"order_id": order.id})


def ensure_self_or_admin(driver_id: str, caller: Caller) -> None:
    if caller.is_admin or caller.uid == driver_id:
        return
    raise PermissionDeniedError("Drivers can only update their own record", {"driver_id": driver_id})


# =============================================================================
# ROOT & HEALTH ENDPOINTS
# =============================================================================

@app.get("/", tags=["Root"])
async def root() -> dict[str, str]:
    """API root with navigation links."""
    return {
        "message": f"🛵 Welcome to {settings.app_name}",
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
async def health_check() -> HealthResponse:
    """Verify all system components are operational."""
    store = get_document_store()
    store_status = "healthy"
    try:
        if not await store.health_check():
            store_status = "unhealthy"
    except Exception as e:
        store_status = f"unhealthy: {str(e)}"
        logger.error(f"Document store health check failed: {e}")

    broker_status = "healthy"
    try:
        r = redis.from_url(settings.redis_url, socket_connect_timeout=2, socket_timeout=2)
        await r.ping()
        await r.aclose()
    except Exception as e:
        broker_status = f"unhealthy: {str(e)}"
        logger.error(f"Redis health check failed: {e}")

    gateway = get_push_gateway()
    push_status = "healthy" if await gateway.health_check() else "unhealthy"

    queue = get_notification_queue()
    queue_status = "healthy" if queue.running else "stopped"

    overall = "operational" if all(
        s == "healthy" for s in [store_status, broker_status, push_status, queue_status]
    ) else "degraded"

    return HealthResponse(
        status=overall,
        version=settings.app_version,
        environment=settings.env_mode.value,
        services={
            "store": store_status,
            "broker": broker_status,
            "push": push_status,
            "notification_queue": queue_status,
        },
        timestamp=datetime.now(timezone.utc),
    )


# =============================================================================
# DISPATCH & COUPONS
# =============================================================================

@app.post(
    "/api/dispatch",
    response_model=DispatchResponse,
    responses=ERROR_RESPONSES,
    tags=["Dispatch"],
    summary="Run Auto-Dispatch (Admin)",
)
async def dispatch_order(
    body: DispatchRequest,
    caller: Optional[Caller] = Depends(get_current_caller),
    engine: DispatchEngine = Depends(get_dispatch_engine),
) -> DispatchResponse:
    """
    Assign the nearest available driver to an order.

    "No driver in range" is a successful call with ``assigned: false``.
    """
    require_admin(caller)
    result = await engine.auto_dispatch(body.order_id)
    return DispatchResponse(
        success=True,
        assigned=result.assigned,
        driver_id=result.driver_id,
        distance_km=result.distance_km,
        reason=result.reason,
    )


@app.post(
    "/api/coupons/validate",
    response_model=CouponValidateResponse,
    response_model_exclude_none=True,
    responses={400: {"model": ErrorResponse}},
    tags=["Coupons"],
)
async def validate_coupon(
    body: CouponValidateRequest,
    coupons: CouponService = Depends(get_coupon_service),
) -> dict[str, Any]:
    result = await coupons.validate(body.code, body.subtotal)
    return result.to_dict()


# =============================================================================
# ORDER API ENDPOINTS
# =============================================================================

@app.post(
    "/api/orders",
    response_model=Order,
    status_code=201,
    responses=ERROR_RESPONSES,
    tags=["Orders"],
    summary="Checkout",
)
async def create_order(
    body: OrderCreate,
    caller: Optional[Caller] = Depends(get_current_caller),
    orders: OrderService = Depends(get_order_service),
) -> Order:
    caller = require_authenticated(caller)
    logger.info(f"Creating order for customer {caller.uid}")
    return await orders.create_order(caller.uid, body)


@app.get(
    "/api/orders",
    response_model=list[Order],
    responses=ERROR_RESPONSES,
    tags=["Orders"],
    summary="List Orders",
)
async def list_orders(
    status: Optional[OrderStatus] = Query(None),
    limit: int = Query(50, ge=1, le=100),
    caller: Optional[Caller] = Depends(get_current_caller),
    orders: OrderService = Depends(get_order_service),
) -> list[Order]:
    """Admins see all orders; drivers their assignments; customers their history."""
    caller = require_authenticated(caller)
    if caller.is_admin:
        return await orders.list_orders(status=status, limit=limit)
    if caller.is_driver:
        return await orders.list_orders(status=status, driver_id=caller.uid, limit=limit)
    return await orders.list_orders(status=status, customer_id=caller.uid, limit=limit)


@app.get(
    "/api/orders/{order_id}",
    response_model=Order,
    responses=ERROR_RESPONSES,
    tags=["Orders"],
)
async def get_order(
    order_id: str,
    caller: Optional[Caller] = Depends(get_current_caller),
    orders: OrderService = Depends(get_order_service),
) -> Order:
    caller = require_authenticated(caller)
    order = await orders.get_order(order_id)
    ensure_can_view(order, caller)
    return order


@app.post(
    "/api/orders/{order_id}/status",
    response_model=Order,
    responses=ERROR_RESPONSES,
    tags=["Orders"],
    summary="Set Order Status",
)
async def update_order_status(
    order_id: str,
    body: StatusUpdate,
    caller: Optional[Caller] = Depends(get_current_caller),
    orders: OrderService = Depends(get_order_service),
) -> Order:
    caller = require_authenticated(caller)
    return await orders.transition(order_id, body.status, caller)


@app.post(
    "/api/orders/{order_id}/advance",
    response_model=Order,
    responses=ERROR_RESPONSES,
    tags=["Orders"],
)
async def advance_order(
    order_id: str,
    caller: Optional[Caller] = Depends(get_current_caller),
    orders: OrderService = Depends(get_order_service),
) -> Order:
    caller = require_authenticated(caller)
    return await orders.advance(order_id, caller)


@app.post(
    "/api/orders/{order_id}/cancel",
    response_model=Order,
    responses=ERROR_RESPONSES,
    tags=["Orders"],
)
async def cancel_order(
    order_id: str,
    caller: Optional[Caller] = Depends(get_current_caller),
    orders: OrderService = Depends(get_order_service),
) -> Order:
    caller = require_authenticated(caller)
    return await orders.cancel(order_id, caller)


@app.post(
    "/api/orders/{order_id}/assign",
    response_model=Order,
    responses=ERROR_RESPONSES,
    tags=["Orders"],
    summary="Assign Driver (Admin)",
)
async def assign_driver(
    order_id: str,
    body: AssignDriverRequest,
    caller: Optional[Caller] = Depends(get_current_caller),
    orders: OrderService = Depends(get_order_service),
) -> Order:
    require_admin(caller)
    return await orders.assign_driver(order_id, body.driver_id)


@app.get(
    "/api/orders/{order_id}/eta",
    response_model=EtaResponse,
    responses=ERROR_RESPONSES,
    tags=["Tracking"],
)
async def order_eta(
    order_id: str,
    caller: Optional[Caller] = Depends(get_current_caller),
    orders: OrderService = Depends(get_order_service),
) -> EtaResponse:
    """Straight-line ETA; null fields until the driver has reported a position."""
    caller = require_authenticated(caller)
    order = await orders.get_order(order_id)
    ensure_can_view(order, caller)

    estimate = await orders.estimate_eta(order_id)
    return EtaResponse(
        order_id=order_id,
        driver_id=order.driver_id,
        distance_km=round(estimate.distance_km, 3) if estimate else None,
        eta_minutes=estimate.duration_minutes if estimate else None,
    )


@app.get(
    "/api/orders/{order_id}/events",
    response_model=list[OrderEventResponse],
    responses=ERROR_RESPONSES,
    tags=["Orders"],
    summary="Order Audit Trail",
)
async def order_events(
    order_id: str,
    caller: Optional[Caller] = Depends(get_current_caller),
    orders: OrderService = Depends(get_order_service),
) -> list[OrderEventResponse]:
    caller = require_authenticated(caller)
    order = await orders.get_order(order_id)
    ensure_can_view(order, caller)
    events = await orders.list_events(order_id)
    return [OrderEventResponse.model_validate(e.model_dump(mode="json")) for e in events]


@app.post(
    "/api/orders/{order_id}/events",
    response_model=OrderEventResponse,
    status_code=201,
    responses=ERROR_RESPONSES,
    tags=["Orders"],
    summary="Add Note (Admin)",
)
async def add_order_note(
    order_id: str,
    body: NoteCreate,
    caller: Optional[Caller] = Depends(get_current_caller),
    orders: OrderService = Depends(get_order_service),
) -> OrderEventResponse:
    require_admin(caller)
    event = await orders.add_note(order_id, body.message)
    return OrderEventResponse.model_validate(event.model_dump(mode="json"))


# =============================================================================
# DRIVER API ENDPOINTS
# =============================================================================

@app.get(
    "/api/drivers",
    response_model=list[Driver],
    responses=ERROR_RESPONSES,
    tags=["Drivers"],
)
async def list_drivers(
    online_only: bool = Query(False, alias="onlineOnly"),
    caller: Optional[Caller] = Depends(get_current_caller),
    drivers: DriverService = Depends(get_driver_service),
) -> list[Driver]:
    require_admin(caller)
    return await drivers.list_drivers(online_only=online_only)


@app.put(
    "/api/drivers/{driver_id}",
    response_model=Driver,
    responses=ERROR_RESPONSES,
    tags=["Drivers"],
    summary="Register Driver (Admin)",
)
async def register_driver(
    driver_id: str,
    caller: Optional[Caller] = Depends(get_current_caller),
    drivers: DriverService = Depends(get_driver_service),
) -> Driver:
    require_admin(caller)
    return await drivers.register_driver(driver_id)


@app.post(
    "/api/drivers/{driver_id}/online",
    response_model=Driver,
    responses=ERROR_RESPONSES,
    tags=["Drivers"],
)
async def set_driver_online(
    driver_id: str,
    body: DriverOnlineRequest,
    caller: Optional[Caller] = Depends(get_current_caller),
    drivers: DriverService = Depends(get_driver_service),
) -> Driver:
    caller = require_authenticated(caller)
    ensure_self_or_admin(driver_id, caller)
    return await drivers.set_online(driver_id, body.is_online)


@app.post(
    "/api/drivers/{driver_id}/location",
    response_model=Driver,
    responses=ERROR_RESPONSES,
    tags=["Drivers"],
)
async def report_driver_location(
    driver_id: str,
    body: Location,
    caller: Optional[Caller] = Depends(get_current_caller),
    drivers: DriverService = Depends(get_driver_service),
) -> Driver:
    caller = require_authenticated(caller)
    ensure_self_or_admin(driver_id, caller)
    return await drivers.report_location(driver_id, body)


# =============================================================================
# WEBSOCKET
# =============================================================================

@app.websocket("/ws/orders/{order_id}")
async def order_updates(
    websocket: WebSocket,
    order_id: str,
    orders: OrderService = Depends(get_order_service),
):
    """
    Push the order document on connect and after every change.

    Authenticate with ``?token=<jwt>``. Closes with 4401 (no valid token),
    4403 (not allowed) or 4404 (unknown order).
    """
    await websocket.accept()

    token = websocket.query_params.get("token")
    caller = await resolve_caller(orders.store, f"Bearer {token}" if token else None, settings)
    if caller is None:
        await websocket.close(code=4401)
        return

    try:
        order = await orders.get_order(order_id)
        ensure_can_view(order, caller)
    except PermissionDeniedError:
        await websocket.close(code=4403)
        return
    except DispatchServiceError:
        await websocket.close(code=4404)
        return

    updates: asyncio.Queue = asyncio.Queue()
    unsubscribe = orders.subscribe_order(order_id, updates.put_nowait)
    logger.info(f"[WS] Client {caller.uid} watching order {order_id}")

    async def drain_client() -> None:
        # Client messages are ignored; this only detects the disconnect
        while True:
            await websocket.receive_text()

    receiver = asyncio.create_task(drain_client())
    try:
        await websocket.send_json(order.model_dump(mode="json", by_alias=True))
        while True:
            getter = asyncio.create_task(updates.get())
            done, _ = await asyncio.wait({getter, receiver}, return_when=asyncio.FIRST_COMPLETED)
            if receiver in done:
                getter.cancel()
                break
            current = getter.result()
            if current is None:
                break
            await websocket.send_json(current.model_dump(mode="json", by_alias=True))
    except WebSocketDisconnect:
        pass
    finally:
        unsubscribe()
        receiver.cancel()
        logger.info(f"[WS] Client {caller.uid} stopped watching order {order_id}")


# =============================================================================
# ERROR HANDLERS
# =============================================================================

@app.exception_handler(DispatchServiceError)
async def dispatch_error_handler(request: Request, exc: DispatchServiceError) -> JSONResponse:
    """Map service errors to the ``{success: false, error: {kind, message}}`` shape."""
    if exc.status_code >= 500:
        logger.error(f"{exc.kind}: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} → {exc.kind}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.to_dict()},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all exception handler."""
    logger.exception(f"Unhandled exception: {exc}")

    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": {
                "kind": "internal",
                "message": str(exc) if settings.debug else "An unexpected error occurred",
            },
        },
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "restaurant_dispatch.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
    )
