"""
FastAPI Application Entry Point

Courier Dispatch - order dispatch and real-time coordination between
restaurants, couriers and admins.

Endpoints:
    - POST /api/auth/login, /api/auth/logout: single-session login
    - /api/orders...: create, accept, assign, deliver, approve, cancel, delete
    - /api/couriers/{id}/preferences, /api/restaurants/{id}/preferences
    - POST/DELETE /api/push-tokens: device token registration
    - POST /api/couriers/{id}/block: admin block/unblock
    - GET /health, GET /api/stats
    - WS /ws?token=...: live channel

Version: 1.0.0
"""

import asyncio
import sys
import json
import logging
from datetime import datetime
from typing import Any, Optional
from contextlib import asynccontextmanager

from fastapi import FastAPI, Depends, Query, Request, Header, WebSocket, WebSocketDisconnect, status
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
import redis

# Windows-specific event loop policy
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

# Internal imports
from courier_dispatch.container import ServiceContainer, build_container
from courier_dispatch.core.config import get_settings, setup_logging
from courier_dispatch.core.errors import AuthorizationError, DispatchError, SessionInvalidError
from courier_dispatch.core.security import Actor
from courier_dispatch.database import async_session_maker, engine, get_db, init_db
from courier_dispatch.models import ActiveSession, Order, OrderStatus, PushToken, UserRole
from courier_dispatch.realtime.connection import WebSocketConnection
from courier_dispatch.realtime.presence import CLOSE_LOGGED_OUT
from courier_dispatch.schemas import (
    AcceptFailure,
    AcceptOrdersRequest,
    AcceptOrdersResponse,
    AssignCourierRequest,
    CourierPreferences,
    ErrorResponse,
    HealthResponse,
    LoginRequest,
    LoginResponse,
    OrderActionResponse,
    OrderCreate,
    OrderListResponse,
    OrderResponse,
    PushTokenRegister,
    RestaurantPreferences,
    StatsResponse,
    SuccessResponse,
)

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

    A container already placed on ``app.state`` (tests) is used as is.
    """
    # Startup
    logger.info("=" * 60)
    logger.info(f"🚀 Starting {settings.app_name}")
    logger.info(f"   Version: {settings.app_version}")
    logger.info(f"   Environment: {settings.env_mode.value}")
    logger.info(f"   Debug: {settings.debug}")
    logger.info("=" * 60)

    container: Optional[ServiceContainer] = getattr(app.state, "container", None)
    if container is None:
        await init_db()
        logger.info("✅ Database initialized")
        container = build_container(async_session_maker, settings=settings)
        app.state.container = container

    logger.info(f"✅ Push Service: {container.push_service.provider_name}")

    # Validate production config
    if settings.use_real_services:
        missing = settings.validate_production_config()
        if missing:
            logger.warning(f"⚠️ Missing production config: {missing}")

    container.start_background()
    logger.info(f"✅ Background sweeps: {'on' if settings.reaper_enabled else 'off'}")

    logger.info("=" * 60)
    logger.info("✅ Application ready!")
    logger.info("=" * 60)

    yield  # Application runs

    # Shutdown
    logger.info("Shutting down...")
    await container.shutdown()
    await engine.dispose()
    logger.info("✅ Cleanup complete")


# =============================================================================
# APPLICATION INSTANCE
# =============================================================================

app = FastAPI(
    title=settings.app_name,
    description=(
        "Order dispatch and real-time coordination for restaurants, couriers and admins. "
        "Supports a mock push provider for development and Expo push for production."
    ),
    version=settings.app_version,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# DEPENDENCIES
# =============================================================================

def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def bearer_token(authorization: Optional[str] = Header(None)) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    return token.strip()


async def get_current_session(
    token: Optional[str] = Depends(bearer_token),
    db: AsyncSession = Depends(get_db),
    container: ServiceContainer = Depends(get_container),
) -> ActiveSession:
    return await container.presence.authenticate_token(db, token)


async def get_actor(session: ActiveSession = Depends(get_current_session)) -> Actor:
    return Actor(user_id=session.user_id, role=session.user_role)


def require_role(*roles: UserRole):
    allowed = {r.value for r in roles}

    async def dependency(actor: Actor = Depends(get_actor)) -> Actor:
        if actor.role not in allowed:
            raise AuthorizationError(f"Requires role: {', '.join(sorted(allowed))}")
        return actor
    return dependency


def require_self_or_admin(actor: Actor, role: UserRole, user_id: int) -> None:
    if actor.is_admin:
        return
    if actor.role == role.value and actor.user_id == user_id:
        return
    raise AuthorizationError("Not allowed to act on another account")


def order_list(orders: list[Order]) -> OrderListResponse:
    return OrderListResponse(
        total=len(orders),
        orders=[OrderResponse.model_validate(o) for o in orders],
    )


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
        "live": "/ws",
    }


@app.get(
    "/health",
    response_model=HealthResponse,
    tags=["Health"],
    summary="System Health Check",
)
async def health_check(
    db: AsyncSession = Depends(get_db),
    container: ServiceContainer = Depends(get_container),
) -> HealthResponse:
    """Verify all system components are operational."""

    # Check database
    db_status = "healthy"
    try:
        await db.execute(select(func.count(Order.id)))
    except Exception as e:
        db_status = f"unhealthy: {str(e)}"
        logger.error(f"Database health check failed: {e}")

    # Check Redis (Celery broker)
    redis_status = "healthy"
    try:
        r = redis.Redis.from_url(settings.redis_url, socket_timeout=2)
        r.ping()
        r.close()
    except Exception as e:
        redis_status = f"unhealthy: {str(e)}"
        logger.error(f"Redis health check failed: {e}")

    # Check push service
    push_status = "healthy" if await container.push_service.health_check() else "unhealthy"

    overall = "operational" if all(
        s == "healthy" for s in [db_status, redis_status, push_status]
    ) else "degraded"

    return HealthResponse(
        status=overall,
        database=db_status,
        redis=redis_status,
        push_service=push_status,
        live_connections=container.registry.stats()["total_connections"],
        timestamp=datetime.now(),
    )


@app.get("/api/stats", response_model=StatsResponse, tags=["Health"])
async def stats(
    db: AsyncSession = Depends(get_db),
    container: ServiceContainer = Depends(get_container),
    actor: Actor = Depends(require_role(UserRole.ADMIN)),
) -> StatsResponse:
    result = await db.execute(select(Order.status, func.count(Order.id)).group_by(Order.status))
    by_status = {row[0]: row[1] for row in result.all()}
    return StatsResponse(
        **container.registry.stats(),
        pending_orders=by_status.get(OrderStatus.PENDING, 0),
        active_orders=by_status.get(OrderStatus.ASSIGNED, 0),
        awaiting_approval_orders=by_status.get(OrderStatus.AWAITING_APPROVAL, 0),
    )


# =============================================================================
# AUTH ENDPOINTS
# =============================================================================

@app.post("/api/auth/login", response_model=LoginResponse, tags=["Auth"])
async def login(
    payload: LoginRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    container: ServiceContainer = Depends(get_container),
) -> LoginResponse:
    """
    Sign in and open the single active session for this account.

    Any earlier session of the same account is invalidated and its live
    connection receives ``forceLogout``.
    """
    result = await container.presence.login(
        db,
        payload.email,
        payload.password,
        payload.role,
        device_info=payload.device_info,
        ip_address=request.client.host if request.client else None,
    )
    return LoginResponse(
        token=result.token,
        user_id=result.user_id,
        role=result.role,
        name=result.name,
        expires_at=result.expires_at,
    )


@app.post("/api/auth/logout", response_model=SuccessResponse, tags=["Auth"])
async def logout(
    token: Optional[str] = Depends(bearer_token),
    session: ActiveSession = Depends(get_current_session),
    db: AsyncSession = Depends(get_db),
    container: ServiceContainer = Depends(get_container),
) -> SuccessResponse:
    await container.presence.logout(db, token)
    return SuccessResponse(message="Logged out")


# =============================================================================
# ORDER ENDPOINTS
# =============================================================================

@app.post(
    "/api/orders",
    response_model=OrderActionResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Orders"],
)
async def create_order(
    payload: OrderCreate,
    db: AsyncSession = Depends(get_db),
    container: ServiceContainer = Depends(get_container),
    actor: Actor = Depends(get_actor),
) -> OrderActionResponse:
    """Create a pending order and offer it to eligible couriers."""
    order, broadcast = await container.lifecycle.create_order(db, actor, payload.model_dump())
    return OrderActionResponse(
        message=(
            f"Order #{order.id} created; notified {broadcast.live_sent} live "
            f"and {broadcast.push_sent} by push"
        ),
        order=OrderResponse.model_validate(order),
    )


@app.get("/api/orders/available", response_model=OrderListResponse, tags=["Orders"])
async def available_orders(
    db: AsyncSession = Depends(get_db),
    container: ServiceContainer = Depends(get_container),
    actor: Actor = Depends(require_role(UserRole.COURIER)),
) -> OrderListResponse:
    return order_list(await container.lifecycle.get_available_orders(db, actor.user_id))


@app.get("/api/orders/active", response_model=OrderListResponse, tags=["Orders"])
async def active_orders(
    courier_id: Optional[int] = Query(None, description="Admin only"),
    db: AsyncSession = Depends(get_db),
    container: ServiceContainer = Depends(get_container),
    actor: Actor = Depends(require_role(UserRole.COURIER, UserRole.ADMIN)),
) -> OrderListResponse:
    target = actor.user_id if actor.is_courier else courier_id
    if target is None:
        raise DispatchError("courier_id is required")
    return order_list(await container.lifecycle.get_active_orders(db, target))


@app.get("/api/orders/restaurant", response_model=OrderListResponse, tags=["Orders"])
async def restaurant_orders(
    restaurant_id: Optional[int] = Query(None, description="Admin only"),
    db: AsyncSession = Depends(get_db),
    container: ServiceContainer = Depends(get_container),
    actor: Actor = Depends(require_role(UserRole.RESTAURANT, UserRole.ADMIN)),
) -> OrderListResponse:
    target = actor.user_id if actor.is_restaurant else restaurant_id
    if target is None:
        raise DispatchError("restaurant_id is required")
    return order_list(await container.lifecycle.get_restaurant_orders(db, target))


@app.get("/api/orders/pending-approval", response_model=OrderListResponse, tags=["Orders"])
async def pending_approval_orders(
    db: AsyncSession = Depends(get_db),
    container: ServiceContainer = Depends(get_container),
    actor: Actor = Depends(get_actor),
) -> OrderListResponse:
    return order_list(await container.lifecycle.get_pending_approval_orders(db, actor))


@app.post("/api/orders/accept", response_model=AcceptOrdersResponse, tags=["Orders"])
async def accept_orders(
    payload: AcceptOrdersRequest,
    courier_id: Optional[int] = Query(None, description="Admin only"),
    db: AsyncSession = Depends(get_db),
    container: ServiceContainer = Depends(get_container),
    actor: Actor = Depends(get_actor),
) -> AcceptOrdersResponse:
    """
    Accept one or more pending orders.

    Exactly one courier wins each order; losers get ``already_taken``.
    """
    outcome = await container.lifecycle.accept_orders(db, actor, payload.order_ids, courier_id=courier_id)
    return AcceptOrdersResponse(
        success=bool(outcome.accepted),
        accepted=[o.id for o in outcome.accepted],
        failed=[AcceptFailure(order_id=oid, reason=reason) for oid, reason in outcome.failed],
    )


@app.get("/api/orders/{order_id}", response_model=OrderResponse, tags=["Orders"])
async def get_order(
    order_id: int,
    db: AsyncSession = Depends(get_db),
    container: ServiceContainer = Depends(get_container),
    actor: Actor = Depends(get_actor),
) -> OrderResponse:
    return OrderResponse.model_validate(await container.lifecycle.get_order(db, actor, order_id))


@app.post("/api/orders/{order_id}/assign", response_model=OrderActionResponse, tags=["Orders"])
async def assign_order(
    order_id: int,
    payload: AssignCourierRequest,
    db: AsyncSession = Depends(get_db),
    container: ServiceContainer = Depends(get_container),
    actor: Actor = Depends(get_actor),
) -> OrderActionResponse:
    order = await container.lifecycle.assign_courier(db, actor, order_id, payload.courier_id)
    return OrderActionResponse(
        message=f"Order #{order.id} assigned to courier #{payload.courier_id}",
        order=OrderResponse.model_validate(order),
    )


@app.post("/api/orders/{order_id}/deliver", response_model=OrderActionResponse, tags=["Orders"])
async def deliver_order(
    order_id: int,
    db: AsyncSession = Depends(get_db),
    container: ServiceContainer = Depends(get_container),
    actor: Actor = Depends(get_actor),
) -> OrderActionResponse:
    order = await container.lifecycle.deliver_order(db, actor, order_id)
    message = (
        f"Order #{order.id} delivered"
        if order.status == OrderStatus.DELIVERED
        else f"Order #{order.id} awaiting restaurant approval"
    )
    return OrderActionResponse(message=message, order=OrderResponse.model_validate(order))


@app.post("/api/orders/{order_id}/approve", response_model=OrderActionResponse, tags=["Orders"])
async def approve_order(
    order_id: int,
    db: AsyncSession = Depends(get_db),
    container: ServiceContainer = Depends(get_container),
    actor: Actor = Depends(get_actor),
) -> OrderActionResponse:
    order = await container.lifecycle.approve_delivery(db, actor, order_id)
    return OrderActionResponse(
        message=f"Delivery of order #{order.id} approved",
        order=OrderResponse.model_validate(order),
    )


@app.post("/api/orders/{order_id}/cancel", response_model=OrderActionResponse, tags=["Orders"])
async def cancel_order(
    order_id: int,
    reason: Optional[str] = Query(None, max_length=500),
    db: AsyncSession = Depends(get_db),
    container: ServiceContainer = Depends(get_container),
    actor: Actor = Depends(get_actor),
) -> OrderActionResponse:
    order = await container.lifecycle.cancel_order(db, actor, order_id, reason=reason)
    return OrderActionResponse(
        message=f"Order #{order.id} returned to the pending pool",
        order=OrderResponse.model_validate(order),
    )


@app.delete("/api/orders/{order_id}", response_model=SuccessResponse, tags=["Orders"])
async def delete_order(
    order_id: int,
    db: AsyncSession = Depends(get_db),
    container: ServiceContainer = Depends(get_container),
    actor: Actor = Depends(get_actor),
) -> SuccessResponse:
    await container.lifecycle.delete_order(db, actor, order_id)
    return SuccessResponse(message=f"Order #{order_id} deleted")


# =============================================================================
# PREFERENCE ENDPOINTS
# =============================================================================

@app.get("/api/couriers/{courier_id}/preferences", response_model=CourierPreferences, tags=["Preferences"])
async def get_courier_preferences(
    courier_id: int,
    db: AsyncSession = Depends(get_db),
    container: ServiceContainer = Depends(get_container),
    actor: Actor = Depends(get_actor),
) -> CourierPreferences:
    require_self_or_admin(actor, UserRole.COURIER, courier_id)
    return CourierPreferences(**await container.resolver.get_courier_preferences(db, courier_id))


@app.put("/api/couriers/{courier_id}/preferences", response_model=CourierPreferences, tags=["Preferences"])
async def update_courier_preferences(
    courier_id: int,
    payload: CourierPreferences,
    db: AsyncSession = Depends(get_db),
    container: ServiceContainer = Depends(get_container),
    actor: Actor = Depends(get_actor),
) -> CourierPreferences:
    require_self_or_admin(actor, UserRole.COURIER, courier_id)
    prefs = await container.resolver.update_courier_preferences(
        db, courier_id, payload.notification_mode, payload.selected_restaurant_ids
    )
    return CourierPreferences(**prefs)


@app.get("/api/restaurants/{restaurant_id}/preferences", response_model=RestaurantPreferences, tags=["Preferences"])
async def get_restaurant_preferences(
    restaurant_id: int,
    db: AsyncSession = Depends(get_db),
    container: ServiceContainer = Depends(get_container),
    actor: Actor = Depends(get_actor),
) -> RestaurantPreferences:
    require_self_or_admin(actor, UserRole.RESTAURANT, restaurant_id)
    return RestaurantPreferences(**await container.resolver.get_restaurant_preferences(db, restaurant_id))


@app.put("/api/restaurants/{restaurant_id}/preferences", response_model=RestaurantPreferences, tags=["Preferences"])
async def update_restaurant_preferences(
    restaurant_id: int,
    payload: RestaurantPreferences,
    db: AsyncSession = Depends(get_db),
    container: ServiceContainer = Depends(get_container),
    actor: Actor = Depends(get_actor),
) -> RestaurantPreferences:
    require_self_or_admin(actor, UserRole.RESTAURANT, restaurant_id)
    prefs = await container.resolver.update_restaurant_preferences(
        db, restaurant_id, payload.courier_visibility_mode, payload.selected_courier_ids
    )
    return RestaurantPreferences(**prefs)


# =============================================================================
# ACCOUNT ENDPOINTS
# =============================================================================

@app.post("/api/push-tokens", response_model=SuccessResponse, tags=["Accounts"])
async def register_push_token(
    payload: PushTokenRegister,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_actor),
) -> SuccessResponse:
    """Store the device token; one row per account, the latest wins."""
    result = await db.execute(
        select(PushToken).where(PushToken.user_id == actor.user_id, PushToken.user_type == actor.role)
    )
    row = result.scalar_one_or_none()
    if row is None:
        db.add(PushToken(
            user_id=actor.user_id,
            user_type=actor.role,
            token=payload.token,
            platform=payload.platform,
            is_active=True,
        ))
    else:
        row.token = payload.token
        row.platform = payload.platform
        row.is_active = True
    await db.commit()
    logger.info(f"📱 Push token registered for {actor.role} #{actor.user_id} ({payload.platform or 'unknown'})")
    return SuccessResponse(message="Push token registered")


@app.delete("/api/push-tokens", response_model=SuccessResponse, tags=["Accounts"])
async def unregister_push_token(
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_actor),
) -> SuccessResponse:
    result = await db.execute(
        select(PushToken).where(PushToken.user_id == actor.user_id, PushToken.user_type == actor.role)
    )
    row = result.scalar_one_or_none()
    if row is not None:
        row.is_active = False
        await db.commit()
    return SuccessResponse(message="Push token removed")


@app.post("/api/couriers/{courier_id}/block", response_model=SuccessResponse, tags=["Accounts"])
async def block_courier(
    courier_id: int,
    blocked: bool = Query(True),
    db: AsyncSession = Depends(get_db),
    container: ServiceContainer = Depends(get_container),
    actor: Actor = Depends(require_role(UserRole.ADMIN)),
) -> SuccessResponse:
    courier = await container.presence.block_courier(db, courier_id, blocked=blocked)
    return SuccessResponse(
        message=f"Courier #{courier.id} {'blocked' if blocked else 'unblocked'}"
    )


# =============================================================================
# LIVE CHANNEL
# =============================================================================

@app.websocket("/ws")
async def live_channel(websocket: WebSocket, token: Optional[str] = Query(None)):
    """
    Authenticated live channel. The first frame should be one of the join
    events; every frame is ``{"event": ..., "data": {...}}``.
    """
    container: ServiceContainer = websocket.app.state.container

    async with container.session_factory() as db:
        try:
            session = await container.presence.authenticate_token(db, token)
        except SessionInvalidError as e:
            await websocket.accept()
            await websocket.send_json({"event": "forceLogout", "data": {"reason": "SESSION_INVALID", "message": e.message}})
            await websocket.close(code=CLOSE_LOGGED_OUT)
            return
        user_id, role = session.user_id, session.user_role

    await websocket.accept()
    connection = WebSocketConnection(websocket, user_id=user_id, role=role, session_token=token)
    container.registry.add(connection)
    logger.info(f"🔌 {connection!r} connected")

    try:
        while not connection.closed:
            text = await websocket.receive_text()
            try:
                raw: Any = json.loads(text)
            except ValueError:
                await container.registry.send(connection, "error", {
                    "success": False,
                    "error": "malformed_message",
                    "detail": "Frame is not valid JSON",
                })
                continue
            await container.router.dispatch(container, connection, raw)
    except WebSocketDisconnect:
        logger.info(f"🔌 {connection!r} disconnected")
    finally:
        connection.closed = True
        async with container.session_factory() as db:
            await container.presence.disconnect(db, connection)


# =============================================================================
# ERROR HANDLERS
# =============================================================================

@app.exception_handler(DispatchError)
async def dispatch_exception_handler(request: Request, exc: DispatchError) -> JSONResponse:
    """Expected business failures."""
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all exception handler."""
    logger.exception(f"Unhandled exception: {exc}")

    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error="Internal Server Error",
            detail=str(exc) if settings.debug else "An unexpected error occurred",
        ).model_dump(exclude_none=True),
    )


# =============================================================================
# ENTRY POINT
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "courier_dispatch.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
    )
