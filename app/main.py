"""
FastAPI Application Entry Point

Restaurant Aggregator Gateway
Receives Swiggy/Zomato order webhooks, turns them into restaurant orders and
kitchen tickets, and keeps the platforms informed of status changes.

Endpoints:
    - POST /api/aggregator/webhook/{platform}: Platform order webhook (HMAC verified)
    - /api/aggregator/config, /menu, /analytics: Admin integration management
    - POST /api/aggregator/orders/{id}/notify: Re-send a platform status callback
    - PATCH /api/orders/{id}/status, POST /api/orders/{id}/accept: Staff order actions
    - /api/kitchen/items: Kitchen display tickets
    - WS /ws: Real-time order/kitchen events
    - GET /health: System health check

Author: Khalil Bannouri
Version: 4.0.0
"""

import asyncio
import sys
import logging
from datetime import datetime
from typing import List, Optional
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Depends, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
import redis

# psycopg async needs the selector loop on Windows
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

# Internal imports
from app.core.config import get_settings, setup_logging
from app.core.security import Permission, Role, require_permission
from app.database import get_db, init_db, engine
from app.models import Platform
from app.schemas import (
    AnalyticsResponse,
    CallbackResponse,
    ConnectionTestResponse,
    ErrorResponse,
    HealthResponse,
    KitchenItemResponse,
    KitchenStatusUpdate,
    MenuOverlayItem,
    MenuOverridesSaved,
    MenuOverridesUpdate,
    MenuSyncResponse,
    NotifyRequest,
    OrderResponse,
    OrderStatusUpdate,
    PlatformConfigResponse,
    PlatformConfigUpdate,
    WebhookResponse,
)
from app.services import events, kitchen, orders
from app.services.aggregator.ingestion import IngestionOutcome, get_ingestion_service
from app.services.aggregator import analytics, config_store
from app.services.aggregator.callbacks import get_callback_dispatcher

settings = get_settings()
setup_logging()
logger = logging.getLogger(__name__)


# =============================================================================
# APPLICATION LIFECYCLE
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Prepare the database before serving; dispose the pool on shutdown."""
    logger.info("=" * 60)
    logger.info(f"🚀 Starting {settings.app_name}")
    logger.info(f"   Version: {settings.app_version}")
    logger.info(f"   Environment: {settings.env_mode.value}")
    logger.info(f"   Debug: {settings.debug}")
    logger.info("=" * 60)

    await init_db()
    logger.info("✅ Schema ready, order counter seeded")

    missing = settings.validate_production_config()
    if missing:
        logger.warning(f"⚠️ Missing production config: {missing}")

    logger.info("=" * 60)
    logger.info("✅ Accepting platform webhooks")
    logger.info("=" * 60)

    yield

    logger.info("Shutting down, closing database pool")
    await engine.dispose()


# =============================================================================
# APPLICATION INSTANCE
# =============================================================================

app = FastAPI(
    title=settings.app_name,
    description=(
        "Ingests delivery-platform order webhooks into the restaurant's order and "
        "kitchen pipeline and reports status changes back to the platforms."
    ),
    version=settings.app_version,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # kitchen display and admin UI are served from other origins
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def parse_platform(platform: str) -> Platform:
    """Path segment → Platform, or 400 for anything else."""
    try:
        return Platform(platform.lower())
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid platform")


async def load_order(db: AsyncSession, order_id: int):
    order = await orders.get_order(db, order_id)
    if order is None:
        raise HTTPException(status_code=404, detail=f"Order #{order_id} not found")
    return order


# =============================================================================
# ROOT & HEALTH ENDPOINTS
# =============================================================================

@app.get("/", tags=["Root"])
async def root() -> dict[str, str]:
    """API root with navigation links."""
    return {
        "message": f"🍛 Welcome to {settings.app_name}",
        "version": settings.app_version,
        "environment": settings.env_mode.value,
        "documentation": "/docs",
        "health": "/health",
        "events": "/ws",
    }


@app.get(
    "/health",
    response_model=HealthResponse,
    tags=["Health"],
    summary="System Health Check",
)
async def health_check(
    db: AsyncSession = Depends(get_db)
) -> HealthResponse:
    """Verify the database and the Celery broker are reachable."""

    # Check database
    db_status = "healthy"
    try:
        await db.execute(select(func.now()))
    except Exception as e:
        db_status = f"unhealthy: {str(e)}"
        logger.error(f"Database health check failed: {e}")

    # Check Redis
    redis_status = "healthy"
    try:
        r = redis.Redis.from_url(settings.redis_url, socket_timeout=2)
        r.ping()
        r.close()
    except Exception as e:
        redis_status = f"unhealthy: {str(e)}"
        logger.error(f"Redis health check failed: {e}")

    overall = "operational" if all(
        s == "healthy" for s in [db_status, redis_status]
    ) else "degraded"

    return HealthResponse(
        status=overall,
        database=db_status,
        redis=redis_status,
        timestamp=datetime.now(),
    )


# =============================================================================
# REAL-TIME EVENTS
# =============================================================================

@app.websocket("/ws")
async def event_stream(websocket: WebSocket) -> None:
    """
    Subscribe to order and kitchen events.

    Clients only listen; anything they send is ignored.
    """
    manager = events.get_event_manager()
    await manager.connect(websocket)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        manager.disconnect(websocket)


# =============================================================================
# PLATFORM WEBHOOK ENDPOINTS
# =============================================================================

@app.post(
    "/api/aggregator/webhook/{platform}",
    response_model=WebhookResponse,
    responses={
        401: {"model": WebhookResponse},
        403: {"model": WebhookResponse},
        500: {"model": WebhookResponse},
    },
    tags=["Platform Webhooks"],
    summary="Delivery Platform Order Webhook",
)
async def platform_webhook(
    platform: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    """
    Receive a new order from Swiggy or Zomato.

    The raw body is read untouched because the HMAC signature covers the
    exact bytes the platform sent. Redeliveries of an order that already
    exists are acknowledged with 200 and the existing order id.

    Configure this URL in the platform partner dashboard:
        https://your-domain.com/api/aggregator/webhook/swiggy
    """
    platform_enum = parse_platform(platform)

    # Get raw body for signature verification
    body = await request.body()

    result = await get_ingestion_service().ingest(db, platform_enum, body, request.headers)

    if result.outcome == IngestionOutcome.CREATED:
        return WebhookResponse(
            message="Order received",
            order_id=result.order_id,
            order_number=result.order_number,
        )

    if result.outcome == IngestionOutcome.DUPLICATE:
        return WebhookResponse(
            message="Order already exists",
            order_id=result.order_id,
            order_number=result.order_number,
        )

    if result.outcome == IngestionOutcome.DISABLED:
        return JSONResponse(
            status_code=403,
            content=WebhookResponse(
                message=f"{platform_enum.value.capitalize()} integration is disabled"
            ).model_dump(),
        )

    if result.outcome == IngestionOutcome.UNAUTHORIZED:
        return JSONResponse(
            status_code=401,
            content=WebhookResponse(message="Invalid webhook signature").model_dump(),
        )

    # Details stay in the logs; the platform only learns that it failed
    return JSONResponse(
        status_code=500,
        content=WebhookResponse(message="Webhook processing failed").model_dump(),
    )


# =============================================================================
# AGGREGATOR CONFIG ENDPOINTS
# =============================================================================

@app.get(
    "/api/aggregator/config",
    response_model=List[PlatformConfigResponse],
    tags=["Aggregator Config"],
)
async def list_platform_configs(
    db: AsyncSession = Depends(get_db),
    role: Role = Depends(require_permission(Permission.MANAGE_AGGREGATORS)),
) -> List[PlatformConfigResponse]:
    """All saved platform configs, credentials masked."""
    configs = await config_store.list_configs(db)
    return [config_store.mask_config(c) for c in configs]


@app.get(
    "/api/aggregator/config/{platform}",
    response_model=PlatformConfigResponse,
    tags=["Aggregator Config"],
)
async def get_platform_config(
    platform: str,
    db: AsyncSession = Depends(get_db),
    role: Role = Depends(require_permission(Permission.MANAGE_AGGREGATORS)),
) -> PlatformConfigResponse:
    """One platform's config; a disabled default if it was never saved."""
    config = await config_store.get_config(db, parse_platform(platform))
    return config_store.mask_config(config)


@app.put(
    "/api/aggregator/config/{platform}",
    response_model=PlatformConfigResponse,
    tags=["Aggregator Config"],
)
async def update_platform_config(
    platform: str,
    update: PlatformConfigUpdate,
    db: AsyncSession = Depends(get_db),
    role: Role = Depends(require_permission(Permission.MANAGE_AGGREGATORS)),
) -> PlatformConfigResponse:
    """Create or partially update a platform config."""
    config = await config_store.upsert_config(db, parse_platform(platform), update)
    return config_store.mask_config(config)


@app.post(
    "/api/aggregator/config/{platform}/test",
    response_model=ConnectionTestResponse,
    tags=["Aggregator Config"],
)
async def test_platform_connection(
    platform: str,
    db: AsyncSession = Depends(get_db),
    role: Role = Depends(require_permission(Permission.MANAGE_AGGREGATORS)),
) -> ConnectionTestResponse:
    """Check that the credentials needed for status callbacks are present."""
    return await config_store.test_connection(db, parse_platform(platform))


# =============================================================================
# AGGREGATOR MENU ENDPOINTS
# =============================================================================

@app.get(
    "/api/aggregator/menu/{platform}",
    response_model=List[MenuOverlayItem],
    tags=["Aggregator Menu"],
)
async def get_platform_menu(
    platform: str,
    db: AsyncSession = Depends(get_db),
    role: Role = Depends(require_permission(Permission.MANAGE_AGGREGATORS)),
) -> List[MenuOverlayItem]:
    """Menu with the platform's price and availability overrides applied."""
    return await config_store.get_menu_with_overrides(db, parse_platform(platform))


@app.put(
    "/api/aggregator/menu/{platform}/overrides",
    response_model=MenuOverridesSaved,
    responses={400: {"model": ErrorResponse}},
    tags=["Aggregator Menu"],
)
async def save_platform_menu_overrides(
    platform: str,
    body: MenuOverridesUpdate,
    db: AsyncSession = Depends(get_db),
    role: Role = Depends(require_permission(Permission.MANAGE_AGGREGATORS)),
) -> MenuOverridesSaved:
    """Replace the platform's override list."""
    try:
        count = await config_store.replace_menu_overrides(db, parse_platform(platform), body.overrides)
    except config_store.UnknownMenuItems as e:
        raise HTTPException(status_code=400, detail=str(e))
    return MenuOverridesSaved(message="Overrides saved", count=count)


@app.post(
    "/api/aggregator/menu/{platform}/sync",
    response_model=MenuSyncResponse,
    responses={400: {"model": ErrorResponse}},
    tags=["Aggregator Menu"],
)
async def sync_platform_menu(
    platform: str,
    db: AsyncSession = Depends(get_db),
    role: Role = Depends(require_permission(Permission.MANAGE_AGGREGATORS)),
) -> MenuSyncResponse:
    """Push the menu to the platform."""
    platform_enum = parse_platform(platform)
    try:
        synced_at = await config_store.sync_menu(db, platform_enum)
    except config_store.PlatformNotEnabled as e:
        raise HTTPException(status_code=400, detail=str(e))
    return MenuSyncResponse(
        message=f"Menu sync initiated for {platform_enum.value}",
        last_sync_at=synced_at,
    )


# =============================================================================
# AGGREGATOR ANALYTICS & CALLBACKS
# =============================================================================

@app.get(
    "/api/aggregator/analytics",
    response_model=AnalyticsResponse,
    tags=["Aggregator Analytics"],
)
async def get_aggregator_analytics(
    date_from: Optional[datetime] = Query(None, alias="from"),
    date_to: Optional[datetime] = Query(None, alias="to"),
    db: AsyncSession = Depends(get_db),
    role: Role = Depends(require_permission(Permission.VIEW_AGGREGATOR_STATS)),
) -> AnalyticsResponse:
    """Per-platform order totals and daily trend for online orders."""
    return await analytics.get_platform_analytics(db, date_from, date_to)


@app.post(
    "/api/aggregator/orders/{order_id}/notify",
    response_model=CallbackResponse,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    tags=["Aggregator Callbacks"],
)
async def notify_platform_status(
    order_id: int,
    body: Optional[NotifyRequest] = None,
    db: AsyncSession = Depends(get_db),
    role: Role = Depends(require_permission(Permission.ACCEPT_ONLINE_ORDERS)),
) -> CallbackResponse:
    """Schedule a status callback for the order's current status."""
    order = await load_order(db, order_id)
    if order.platform is None or not order.platform_order_id:
        raise HTTPException(status_code=400, detail="Not a platform order")

    result = await get_callback_dispatcher().notify(
        db,
        order.platform,
        order.platform_order_id,
        order.status,
        body.extra_data if body else None,
    )
    return CallbackResponse(**result.to_dict())


# =============================================================================
# ORDER ENDPOINTS
# =============================================================================

@app.patch(
    "/api/orders/{order_id}/status",
    response_model=OrderResponse,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    tags=["Orders"],
)
async def update_order_status(
    order_id: int,
    body: OrderStatusUpdate,
    db: AsyncSession = Depends(get_db),
    role: Role = Depends(require_permission(Permission.ACCEPT_ONLINE_ORDERS)),
) -> OrderResponse:
    """Move an order through its lifecycle; platform orders notify the platform."""
    order = await load_order(db, order_id)
    try:
        order = await orders.update_order_status(db, order, body.status, body.extra_data)
    except orders.InvalidStatusTransition as e:
        raise HTTPException(status_code=400, detail=str(e))
    return OrderResponse.model_validate(order)


@app.post(
    "/api/orders/{order_id}/accept",
    response_model=OrderResponse,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    tags=["Orders"],
)
async def accept_online_order(
    order_id: int,
    db: AsyncSession = Depends(get_db),
    role: Role = Depends(require_permission(Permission.ACCEPT_ONLINE_ORDERS)),
) -> OrderResponse:
    """Accept a pending platform order (→ preparing)."""
    order = await load_order(db, order_id)
    try:
        order = await orders.accept_online_order(db, order)
    except (orders.NotAnOnlineOrder, orders.InvalidStatusTransition) as e:
        raise HTTPException(status_code=400, detail=str(e))
    return OrderResponse.model_validate(order)


# =============================================================================
# KITCHEN ENDPOINTS
# =============================================================================

@app.get(
    "/api/kitchen/items",
    response_model=List[KitchenItemResponse],
    tags=["Kitchen"],
)
async def list_kitchen_items(
    db: AsyncSession = Depends(get_db),
    role: Role = Depends(require_permission(Permission.UPDATE_KITCHEN_STATUS)),
) -> List[KitchenItemResponse]:
    """Tickets still queued or cooking."""
    items = await kitchen.list_active_kitchen_items(db)
    return [KitchenItemResponse.model_validate(item) for item in items]


@app.patch(
    "/api/kitchen/items/{item_id}/status",
    response_model=KitchenItemResponse,
    responses={404: {"model": ErrorResponse}},
    tags=["Kitchen"],
)
async def update_kitchen_item(
    item_id: int,
    body: KitchenStatusUpdate,
    db: AsyncSession = Depends(get_db),
    role: Role = Depends(require_permission(Permission.UPDATE_KITCHEN_STATUS)),
) -> KitchenItemResponse:
    """Update a ticket; the order becomes ready when its last ticket is ready."""
    result = await kitchen.update_kitchen_item_status(db, item_id, body.status)
    if result is None:
        raise HTTPException(status_code=404, detail=f"Kitchen item #{item_id} not found")
    return KitchenItemResponse.model_validate(result.item)


# =============================================================================
# ERROR HANDLERS
# =============================================================================

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
