from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import json
import logging
from typing import Any
from datetime import datetime, timezone

from app.config import settings, SpeedThresholds, ETAParameters, PredictionParameters
from app.database import create_db_and_tables, dispose_engine
from app.api import tracking, eta_speed
from app.core.exceptions import TrackingError
from app.core.location_cache import LocationCache
from app.core.tracking import TrackingService
from app.core.speed_monitor import SpeedMonitor
from app.core.geofencing import GeofenceMonitor
from app.core.eta import ETAEngine
from app.core.analytics import AnalyticsAggregator
from app.utils.notifications import OperationsWebhook
from app.utils.realtime import ConnectionManager

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s"
)
logger = logging.getLogger(__name__)

# Real-time rooms, events for the operations room are relayed to the webhook
manager = ConnectionManager(webhook=OperationsWebhook.from_settings(settings))


def build_services(app: FastAPI, cache: LocationCache, publisher) -> None:
    """Wire the tracking services onto app.state"""
    thresholds = SpeedThresholds.from_settings(settings)

    speed_monitor = SpeedMonitor(publisher, thresholds)
    geofence_monitor = GeofenceMonitor(cache, publisher)
    eta_engine = ETAEngine(cache, ETAParameters.from_settings(settings))

    app.state.location_cache = cache
    app.state.speed_monitor = speed_monitor
    app.state.geofence_monitor = geofence_monitor
    app.state.eta_engine = eta_engine
    app.state.tracking_service = TrackingService(
        cache,
        publisher,
        speed_monitor=speed_monitor,
        geofence_monitor=geofence_monitor,
        speed_limit=thresholds.speed_limit
    )
    app.state.analytics = AnalyticsAggregator(
        eta_engine,
        PredictionParameters.from_settings(settings)
    )


# Lifespan manager for startup/shutdown events
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    if settings.CREATE_TABLES_ON_STARTUP:
        await create_db_and_tables()

    cache = LocationCache.from_url(settings.REDIS_URL, settings.LOCATION_CACHE_TTL_SECONDS)
    build_services(app, cache, manager)
    logger.info("Application starting up")
    yield
    # Shutdown
    await manager.drain_relays()
    await cache.close()
    await dispose_engine()
    logger.info("Application shutting down")

app = FastAPI(
    title="School Bus Tracking API",
    description="GPS tracking, ETA and speed analytics for school bus fleets",
    version="1.0.0",
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(TrackingError)
async def tracking_error_handler(request: Request, exc: TrackingError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "message": exc.message,
            "errors": exc.errors
        }
    )


# Include routers
app.include_router(tracking.router, prefix="/api/tracking", tags=["Tracking"])
app.include_router(eta_speed.router, prefix="/api/eta-speed", tags=["ETA & Speed"])


@app.websocket("/ws/{session_id}")
async def websocket_endpoint(websocket: WebSocket, session_id: str):
    await manager.connect(websocket, session_id)
    try:
        while True:
            # Room subscriptions, anything else is answered as a heartbeat
            data = await websocket.receive_text()
            reply = await manager.handle_message(session_id, data)
            await websocket.send_text(json.dumps(reply))
    except WebSocketDisconnect:
        manager.disconnect(session_id)
    except Exception as e:
        logger.warning(f"WebSocket error for {session_id}: {e}")
        manager.disconnect(session_id)

@app.get("/")
async def root():
    return {
        "message": "School Bus Tracking API",
        "status": "active",
        "version": "1.0.0",
        "timestamp": datetime.now(timezone.utc).isoformat()
    }

# Health check endpoint
@app.get("/health")
async def health_check(request: Request) -> dict[str, Any]:
    cache = getattr(request.app.state, "location_cache", None)
    cache_health = await cache.health() if cache else {"connected": False}
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "active_connections": len(manager.active_connections),
        "cache": cache_health
    }

# Make manager available to other modules
app.state.websocket_manager = manager
