from typing import Annotated

from fastapi import Depends, Request

from app.core.analytics import AnalyticsAggregator
from app.core.eta import ETAEngine
from app.core.geofencing import GeofenceMonitor
from app.core.speed_monitor import SpeedMonitor
from app.core.tracking import TrackingService

# Services are built once in the application lifespan and kept on app.state


def get_tracking_service(request: Request) -> TrackingService:
    return request.app.state.tracking_service


def get_speed_monitor(request: Request) -> SpeedMonitor:
    return request.app.state.speed_monitor


def get_geofence_monitor(request: Request) -> GeofenceMonitor:
    return request.app.state.geofence_monitor


def get_eta_engine(request: Request) -> ETAEngine:
    return request.app.state.eta_engine


def get_analytics(request: Request) -> AnalyticsAggregator:
    return request.app.state.analytics


TrackingServiceDep = Annotated[TrackingService, Depends(get_tracking_service)]
SpeedMonitorDep = Annotated[SpeedMonitor, Depends(get_speed_monitor)]
GeofenceMonitorDep = Annotated[GeofenceMonitor, Depends(get_geofence_monitor)]
ETAEngineDep = Annotated[ETAEngine, Depends(get_eta_engine)]
AnalyticsDep = Annotated[AnalyticsAggregator, Depends(get_analytics)]
