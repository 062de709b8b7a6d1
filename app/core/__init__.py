"""
Core modules for the school bus tracking service

This package contains the tracking, ETA and speed analytics logic:
- geo: Haversine distance and coordinate validation
- location_cache: Redis-backed current location per bus
- tracking: GPS ingestion, location history and tracking stats
- geofencing: Geofence status and enter/exit alerts
- speed_monitor: Tiered speed violation detection
- eta: Arrival estimates and delay analysis
- analytics: Speed summaries and historical ETA prediction
"""

from .exceptions import TrackingError, InvalidArgument, NotFound

from .geo import distance_meters, validate_coordinates

from .location_cache import LocationCache

from .tracking import TrackingService, resolve_current_location

from .speed_monitor import SpeedMonitor, classify_speed

from .geofencing import GeofenceMonitor

from .eta import ETAEngine, traffic_factor

from .analytics import AnalyticsAggregator

__all__ = [
    # Errors
    "TrackingError",
    "InvalidArgument",
    "NotFound",

    # Geo
    "distance_meters",
    "validate_coordinates",

    # Cache
    "LocationCache",

    # Tracking
    "TrackingService",
    "resolve_current_location",

    # Speed
    "SpeedMonitor",
    "classify_speed",

    # Geofencing
    "GeofenceMonitor",

    # ETA and analytics
    "ETAEngine",
    "traffic_factor",
    "AnalyticsAggregator"
]
