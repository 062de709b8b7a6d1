"""
Utility modules for the school bus tracking service

This package contains utility functions and services:
- realtime: WebSocket room manager used to publish tracking events
- notifications: Operations webhook relay
- timeutils: UTC timestamp helpers
"""

from .notifications import OperationsWebhook

from .realtime import (
    ConnectionManager,
    OPERATIONS_ROOM,
    parents_room,
    school_room,
    driver_room,
    safe_publish
)

from .timeutils import utcnow, as_utc, parse_timestamp

__all__ = [
    # Notification services
    "OperationsWebhook",

    # Real-time rooms
    "ConnectionManager",
    "OPERATIONS_ROOM",
    "parents_room",
    "school_room",
    "driver_room",
    "safe_publish",

    # Time helpers
    "utcnow",
    "as_utc",
    "parse_timestamp"
]
