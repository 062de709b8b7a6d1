from typing import Dict, Optional


class TrackingError(Exception):
    """Base class for errors surfaced to API callers"""
    status_code = 500

    def __init__(self, message: str, errors: Optional[Dict[str, str]] = None):
        super().__init__(message)
        self.message = message
        self.errors = errors or {}


class InvalidArgument(TrackingError):
    """Malformed coordinates or missing required fields"""
    status_code = 400


class NotFound(TrackingError):
    """Unknown or inactive bus, no location data, no active route"""
    status_code = 404
