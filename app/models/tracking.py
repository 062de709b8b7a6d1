from sqlalchemy import Index
from sqlmodel import SQLModel, Field, Column, DateTime
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any
from enum import Enum

from app.models.fleet import new_id


class SpeedSeverity(str, Enum):
    WARNING = "WARNING"
    VIOLATION = "VIOLATION"
    CRITICAL = "CRITICAL"


class Coordinates(SQLModel):
    latitude: float
    longitude: float


class GPSTrackingBase(SQLModel):
    bus_id: str
    latitude: float
    longitude: float
    speed: Optional[float] = None      # km/h
    heading: Optional[float] = None    # degrees
    accuracy: Optional[float] = None   # meters
    altitude: Optional[float] = None   # meters
    trip_id: Optional[str] = None


class GPSTracking(GPSTrackingBase, table=True):
    __table_args__ = (Index("ix_gpstracking_bus_time", "bus_id", "timestamp"),)

    id: str = Field(default_factory=new_id, primary_key=True)
    bus_id: str = Field(foreign_key="bus.id", index=True)
    trip_id: Optional[str] = Field(default=None, foreign_key="trip.id")
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True), index=True, nullable=False)
    )
    is_valid: bool = True


class GPSTrackingCreate(GPSTrackingBase):
    # Coordinate ranges are enforced by the tracking service, not here,
    # so callers get field-level InvalidArgument errors.
    timestamp: Optional[datetime] = None


class GPSTrackingRead(GPSTrackingBase):
    id: str
    timestamp: datetime
    is_valid: bool


class BulkItemResult(SQLModel):
    success: bool
    bus_id: Optional[str] = None
    data: Optional[GPSTrackingRead] = None
    error: Optional[str] = None


class Geofence(SQLModel, table=True):

    id: str = Field(default_factory=new_id, primary_key=True)
    bus_id: str = Field(foreign_key="bus.id", index=True)
    name: str
    latitude: float
    longitude: float
    radius: float  # meters
    is_active: bool = True
    alert_on_enter: bool = True
    alert_on_exit: bool = True
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True))
    )


class GeofenceRead(SQLModel):
    id: str
    bus_id: str
    name: str
    latitude: float
    longitude: float
    radius: float
    is_active: bool
    alert_on_enter: bool
    alert_on_exit: bool


class GeofenceStatus(SQLModel):
    inside: bool
    geofence: Optional[GeofenceRead] = None
    distance: Optional[float] = None  # meters


class SpeedViolationBase(SQLModel):
    bus_id: str
    driver_id: Optional[str] = None
    current_speed: float
    speed_limit: float
    latitude: float
    longitude: float
    severity: SpeedSeverity


class SpeedViolation(SpeedViolationBase, table=True):

    id: str = Field(default_factory=new_id, primary_key=True)
    bus_id: str = Field(foreign_key="bus.id", index=True)
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True), index=True, nullable=False)
    )


class SpeedViolationRead(SpeedViolationBase):
    id: str
    timestamp: datetime


class SpeedReading(SQLModel):
    bus_id: str
    speed: float
    latitude: float
    longitude: float


class SpeedMonitorRequest(SQLModel):
    current_speed: float
    latitude: float
    longitude: float


class SpeedMonitorResult(SQLModel):
    bus_id: str
    speed: float
    location: Coordinates
    success: bool
    violation: Optional[SpeedViolationRead] = None
    error: Optional[str] = None


class LocationHistoryPage(SQLModel):
    locations: List[GPSTrackingRead]
    total: int
    page: int
    limit: int
    total_pages: int


class TrackingStats(SQLModel):
    total_records: int
    average_speed: float
    total_distance: float  # km
    last_update: Optional[datetime] = None
    is_active: bool


class DashboardEntry(SQLModel):
    id: str
    plate_number: str
    school_id: str
    location: Optional[Dict[str, Any]] = None
    has_location: bool
