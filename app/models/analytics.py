from sqlmodel import SQLModel
from datetime import datetime
from typing import Optional, List, Dict, Any

from app.models.tracking import Coordinates, SpeedViolationRead


class SpeedAnalysis(SQLModel):
    average_speed: float = 0
    max_speed: float = 0
    min_speed: float = 0
    speed_violations: int = 0
    total_distance: float = 0  # km


class AnalyticsPeriod(SQLModel):
    start: datetime
    end: datetime


class SpeedAnalytics(SQLModel):
    bus_id: str
    period: AnalyticsPeriod
    average_speed: float = 0
    max_speed: float = 0
    min_speed: float = 0
    speed_violations: int = 0
    total_distance: float = 0  # km
    violations: List[SpeedViolationRead] = []


class FleetSpeedStats(SQLModel):
    total_buses: int = 0
    average_fleet_speed: float = 0
    total_violations: int = 0
    critical_violations: int = 0
    most_violations_bus: Optional[str] = None


class ETACalculation(SQLModel):
    bus_id: str
    current_location: Coordinates
    next_stop_id: Optional[str] = None
    estimated_arrival: Optional[datetime] = None
    distance_to_stop: Optional[int] = None       # meters
    estimated_duration: Optional[float] = None   # minutes
    average_speed: Optional[float] = None        # km/h
    traffic_factor: Optional[float] = None


class StopSummary(SQLModel):
    id: str
    name: str
    latitude: float
    longitude: float


class ETAAnalysis(SQLModel):
    bus_id: str
    route_id: str
    scheduled_arrival: datetime
    estimated_arrival: datetime
    delay_minutes: int
    is_delayed: bool
    next_stop: StopSummary
    recommendations: List[str] = []


class ETAAlert(SQLModel):
    bus: Dict[str, Any]
    eta: ETAAnalysis
    severity: str


class ETAPrediction(SQLModel):
    predicted_arrival: datetime
    confidence: float
    based_on_trips: int
    average_delay: float  # minutes
