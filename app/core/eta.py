import logging
from datetime import datetime, time, timedelta, timezone
from typing import Any, Callable, Dict, Optional, Tuple
from zoneinfo import ZoneInfo

from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select, desc, and_

from app.config import ETAParameters
from app.core.exceptions import NotFound, TrackingError
from app.core.geo import distance_meters
from app.core.location_cache import LocationCache
from app.core.tracking import load_active_route, resolve_current_location
from app.models.analytics import ETAAlert, ETAAnalysis, ETACalculation, StopSummary
from app.models.fleet import Bus, Driver, RouteStopRead, RouteWithStops
from app.models.tracking import Coordinates, GPSTracking
from app.utils.timeutils import utcnow

logger = logging.getLogger(__name__)

DELAY_RECOMMENDATIONS = [
    "Consider taking alternative route to avoid traffic",
    "Notify parents about delay",
    "Contact school about potential late arrival",
]
SEVERE_DELAY_RECOMMENDATION = "Consider skipping non-essential stops"


def traffic_factor(hour: int) -> float:
    """Slowdown applied to average speed for a local hour of the day"""
    # Rush hours
    if 7 <= hour <= 9 or 16 <= hour <= 18:
        return 1.3
    # Lunch hour
    if 11 <= hour <= 13:
        return 1.1
    return 1.0


def parse_clock_time(value: Optional[str]) -> Optional[time]:
    """Parse an "HH:MM" schedule string; None when missing or malformed"""
    if not value:
        return None
    try:
        hours, minutes = value.strip().split(":")[:2]
        return time(int(hours), int(minutes))
    except ValueError:
        return None


class ETAEngine:
    """
    Estimates arrival at a bus's next stop from its current location,
    its recent average speed and a time-of-day traffic factor.

    The next stop is always the first active stop of the first active
    route; completed stops are not tracked.
    """

    def __init__(
        self,
        cache: Optional[LocationCache] = None,
        params: Optional[ETAParameters] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.cache = cache
        self.params = params or ETAParameters()
        self.clock = clock
        self.timezone = ZoneInfo(self.params.traffic_timezone)

    def traffic_factor_at(self, moment: datetime) -> float:
        return traffic_factor(moment.astimezone(self.timezone).hour)

    async def get_average_speed(
        self,
        db: AsyncSession,
        bus_id: str,
        minutes_back: Optional[int] = None
    ) -> Optional[float]:
        """Mean of the most recent non-null speed samples in the trailing window"""
        minutes_back = minutes_back or self.params.speed_window_minutes
        since = self.clock() - timedelta(minutes=minutes_back)

        result = await db.execute(
            select(GPSTracking.speed)
            .where(and_(
                GPSTracking.bus_id == bus_id,
                GPSTracking.timestamp >= since,
                GPSTracking.speed != None
            ))
            .order_by(desc(GPSTracking.timestamp))
            .limit(self.params.speed_sample_limit)
        )
        speeds = [s for s in result.scalars().all() if s is not None]

        if not speeds:
            return None
        return sum(speeds) / len(speeds)

    async def _estimate(
        self,
        db: AsyncSession,
        bus_id: str
    ) -> Tuple[ETACalculation, RouteWithStops, Optional[RouteStopRead]]:
        location = await resolve_current_location(db, self.cache, bus_id)
        if location is None:
            raise NotFound("No current location data available for this bus")

        route = await load_active_route(db, bus_id)
        current = Coordinates(latitude=location["latitude"], longitude=location["longitude"])

        if not route.stops:
            return ETACalculation(bus_id=bus_id, current_location=current), route, None

        next_stop = route.stops[0]
        distance = distance_meters(
            current.latitude, current.longitude,
            next_stop.latitude, next_stop.longitude
        )

        average_speed = await self.get_average_speed(db, bus_id)
        effective_speed = max(average_speed or self.params.default_speed_kmh, self.params.minimum_speed_kmh)

        now = self.clock()
        factor = self.traffic_factor_at(now)
        adjusted_speed = effective_speed / factor

        duration_minutes = (distance / 1000 / adjusted_speed) * 60
        estimated_arrival = now + timedelta(minutes=duration_minutes)

        calculation = ETACalculation(
            bus_id=bus_id,
            current_location=current,
            next_stop_id=next_stop.id,
            estimated_arrival=estimated_arrival,
            distance_to_stop=round(distance),
            estimated_duration=round(duration_minutes, 1),
            average_speed=round(effective_speed, 2),
            traffic_factor=round(factor, 2)
        )
        return calculation, route, next_stop

    async def calculate_eta(self, db: AsyncSession, bus_id: str) -> ETACalculation:
        """
        ETA to the bus's next stop.
        A route without stops yields only the bus and its current location.
        """
        calculation, _, _ = await self._estimate(db, bus_id)
        return calculation

    def scheduled_arrival(self, pickup_time: Optional[str], estimated_arrival: datetime) -> Optional[datetime]:
        """
        Anchor an "HH:MM" pickup time to the calendar day of the estimate in
        the traffic timezone. Trips crossing midnight are not inferred.
        """
        clock_time = parse_clock_time(pickup_time)
        if clock_time is None:
            return None

        local_day = estimated_arrival.astimezone(self.timezone).date()
        scheduled = datetime.combine(local_day, clock_time, tzinfo=self.timezone)
        return scheduled.astimezone(timezone.utc)

    async def analyze_eta(self, db: AsyncSession, bus_id: str) -> Optional[ETAAnalysis]:
        calculation, route, next_stop = await self._estimate(db, bus_id)
        if next_stop is None or calculation.estimated_arrival is None:
            return None

        scheduled = self.scheduled_arrival(next_stop.pickup_time, calculation.estimated_arrival)
        if scheduled is None:
            return None

        delay_minutes = round((calculation.estimated_arrival - scheduled).total_seconds() / 60)
        is_delayed = delay_minutes > self.params.delay_threshold_minutes

        recommendations = []
        if is_delayed:
            recommendations = list(DELAY_RECOMMENDATIONS)
            if delay_minutes > self.params.severe_delay_minutes:
                recommendations.append(SEVERE_DELAY_RECOMMENDATION)

        return ETAAnalysis(
            bus_id=bus_id,
            route_id=route.id,
            scheduled_arrival=scheduled,
            estimated_arrival=calculation.estimated_arrival,
            delay_minutes=delay_minutes,
            is_delayed=is_delayed,
            next_stop=StopSummary(
                id=next_stop.id,
                name=next_stop.name,
                latitude=next_stop.latitude,
                longitude=next_stop.longitude
            ),
            recommendations=recommendations
        )

    async def eta_alerts(self, db: AsyncSession, school_id: Optional[str] = None) -> Dict[str, Any]:
        """Delayed buses, most delayed first. Buses whose ETA cannot be computed are skipped."""
        conditions = [Bus.is_active == True]
        if school_id:
            conditions.append(Bus.school_id == school_id)

        result = await db.execute(select(Bus).where(and_(*conditions)))
        buses = result.scalars().all()

        alerts = []
        for bus in buses:
            try:
                analysis = await self.analyze_eta(db, bus.id)
            except TrackingError as e:
                logger.warning(f"Failed to calculate ETA for bus {bus.id}: {e.message}")
                continue

            if analysis is None or not analysis.is_delayed:
                continue

            driver = await db.get(Driver, bus.driver_id) if bus.driver_id else None
            alerts.append(ETAAlert(
                bus={
                    "id": bus.id,
                    "plate_number": bus.plate_number,
                    "school_id": bus.school_id,
                    "driver": {
                        "id": driver.id,
                        "first_name": driver.first_name,
                        "last_name": driver.last_name
                    } if driver else None
                },
                eta=analysis,
                severity="HIGH" if analysis.delay_minutes > self.params.severe_delay_minutes else "MEDIUM"
            ))

        alerts.sort(key=lambda alert: alert.eta.delay_minutes, reverse=True)

        return {
            "total_alerts": len(alerts),
            "alerts": alerts,
            "summary": {
                "high_severity": len([a for a in alerts if a.severity == "HIGH"]),
                "medium_severity": len([a for a in alerts if a.severity == "MEDIUM"])
            }
        }
