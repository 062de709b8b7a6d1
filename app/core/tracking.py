import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence

from pydantic import ValidationError
from sqlalchemy import delete, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select, desc, and_

from app.core.exceptions import InvalidArgument, NotFound, TrackingError
from app.core.geo import validate_coordinates
from app.core.location_cache import LocationCache
from app.models.fleet import Bus, Driver, Route, RouteStop, RouteStopRead, RouteWithStops
from app.models.tracking import (
    BulkItemResult, Coordinates, DashboardEntry, GPSTracking,
    GPSTrackingCreate, GPSTrackingRead, LocationHistoryPage, TrackingStats
)
from app.models.analytics import SpeedAnalysis
from app.utils.realtime import (
    OPERATIONS_ROOM, driver_room, parents_room, school_room, safe_publish
)
from app.utils.timeutils import as_utc, utcnow

logger = logging.getLogger(__name__)

SPEED_LIMIT_KMH = 50.0
ACTIVE_WINDOW_MINUTES = 30


def trapezoid_distance_km(samples: Sequence[Any]) -> float:
    """
    Approximate distance travelled from (timestamp, speed) samples ordered
    by time: the mean of consecutive speeds times the elapsed hours.
    Pairs where either speed is missing are skipped.
    """
    total = 0.0
    for prev, curr in zip(samples, samples[1:]):
        if prev.speed is None or curr.speed is None:
            continue
        hours = (as_utc(curr.timestamp) - as_utc(prev.timestamp)).total_seconds() / 3600
        total += ((prev.speed + curr.speed) / 2) * hours
    return total


def build_location(tracking: Any, bus: Optional[Bus], driver: Optional[Driver]) -> Dict[str, Any]:
    """Cache/event payload for a position: report fields plus bus display data"""
    timestamp = as_utc(tracking.timestamp)
    return {
        "bus_id": tracking.bus_id,
        "latitude": tracking.latitude,
        "longitude": tracking.longitude,
        "speed": tracking.speed,
        "heading": tracking.heading,
        "accuracy": tracking.accuracy,
        "altitude": tracking.altitude,
        "trip_id": tracking.trip_id,
        "timestamp": timestamp.isoformat() if timestamp else None,
        "bus": {
            "id": bus.id,
            "plate_number": bus.plate_number,
            "model": bus.model,
            "driver": {
                "id": driver.id,
                "first_name": driver.first_name,
                "last_name": driver.last_name
            } if driver else None
        } if bus else None
    }


async def latest_tracking(db: AsyncSession, bus_id: str) -> Optional[GPSTracking]:
    result = await db.execute(
        select(GPSTracking)
        .where(and_(GPSTracking.bus_id == bus_id, GPSTracking.is_valid == True))
        .order_by(desc(GPSTracking.timestamp))
        .limit(1)
    )
    return result.scalars().first()


async def resolve_current_location(
    db: AsyncSession,
    cache: Optional[LocationCache],
    bus_id: str
) -> Optional[Dict[str, Any]]:
    """
    Current location of a bus, cache first.
    A cache miss falls back to the newest log row and repopulates the cache.
    Returns None when the bus has never reported.
    """
    if cache is not None:
        cached = await cache.get_current(bus_id)
        if cached:
            return {**cached, "source": "cache"}

    tracking = await latest_tracking(db, bus_id)
    if tracking is None:
        return None

    bus = await db.get(Bus, bus_id)
    driver = await db.get(Driver, bus.driver_id) if bus and bus.driver_id else None
    location = build_location(tracking, bus, driver)

    if cache is not None:
        await cache.set_current(bus_id, location)

    return {**location, "source": "database"}


async def load_active_route(db: AsyncSession, bus_id: str) -> RouteWithStops:
    """First active route of the bus with its active stops in sequence order"""
    route_result = await db.execute(
        select(Route)
        .where(and_(Route.bus_id == bus_id, Route.is_active == True))
        .order_by(Route.created_at, Route.id)
    )
    route = route_result.scalars().first()
    if route is None:
        raise NotFound("No active route found for this bus")

    stops_result = await db.execute(
        select(RouteStop)
        .where(and_(RouteStop.route_id == route.id, RouteStop.is_active == True))
        .order_by(RouteStop.sequence)
    )
    stops = [RouteStopRead.model_validate(s) for s in stops_result.scalars().all()]

    return RouteWithStops(
        id=route.id,
        name=route.name,
        bus_id=route.bus_id,
        is_active=route.is_active,
        stops=stops
    )


class TrackingService:
    """Ingests GPS reports and answers location and history queries"""

    def __init__(
        self,
        cache: Optional[LocationCache] = None,
        publisher=None,
        speed_monitor=None,
        geofence_monitor=None,
        speed_limit: float = SPEED_LIMIT_KMH,
        clock: Callable[[], datetime] = utcnow
    ):
        self.cache = cache
        self.publisher = publisher
        self.speed_monitor = speed_monitor
        self.geofence_monitor = geofence_monitor
        self.speed_limit = speed_limit
        self.clock = clock

    async def record(self, db: AsyncSession, report: GPSTrackingCreate) -> GPSTrackingRead:
        """
        Validate and persist one GPS report.

        Persistence errors propagate. The cache write, geofence alerts,
        speed check and location events that follow are best-effort.
        """
        errors = validate_coordinates(report.latitude, report.longitude)
        if errors:
            raise InvalidArgument("Invalid coordinates", errors)

        bus = await db.get(Bus, report.bus_id)
        if bus is None or not bus.is_active:
            raise NotFound("Bus not found or inactive")

        driver = await db.get(Driver, bus.driver_id) if bus.driver_id else None
        previous = await resolve_current_location(db, self.cache, bus.id)
        timestamp = as_utc(report.timestamp) or self.clock()

        tracking = GPSTracking(
            **report.model_dump(exclude={"timestamp"}),
            timestamp=timestamp,
            is_valid=True
        )
        db.add(tracking)
        await db.commit()
        await db.refresh(tracking)

        # A rollback below expires every loaded instance
        recorded = GPSTrackingRead.model_validate(tracking)
        bus_id, school_id = bus.id, bus.school_id
        driver_id = driver.id if driver else None
        location = build_location(tracking, bus, driver)

        if self.cache is not None:
            await self.cache.set_current(bus_id, location)

        if previous and self.geofence_monitor is not None:
            try:
                await self.geofence_monitor.evaluate_transition(db, bus, previous, location)
            except SQLAlchemyError as e:
                await db.rollback()
                logger.warning(f"Geofence check failed for bus {bus_id} (non-critical): {e}")

        if report.speed is not None and self.speed_monitor is not None:
            try:
                await self.speed_monitor.monitor(
                    db,
                    bus_id,
                    report.speed,
                    Coordinates(latitude=report.latitude, longitude=report.longitude),
                    timestamp
                )
            except (TrackingError, SQLAlchemyError) as e:
                await db.rollback()
                logger.warning(f"Speed check failed for bus {bus_id} (non-critical): {e}")

        await safe_publish(self.publisher, parents_room(bus_id), "bus_location", location)
        await safe_publish(self.publisher, school_room(school_id), "bus_location", location)
        await safe_publish(self.publisher, OPERATIONS_ROOM, "bus_location", location)
        if driver_id:
            await safe_publish(self.publisher, driver_room(driver_id), "bus_location", location)

        logger.debug(f"Recorded location for bus {bus_id} at {timestamp.isoformat()}")
        return recorded

    async def bulk_record(self, db: AsyncSession, items: List[Any]) -> List[BulkItemResult]:
        """
        Record each item independently, in input order.
        Items may be raw mappings; each one is validated on its own.
        """
        results: List[BulkItemResult] = []

        for item in items:
            raw_bus_id = item.get("bus_id") if isinstance(item, dict) else getattr(item, "bus_id", None)
            bus_id = str(raw_bus_id) if raw_bus_id is not None else None
            try:
                report = item if isinstance(item, GPSTrackingCreate) else GPSTrackingCreate.model_validate(item)
                tracking = await self.record(db, report)
                results.append(BulkItemResult(
                    success=True,
                    bus_id=tracking.bus_id,
                    data=tracking
                ))
            except ValidationError as e:
                results.append(BulkItemResult(success=False, bus_id=bus_id, error=str(e)))
            except TrackingError as e:
                results.append(BulkItemResult(success=False, bus_id=bus_id, error=e.message))
            except SQLAlchemyError as e:
                await db.rollback()
                logger.error(f"Failed to persist bulk location for bus {bus_id}: {e}")
                results.append(BulkItemResult(success=False, bus_id=bus_id, error="Failed to persist location"))

        succeeded = sum(1 for r in results if r.success)
        logger.info(f"Bulk location upload: {succeeded}/{len(results)} recorded")
        return results

    async def get_current_location(self, db: AsyncSession, bus_id: str) -> Dict[str, Any]:
        location = await resolve_current_location(db, self.cache, bus_id)
        if location is None:
            raise NotFound("No location data found for this bus")
        return location

    async def get_location_history(
        self,
        db: AsyncSession,
        bus_id: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        trip_id: Optional[str] = None,
        page: int = 1,
        limit: int = 100
    ) -> LocationHistoryPage:
        start_date, end_date = as_utc(start_date), as_utc(end_date)
        conditions = [GPSTracking.is_valid == True]
        if bus_id:
            conditions.append(GPSTracking.bus_id == bus_id)
        if trip_id:
            conditions.append(GPSTracking.trip_id == trip_id)
        if start_date:
            conditions.append(GPSTracking.timestamp >= start_date)
        if end_date:
            conditions.append(GPSTracking.timestamp <= end_date)

        total_result = await db.execute(
            select(func.count(GPSTracking.id)).where(and_(*conditions))
        )
        total = total_result.scalar_one()

        result = await db.execute(
            select(GPSTracking)
            .where(and_(*conditions))
            .order_by(desc(GPSTracking.timestamp))
            .offset((page - 1) * limit)
            .limit(limit)
        )
        locations = [GPSTrackingRead.model_validate(t) for t in result.scalars().all()]

        return LocationHistoryPage(
            locations=locations,
            total=total,
            page=page,
            limit=limit,
            total_pages=-(-total // limit) if limit else 0
        )

    async def get_multiple_locations(self, db: AsyncSession, bus_ids: List[str]) -> List[Dict[str, Any]]:
        """Current locations for several buses; buses without data are left out"""
        locations = []
        for bus_id in bus_ids:
            location = await resolve_current_location(db, self.cache, bus_id)
            if location is not None:
                locations.append(location)
        return locations

    async def analyze_speed(
        self,
        db: AsyncSession,
        bus_id: str,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None
    ) -> SpeedAnalysis:
        start_date, end_date = as_utc(start_date), as_utc(end_date)
        conditions = [GPSTracking.bus_id == bus_id, GPSTracking.is_valid == True]
        if start_date:
            conditions.append(GPSTracking.timestamp >= start_date)
        if end_date:
            conditions.append(GPSTracking.timestamp <= end_date)

        result = await db.execute(
            select(GPSTracking).where(and_(*conditions)).order_by(GPSTracking.timestamp)
        )
        samples = result.scalars().all()
        if not samples:
            return SpeedAnalysis()

        speeds = [s.speed for s in samples if s.speed is not None]
        if not speeds:
            return SpeedAnalysis(total_distance=round(trapezoid_distance_km(samples), 1))

        return SpeedAnalysis(
            average_speed=round(sum(speeds) / len(speeds), 1),
            max_speed=round(max(speeds), 1),
            min_speed=round(min(speeds), 1),
            speed_violations=len([s for s in speeds if s > self.speed_limit]),
            total_distance=round(trapezoid_distance_km(samples), 1)
        )

    async def get_tracking_stats(self, db: AsyncSession, bus_id: str, days: int = 30) -> TrackingStats:
        now = self.clock()
        start_date = now - timedelta(days=days)
        window = and_(
            GPSTracking.bus_id == bus_id,
            GPSTracking.timestamp >= start_date,
            GPSTracking.is_valid == True
        )

        stats_result = await db.execute(
            select(func.count(GPSTracking.id), func.avg(GPSTracking.speed)).where(window)
        )
        total_records, average_speed = stats_result.one()

        samples_result = await db.execute(
            select(GPSTracking).where(window).order_by(GPSTracking.timestamp)
        )
        samples = samples_result.scalars().all()

        latest = await latest_tracking(db, bus_id)
        last_update = as_utc(latest.timestamp) if latest else None
        is_active = bool(
            last_update and now - last_update < timedelta(minutes=ACTIVE_WINDOW_MINUTES)
        )

        return TrackingStats(
            total_records=total_records or 0,
            average_speed=round(average_speed, 1) if average_speed else 0,
            total_distance=round(trapezoid_distance_km(samples), 1),
            last_update=last_update,
            is_active=is_active
        )

    async def get_bus_route(self, db: AsyncSession, bus_id: str) -> RouteWithStops:
        return await load_active_route(db, bus_id)

    async def get_dashboard(self, db: AsyncSession, school_id: Optional[str] = None) -> Dict[str, Any]:
        conditions = [Bus.is_active == True]
        if school_id:
            conditions.append(Bus.school_id == school_id)

        result = await db.execute(select(Bus).where(and_(*conditions)).order_by(Bus.plate_number))
        buses = result.scalars().all()

        entries = []
        for bus in buses:
            location = await resolve_current_location(db, self.cache, bus.id)
            entries.append(DashboardEntry(
                id=bus.id,
                plate_number=bus.plate_number,
                school_id=bus.school_id,
                location=location,
                has_location=location is not None
            ))

        with_location = len([e for e in entries if e.has_location])
        return {
            "total_buses": len(entries),
            "buses_with_location": with_location,
            "buses_without_location": len(entries) - with_location,
            "buses": entries
        }

    async def cleanup_old_data(self, db: AsyncSession, days_to_keep: int = 90) -> int:
        """Delete log rows older than the retention window, returns the count"""
        cutoff = self.clock() - timedelta(days=days_to_keep)
        result = await db.execute(
            delete(GPSTracking).where(GPSTracking.timestamp < cutoff)
        )
        await db.commit()

        deleted = result.rowcount or 0
        logger.info(f"Deleted {deleted} tracking records older than {days_to_keep} days")
        return deleted
