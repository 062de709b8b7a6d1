import math
import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select, desc, and_

from app.config import PredictionParameters
from app.core.eta import ETAEngine
from app.core.tracking import trapezoid_distance_km
from app.models.analytics import AnalyticsPeriod, ETAPrediction, FleetSpeedStats, SpeedAnalytics
from app.models.fleet import Attendance, Bus, Trip
from app.models.tracking import GPSTracking, SpeedSeverity, SpeedViolation, SpeedViolationRead
from app.utils.timeutils import as_utc, utcnow

logger = logging.getLogger(__name__)


class AnalyticsAggregator:
    """Per-bus and fleet-wide speed summaries plus history-based ETA prediction"""

    def __init__(
        self,
        eta_engine: ETAEngine,
        params: Optional[PredictionParameters] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.eta_engine = eta_engine
        self.params = params or PredictionParameters()
        self.clock = clock

    async def get_speed_analytics(
        self,
        db: AsyncSession,
        bus_id: str,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None
    ) -> SpeedAnalytics:
        """
        Speed summary for one bus over a window (trailing 24 hours by default).
        Violations are read from the violation log, not recomputed.
        """
        end = as_utc(end_date) or self.clock()
        start = as_utc(start_date) or end - timedelta(hours=24)
        period = AnalyticsPeriod(start=start, end=end)

        result = await db.execute(
            select(GPSTracking)
            .where(and_(
                GPSTracking.bus_id == bus_id,
                GPSTracking.is_valid == True,
                GPSTracking.speed != None,
                GPSTracking.timestamp >= start,
                GPSTracking.timestamp <= end
            ))
            .order_by(GPSTracking.timestamp)
        )
        samples = result.scalars().all()

        if not samples:
            return SpeedAnalytics(bus_id=bus_id, period=period)

        speeds = [s.speed for s in samples]

        violations_result = await db.execute(
            select(SpeedViolation)
            .where(and_(
                SpeedViolation.bus_id == bus_id,
                SpeedViolation.timestamp >= start,
                SpeedViolation.timestamp <= end
            ))
            .order_by(desc(SpeedViolation.timestamp))
        )
        violations = [SpeedViolationRead.model_validate(v) for v in violations_result.scalars().all()]

        return SpeedAnalytics(
            bus_id=bus_id,
            period=period,
            average_speed=round(sum(speeds) / len(speeds), 1),
            max_speed=round(max(speeds), 1),
            min_speed=round(min(speeds), 1),
            speed_violations=len(violations),
            total_distance=round(trapezoid_distance_km(samples), 1),
            violations=violations
        )

    async def get_fleet_speed_stats(self, db: AsyncSession, school_id: Optional[str] = None) -> FleetSpeedStats:
        conditions = [Bus.is_active == True]
        if school_id:
            conditions.append(Bus.school_id == school_id)

        result = await db.execute(select(Bus.id).where(and_(*conditions)).order_by(Bus.id))
        bus_ids = result.scalars().all()

        if not bus_ids:
            return FleetSpeedStats()

        bus_analytics: List[SpeedAnalytics] = []
        for bus_id in bus_ids:
            bus_analytics.append(await self.get_speed_analytics(db, bus_id))

        total_violations = sum(a.speed_violations for a in bus_analytics)
        critical_violations = sum(
            len([v for v in a.violations if v.severity == SpeedSeverity.CRITICAL])
            for a in bus_analytics
        )
        # Unweighted mean of per-bus means
        average_fleet_speed = sum(a.average_speed for a in bus_analytics) / len(bus_analytics)

        worst = bus_analytics[0]
        for analytics in bus_analytics[1:]:
            if analytics.speed_violations > worst.speed_violations:
                worst = analytics

        return FleetSpeedStats(
            total_buses=len(bus_analytics),
            average_fleet_speed=round(average_fleet_speed, 1),
            total_violations=total_violations,
            critical_violations=critical_violations,
            most_violations_bus=worst.bus_id if worst.speed_violations > 0 else None
        )

    async def predict_eta(self, db: AsyncSession, bus_id: str, stop_id: str) -> ETAPrediction:
        """
        Shift the live ETA by the average historical delay at a stop.

        Each past delay is the drop time minus the trip's scheduled start
        plus the configured schedule offset. Confidence falls as the delays
        spread out.
        """
        result = await db.execute(
            select(Attendance, Trip)
            .join(Trip, Trip.id == Attendance.trip_id)
            .where(and_(Trip.bus_id == bus_id, Attendance.stop_id == stop_id))
            .order_by(desc(Attendance.created_at))
            .limit(self.params.history_limit)
        )
        history = result.all()

        eta = await self.eta_engine.calculate_eta(db, bus_id)
        estimated_arrival = eta.estimated_arrival or self.clock()

        if not history:
            return ETAPrediction(
                predicted_arrival=estimated_arrival,
                confidence=self.params.fallback_confidence,
                based_on_trips=0,
                average_delay=0
            )

        offset = timedelta(minutes=self.params.schedule_offset_minutes)
        delays = []
        for attendance, trip in history:
            if attendance.drop_time is None or trip.scheduled_start is None:
                continue
            scheduled_arrival = as_utc(trip.scheduled_start) + offset
            delays.append((as_utc(attendance.drop_time) - scheduled_arrival).total_seconds() / 60)

        average_delay = sum(delays) / len(delays) if delays else 0.0

        # Population standard deviation
        variance = (
            sum((delay - average_delay) ** 2 for delay in delays) / len(delays)
            if len(delays) > 1 else 0.0
        )
        standard_deviation = math.sqrt(variance)
        confidence = max(
            self.params.min_confidence,
            min(self.params.max_confidence, 1 - standard_deviation / self.params.stddev_scale_minutes)
        )

        logger.debug(
            f"ETA prediction for bus {bus_id} at stop {stop_id}: "
            f"{len(delays)} delays, mean {average_delay:.1f} min, sd {standard_deviation:.1f}"
        )

        return ETAPrediction(
            predicted_arrival=estimated_arrival + timedelta(minutes=average_delay),
            confidence=round(confidence, 2),
            based_on_trips=len(history),
            average_delay=round(average_delay, 1)
        )
