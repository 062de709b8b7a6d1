import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func, true
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select, desc, and_

from app.config import SpeedThresholds
from app.core.exceptions import NotFound
from app.models.fleet import Bus
from app.models.tracking import (
    Coordinates, SpeedReading, SpeedMonitorResult,
    SpeedSeverity, SpeedViolation, SpeedViolationRead
)
from app.utils.realtime import OPERATIONS_ROOM, driver_room, school_room, safe_publish
from app.utils.timeutils import as_utc, utcnow

logger = logging.getLogger(__name__)


def classify_speed(speed: float, thresholds: SpeedThresholds) -> Optional[SpeedSeverity]:
    """
    Assign a severity tier to a speed sample.
    Tiers are checked lowest to highest and the last one matched wins,
    so the result is the highest tier the speed clears.
    """
    tiers = [
        (thresholds.warning, SpeedSeverity.WARNING),
        (thresholds.violation, SpeedSeverity.VIOLATION),
        (thresholds.critical, SpeedSeverity.CRITICAL),
    ]

    severity = None
    for threshold, tier in tiers:
        if speed >= threshold:
            severity = tier
    return severity


class SpeedMonitor:
    """
    Stateless per-sample speed classifier.

    Keeps no memory of earlier samples, so a bus hovering around a
    threshold raises a violation on every sample above it.
    """

    def __init__(self, publisher=None, thresholds: Optional[SpeedThresholds] = None):
        self.publisher = publisher
        self.thresholds = thresholds or SpeedThresholds()

    def classify(self, speed: float) -> Optional[SpeedSeverity]:
        return classify_speed(speed, self.thresholds)

    async def monitor(
        self,
        db: AsyncSession,
        bus_id: str,
        current_speed: float,
        location: Coordinates,
        timestamp: Optional[datetime] = None
    ) -> Optional[SpeedViolationRead]:
        bus = await db.get(Bus, bus_id)
        if bus is None:
            raise NotFound("Bus not found")

        severity = self.classify(current_speed)
        if severity is None:
            return None

        speed_limit = self.thresholds.speed_limit
        violation = SpeedViolation(
            bus_id=bus_id,
            driver_id=bus.driver_id,
            current_speed=current_speed,
            speed_limit=speed_limit,
            latitude=location.latitude,
            longitude=location.longitude,
            severity=severity,
            timestamp=as_utc(timestamp) or utcnow()
        )

        db.add(violation)
        await db.commit()
        await db.refresh(violation)

        record = SpeedViolationRead.model_validate(violation)
        logger.info(
            f"{severity.value} speed violation for bus {bus_id}: "
            f"{current_speed} km/h (limit {speed_limit} km/h)"
        )

        payload = record.model_dump(mode="json")
        await safe_publish(self.publisher, school_room(bus.school_id), "speed_violation", {
            **payload,
            "message": f"Speed violation detected: {current_speed} km/h (limit: {speed_limit} km/h)"
        })
        await safe_publish(self.publisher, OPERATIONS_ROOM, "speed_violation", payload)

        if bus.driver_id:
            await safe_publish(self.publisher, driver_room(bus.driver_id), "speed_alert", {
                "severity": severity.value,
                "current_speed": current_speed,
                "speed_limit": speed_limit,
                "message": f"Speed limit exceeded! Current: {current_speed} km/h, Limit: {speed_limit} km/h"
            })

        return record

    async def bulk_monitor(
        self,
        db: AsyncSession,
        readings: List[SpeedReading]
    ) -> Dict[str, Any]:
        """Run monitor() over each reading independently"""
        results: List[SpeedMonitorResult] = []
        violations_count = 0

        for reading in readings:
            location = Coordinates(latitude=reading.latitude, longitude=reading.longitude)
            try:
                violation = await self.monitor(db, reading.bus_id, reading.speed, location)
                results.append(SpeedMonitorResult(
                    bus_id=reading.bus_id,
                    speed=reading.speed,
                    location=location,
                    success=True,
                    violation=violation
                ))
                if violation:
                    violations_count += 1
            except NotFound as e:
                results.append(SpeedMonitorResult(
                    bus_id=reading.bus_id,
                    speed=reading.speed,
                    location=location,
                    success=False,
                    error=e.message
                ))
            except SQLAlchemyError as e:
                await db.rollback()
                logger.error(f"Failed to record speed reading for bus {reading.bus_id}: {e}")
                results.append(SpeedMonitorResult(
                    bus_id=reading.bus_id,
                    speed=reading.speed,
                    location=location,
                    success=False,
                    error="Failed to record speed reading"
                ))

        return {
            "total": len(readings),
            "violations": violations_count,
            "results": results
        }

    async def list_violations(
        self,
        db: AsyncSession,
        bus_id: str,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        severity: Optional[SpeedSeverity] = None,
        page: int = 1,
        limit: int = 20
    ) -> Dict[str, Any]:
        start_date, end_date = as_utc(start_date), as_utc(end_date)
        conditions = [SpeedViolation.bus_id == bus_id]
        if start_date:
            conditions.append(SpeedViolation.timestamp >= start_date)
        if end_date:
            conditions.append(SpeedViolation.timestamp <= end_date)
        if severity:
            conditions.append(SpeedViolation.severity == severity)

        total_result = await db.execute(
            select(func.count(SpeedViolation.id)).where(and_(*conditions))
        )
        total = total_result.scalar_one()

        result = await db.execute(
            select(SpeedViolation)
            .where(and_(*conditions))
            .order_by(desc(SpeedViolation.timestamp))
            .offset((page - 1) * limit)
            .limit(limit)
        )
        violations = [SpeedViolationRead.model_validate(v) for v in result.scalars().all()]

        return {
            "violations": violations,
            "total": total,
            "page": page,
            "limit": limit,
            "total_pages": -(-total // limit) if limit else 0
        }

    async def violation_stats(
        self,
        db: AsyncSession,
        school_id: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """Violation totals by severity, top offending buses and recent violations"""
        start_date, end_date = as_utc(start_date), as_utc(end_date)
        conditions = []
        if school_id:
            conditions.append(SpeedViolation.bus_id.in_(
                select(Bus.id).where(Bus.school_id == school_id)
            ))
        if start_date:
            conditions.append(SpeedViolation.timestamp >= start_date)
        if end_date:
            conditions.append(SpeedViolation.timestamp <= end_date)
        where = and_(true(), *conditions)

        severity_result = await db.execute(
            select(SpeedViolation.severity, func.count(SpeedViolation.id))
            .where(where)
            .group_by(SpeedViolation.severity)
        )
        by_severity = {
            (severity.value if isinstance(severity, SpeedSeverity) else str(severity)): count
            for severity, count in severity_result.all()
        }

        violation_count = func.count(SpeedViolation.id).label("violations")
        bus_result = await db.execute(
            select(Bus.id, Bus.plate_number, Bus.model, violation_count)
            .select_from(SpeedViolation)
            .join(Bus, Bus.id == SpeedViolation.bus_id)
            .where(where)
            .group_by(Bus.id, Bus.plate_number, Bus.model)
            .order_by(desc(violation_count))
            .limit(10)
        )
        top_buses = [
            {
                "bus": {"id": bus_id, "plate_number": plate_number, "model": model},
                "violations": count
            }
            for bus_id, plate_number, model, count in bus_result.all()
        ]

        recent_result = await db.execute(
            select(SpeedViolation)
            .where(where)
            .order_by(desc(SpeedViolation.timestamp))
            .limit(20)
        )
        recent = [SpeedViolationRead.model_validate(v) for v in recent_result.scalars().all()]

        return {
            "summary": {
                "total_violations": sum(by_severity.values()),
                "period": {"start": start_date, "end": end_date}
            },
            "by_severity": by_severity,
            "top_violating_buses": top_buses,
            "recent_violations": recent
        }
