from fastapi import APIRouter, Query
from typing import List, Any, Optional
from datetime import datetime

from app.database import SessionDep
from app.models.tracking import Coordinates, SpeedMonitorRequest, SpeedReading, SpeedSeverity
from app.api.deps import SpeedMonitorDep, ETAEngineDep, AnalyticsDep
from sqlmodel import SQLModel

router = APIRouter()


class BulkSpeedRequest(SQLModel):
    readings: List[SpeedReading]


# ETA

@router.get("/eta/bus/{bus_id}")
async def calculate_eta(
    db: SessionDep,
    eta_engine: ETAEngineDep,
    bus_id: str
) -> dict[str, Any]:
    eta = await eta_engine.calculate_eta(db, bus_id)
    return {"success": True, "data": eta.model_dump(exclude_none=True)}


@router.get("/eta/analyze/{bus_id}")
async def analyze_eta(
    db: SessionDep,
    eta_engine: ETAEngineDep,
    bus_id: str
) -> dict[str, Any]:
    analysis = await eta_engine.analyze_eta(db, bus_id)
    return {
        "success": True,
        "data": analysis,
        "message": "ETA analysis completed" if analysis else "No scheduled time available for ETA analysis"
    }


@router.get("/eta/predict/{bus_id}")
async def predict_eta(
    db: SessionDep,
    analytics: AnalyticsDep,
    bus_id: str,
    stop_id: str = Query(..., min_length=1)
) -> dict[str, Any]:
    prediction = await analytics.predict_eta(db, bus_id, stop_id)
    return {"success": True, "data": prediction}


@router.get("/eta/alerts")
async def get_eta_alerts(
    db: SessionDep,
    eta_engine: ETAEngineDep,
    school_id: Optional[str] = None
) -> dict[str, Any]:
    alerts = await eta_engine.eta_alerts(db, school_id)
    return {"success": True, "data": alerts}


# Speed

@router.post("/speed/monitor/{bus_id}")
async def monitor_speed(
    db: SessionDep,
    speed_monitor: SpeedMonitorDep,
    bus_id: str,
    reading: SpeedMonitorRequest
) -> dict[str, Any]:
    violation = await speed_monitor.monitor(
        db,
        bus_id,
        reading.current_speed,
        Coordinates(latitude=reading.latitude, longitude=reading.longitude)
    )
    return {
        "success": True,
        "data": violation,
        "message": "Speed violation detected and recorded" if violation else "Speed within limits"
    }


@router.post("/speed/bulk-monitor")
async def bulk_monitor_speed(
    db: SessionDep,
    speed_monitor: SpeedMonitorDep,
    payload: BulkSpeedRequest
) -> dict[str, Any]:
    summary = await speed_monitor.bulk_monitor(db, payload.readings)
    return {
        "success": True,
        "message": f"Processed {summary['total']} speed readings, {summary['violations']} violations detected",
        "data": summary
    }


@router.get("/speed/analytics/{bus_id}")
async def get_speed_analytics(
    db: SessionDep,
    analytics: AnalyticsDep,
    bus_id: str,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None
) -> dict[str, Any]:
    summary = await analytics.get_speed_analytics(db, bus_id, start_date, end_date)
    return {"success": True, "data": summary}


@router.get("/speed/fleet-stats")
async def get_fleet_speed_stats(
    db: SessionDep,
    analytics: AnalyticsDep,
    school_id: Optional[str] = None
) -> dict[str, Any]:
    stats = await analytics.get_fleet_speed_stats(db, school_id)
    return {"success": True, "data": stats}


@router.get("/speed/violations/{bus_id}")
async def get_speed_violations(
    db: SessionDep,
    speed_monitor: SpeedMonitorDep,
    bus_id: str,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    severity: Optional[SpeedSeverity] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=500)
) -> dict[str, Any]:
    violations = await speed_monitor.list_violations(
        db,
        bus_id,
        start_date=start_date,
        end_date=end_date,
        severity=severity,
        page=page,
        limit=limit
    )
    return {"success": True, "data": violations}


@router.get("/speed/violation-stats")
async def get_violation_stats(
    db: SessionDep,
    speed_monitor: SpeedMonitorDep,
    school_id: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None
) -> dict[str, Any]:
    stats = await speed_monitor.violation_stats(db, school_id, start_date, end_date)
    return {"success": True, "data": stats}
