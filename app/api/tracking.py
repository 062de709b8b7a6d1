from fastapi import APIRouter, Query
from typing import List, Any, Optional
from datetime import datetime

from app.database import SessionDep
from app.config import settings
from app.models.tracking import GPSTrackingCreate
from app.api.deps import TrackingServiceDep, GeofenceMonitorDep, ETAEngineDep
from sqlmodel import SQLModel

router = APIRouter()


class BulkLocationRequest(SQLModel):
    # Items are validated one by one so a bad report cannot fail the batch
    locations: List[Any]


@router.post("/", status_code=201)
async def record_location(
    db: SessionDep,
    tracking_service: TrackingServiceDep,
    report: GPSTrackingCreate
) -> dict[str, Any]:
    tracking = await tracking_service.record(db, report)
    return {
        "success": True,
        "message": "GPS location recorded successfully",
        "data": tracking
    }


@router.post("/bulk")
async def bulk_record_locations(
    db: SessionDep,
    tracking_service: TrackingServiceDep,
    payload: BulkLocationRequest
) -> dict[str, Any]:
    results = await tracking_service.bulk_record(db, payload.locations)
    successful = len([r for r in results if r.success])
    failed = len(results) - successful

    return {
        "success": True,
        "message": f"Processed {len(results)} locations: {successful} successful, {failed} failed",
        "data": {
            "total": len(results),
            "successful": successful,
            "failed": failed,
            "results": results
        }
    }


@router.get("/bus/{bus_id}/current")
async def get_current_location(
    db: SessionDep,
    tracking_service: TrackingServiceDep,
    bus_id: str
) -> dict[str, Any]:
    location = await tracking_service.get_current_location(db, bus_id)
    return {"success": True, "data": location}


@router.get("/bus/{bus_id}/history")
async def get_location_history(
    db: SessionDep,
    tracking_service: TrackingServiceDep,
    bus_id: str,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    trip_id: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(100, ge=1, le=1000)
) -> dict[str, Any]:
    history = await tracking_service.get_location_history(
        db,
        bus_id=bus_id,
        start_date=start_date,
        end_date=end_date,
        trip_id=trip_id,
        page=page,
        limit=limit
    )
    return {"success": True, "data": history}


@router.get("/locations")
async def get_multiple_locations(
    db: SessionDep,
    tracking_service: TrackingServiceDep,
    bus_ids: List[str] = Query(...)
) -> dict[str, Any]:
    # Accept both ?bus_ids=a&bus_ids=b and ?bus_ids=a,b
    ids = [bus_id.strip() for value in bus_ids for bus_id in value.split(",") if bus_id.strip()]
    locations = await tracking_service.get_multiple_locations(db, ids)
    return {"success": True, "data": locations}


@router.get("/dashboard")
async def get_dashboard(
    db: SessionDep,
    tracking_service: TrackingServiceDep,
    school_id: Optional[str] = None
) -> dict[str, Any]:
    dashboard = await tracking_service.get_dashboard(db, school_id)
    return {"success": True, "data": dashboard}


@router.get("/bus/{bus_id}/speed-analysis")
async def analyze_speed(
    db: SessionDep,
    tracking_service: TrackingServiceDep,
    bus_id: str,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None
) -> dict[str, Any]:
    analysis = await tracking_service.analyze_speed(db, bus_id, start_date, end_date)
    return {"success": True, "data": analysis}


@router.get("/bus/{bus_id}/geofence")
async def check_geofence(
    db: SessionDep,
    geofence_monitor: GeofenceMonitorDep,
    bus_id: str
) -> dict[str, Any]:
    status = await geofence_monitor.check_status(db, bus_id)
    return {"success": True, "data": status}


@router.get("/bus/{bus_id}/eta")
async def calculate_eta(
    db: SessionDep,
    eta_engine: ETAEngineDep,
    bus_id: str
) -> dict[str, Any]:
    eta = await eta_engine.calculate_eta(db, bus_id)
    return {"success": True, "data": eta.model_dump(exclude_none=True)}


@router.get("/bus/{bus_id}/stats")
async def get_tracking_stats(
    db: SessionDep,
    tracking_service: TrackingServiceDep,
    bus_id: str,
    days: int = Query(30, ge=1)
) -> dict[str, Any]:
    stats = await tracking_service.get_tracking_stats(db, bus_id, days)
    return {"success": True, "data": stats}


@router.get("/bus/{bus_id}/route")
async def get_bus_route(
    db: SessionDep,
    tracking_service: TrackingServiceDep,
    bus_id: str
) -> dict[str, Any]:
    route = await tracking_service.get_bus_route(db, bus_id)
    return {"success": True, "data": route}


@router.delete("/cleanup")
async def cleanup_old_data(
    db: SessionDep,
    tracking_service: TrackingServiceDep,
    days_to_keep: int = Query(settings.TRACKING_RETENTION_DAYS, ge=1)
) -> dict[str, Any]:
    deleted = await tracking_service.cleanup_old_data(db, days_to_keep)
    return {
        "success": True,
        "message": f"Cleaned up {deleted} old tracking records",
        "data": {"deleted_count": deleted}
    }
