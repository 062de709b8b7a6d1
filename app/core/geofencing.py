import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select, and_

from app.core.exceptions import NotFound
from app.core.geo import distance_meters
from app.core.location_cache import LocationCache
from app.core.tracking import resolve_current_location
from app.models.fleet import Bus
from app.models.tracking import Geofence, GeofenceRead, GeofenceStatus
from app.utils.realtime import OPERATIONS_ROOM, school_room, safe_publish
from app.utils.timeutils import parse_timestamp

logger = logging.getLogger(__name__)


def is_within_geofence(latitude: float, longitude: float, geofence: Geofence) -> bool:
    return distance_meters(latitude, longitude, geofence.latitude, geofence.longitude) <= geofence.radius


class GeofenceMonitor:
    """
    Circular zone checks for a bus's position.

    Zones are scanned in creation order and the first one containing the
    bus wins, even when a later zone's center is closer.
    """

    def __init__(self, cache: Optional[LocationCache] = None, publisher=None):
        self.cache = cache
        self.publisher = publisher

    async def active_geofences(self, db: AsyncSession, bus_id: str) -> List[Geofence]:
        result = await db.execute(
            select(Geofence)
            .where(and_(Geofence.bus_id == bus_id, Geofence.is_active == True))
            .order_by(Geofence.created_at, Geofence.id)
        )
        return result.scalars().all()

    async def check_status(self, db: AsyncSession, bus_id: str) -> GeofenceStatus:
        location = await resolve_current_location(db, self.cache, bus_id)
        if location is None:
            raise NotFound("No location data found for this bus")

        for geofence in await self.active_geofences(db, bus_id):
            distance = distance_meters(
                location["latitude"], location["longitude"],
                geofence.latitude, geofence.longitude
            )
            if distance <= geofence.radius:
                return GeofenceStatus(
                    inside=True,
                    geofence=GeofenceRead.model_validate(geofence),
                    distance=distance
                )

        return GeofenceStatus(inside=False)

    async def evaluate_transition(
        self,
        db: AsyncSession,
        bus: Bus,
        previous: Optional[Dict[str, Any]],
        current: Dict[str, Any]
    ) -> List[Dict[str, Any]]:
        """
        Compare the previous and new positions against each active zone
        and publish a geofence_alert for every enter or exit whose alert
        flag is set. Out-of-order reports raise no alerts.
        """
        if not previous:
            return []

        previous_ts = parse_timestamp(previous.get("timestamp"))
        current_ts = parse_timestamp(current.get("timestamp"))
        if previous_ts and current_ts and current_ts < previous_ts:
            return []

        alerts = []
        for geofence in await self.active_geofences(db, bus.id):
            was_inside = is_within_geofence(previous["latitude"], previous["longitude"], geofence)
            is_inside = is_within_geofence(current["latitude"], current["longitude"], geofence)

            if was_inside == is_inside:
                continue
            if is_inside and not geofence.alert_on_enter:
                continue
            if was_inside and not geofence.alert_on_exit:
                continue

            alert = {
                "event": "enter" if is_inside else "exit",
                "bus_id": bus.id,
                "plate_number": bus.plate_number,
                "geofence": GeofenceRead.model_validate(geofence).model_dump(mode="json"),
                "latitude": current["latitude"],
                "longitude": current["longitude"],
                "timestamp": current.get("timestamp")
            }
            alerts.append(alert)

            logger.info(f"Bus {bus.id} {alert['event']} geofence {geofence.name}")
            await safe_publish(self.publisher, school_room(bus.school_id), "geofence_alert", alert)
            await safe_publish(self.publisher, OPERATIONS_ROOM, "geofence_alert", alert)

        return alerts
