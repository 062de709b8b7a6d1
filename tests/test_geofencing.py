import json
from datetime import timedelta

import pytest

from app.core.exceptions import NotFound
from app.models.tracking import Geofence, GPSTrackingCreate

from conftest import FIXED_NOW

# Roughly 150 m of latitude
LAT_150M = 150 / 111_195


async def add_geofence(db, bus_id="B1", created_offset=0, **fields):
    values = {
        "name": "School gate",
        "latitude": 40.0,
        "longitude": -75.0,
        "radius": 100,
    }
    values.update(fields)
    geofence = Geofence(bus_id=bus_id, created_at=FIXED_NOW + timedelta(minutes=created_offset), **values)
    db.add(geofence)
    await db.commit()
    return geofence


async def place_bus(tracking_service, db, latitude, longitude=-75.0, seconds=0):
    await tracking_service.record(db, GPSTrackingCreate(
        bus_id="B1",
        latitude=latitude,
        longitude=longitude,
        timestamp=FIXED_NOW + timedelta(seconds=seconds)
    ))


async def test_bus_at_center_is_inside(db, bus, tracking_service, geofence_monitor):
    zone = await add_geofence(db)
    await place_bus(tracking_service, db, 40.0)

    status = await geofence_monitor.check_status(db, bus.id)

    assert status.inside is True
    assert status.geofence.id == zone.id
    assert status.distance == pytest.approx(0, abs=0.01)


async def test_bus_outside_radius(db, bus, tracking_service, geofence_monitor):
    await add_geofence(db)
    await place_bus(tracking_service, db, 40.0 + LAT_150M)

    status = await geofence_monitor.check_status(db, bus.id)

    assert status.inside is False
    assert status.geofence is None


async def test_first_matching_zone_wins_over_closest(db, bus, tracking_service, geofence_monitor):
    wide = await add_geofence(db, name="Depot", latitude=40.0 + LAT_150M, radius=1000, created_offset=0)
    await add_geofence(db, name="Gate", latitude=40.0, radius=50, created_offset=1)
    await place_bus(tracking_service, db, 40.0)

    status = await geofence_monitor.check_status(db, bus.id)

    assert status.geofence.id == wide.id
    assert status.distance == pytest.approx(150, rel=0.01)


async def test_inactive_zones_are_ignored(db, bus, tracking_service, geofence_monitor):
    await add_geofence(db, is_active=False)
    await place_bus(tracking_service, db, 40.0)

    status = await geofence_monitor.check_status(db, bus.id)
    assert status.inside is False


async def test_no_location(db, bus, geofence_monitor):
    with pytest.raises(NotFound):
        await geofence_monitor.check_status(db, bus.id)


async def test_entering_zone_publishes_alert(db, bus, tracking_service, publisher):
    await add_geofence(db)
    await place_bus(tracking_service, db, 40.0 + LAT_150M, seconds=0)
    await place_bus(tracking_service, db, 40.0, seconds=30)

    alerts = [data for _, event, data in publisher.events if event == "geofence_alert"]
    assert publisher.rooms_for("geofence_alert") == ["school_school-1", "admin_dashboard"]
    assert alerts[0]["event"] == "enter"
    assert alerts[0]["geofence"]["name"] == "School gate"
    # Relayed to the ops webhook as plain JSON
    assert json.loads(json.dumps(alerts[0]))["geofence"]["id"] == alerts[0]["geofence"]["id"]


async def test_leaving_zone_publishes_exit(db, bus, tracking_service, publisher):
    await add_geofence(db)
    await place_bus(tracking_service, db, 40.0, seconds=0)
    await place_bus(tracking_service, db, 40.0 + LAT_150M, seconds=30)

    alerts = [data for _, event, data in publisher.events if event == "geofence_alert"]
    assert [a["event"] for a in alerts] == ["exit", "exit"]


async def test_disabled_alert_flag(db, bus, tracking_service, publisher):
    await add_geofence(db, alert_on_enter=False)
    await place_bus(tracking_service, db, 40.0 + LAT_150M, seconds=0)
    await place_bus(tracking_service, db, 40.0, seconds=30)

    assert publisher.rooms_for("geofence_alert") == []


async def test_staying_inside_raises_no_alert(db, bus, tracking_service, publisher):
    await add_geofence(db)
    await place_bus(tracking_service, db, 40.0, seconds=0)
    await place_bus(tracking_service, db, 40.0001, seconds=30)

    assert publisher.rooms_for("geofence_alert") == []


async def test_out_of_order_report_raises_no_alert(db, bus, tracking_service, publisher):
    await add_geofence(db)
    await place_bus(tracking_service, db, 40.0 + LAT_150M, seconds=30)
    await place_bus(tracking_service, db, 40.0, seconds=0)

    assert publisher.rooms_for("geofence_alert") == []
