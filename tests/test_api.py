import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import inspect

from app.database import build_engine, create_db_and_tables, dispose_engine, get_db
from app.main import app as fastapi_app

from conftest import add_route


@pytest.fixture
async def client(db, cache, speed_monitor, geofence_monitor, tracking_service, eta_engine, analytics):
    async def override_get_db():
        yield db

    fastapi_app.dependency_overrides[get_db] = override_get_db
    fastapi_app.state.location_cache = cache
    fastapi_app.state.speed_monitor = speed_monitor
    fastapi_app.state.geofence_monitor = geofence_monitor
    fastapi_app.state.tracking_service = tracking_service
    fastapi_app.state.eta_engine = eta_engine
    fastapi_app.state.analytics = analytics

    async with AsyncClient(transport=ASGITransport(app=fastapi_app), base_url="http://test") as client:
        yield client

    fastapi_app.dependency_overrides.clear()


async def test_record_location(client, bus, publisher):
    response = await client.post("/api/tracking/", json={
        "bus_id": bus.id,
        "latitude": 40.0,
        "longitude": -75.0,
        "speed": 32.5
    })

    assert response.status_code == 201
    body = response.json()
    assert body["success"] is True
    assert body["data"]["bus_id"] == bus.id
    assert body["data"]["speed"] == 32.5
    assert "parents_bus_B1" in publisher.rooms_for("bus_location")


async def test_invalid_latitude_is_rejected(client, bus):
    response = await client.post("/api/tracking/", json={
        "bus_id": bus.id,
        "latitude": 91,
        "longitude": -75.0
    })

    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert "latitude" in body["errors"]


async def test_unknown_bus(client):
    response = await client.post("/api/tracking/", json={
        "bus_id": "nope",
        "latitude": 40.0,
        "longitude": -75.0
    })

    assert response.status_code == 404
    assert response.json()["message"] == "Bus not found or inactive"


async def test_current_location_round_trip(client, bus):
    response = await client.get(f"/api/tracking/bus/{bus.id}/current")
    assert response.status_code == 404

    await client.post("/api/tracking/", json={"bus_id": bus.id, "latitude": 40.0, "longitude": -75.0})

    response = await client.get(f"/api/tracking/bus/{bus.id}/current")
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["latitude"] == 40.0
    assert data["source"] == "cache"


async def test_bulk_reports_per_item_outcome(client, bus):
    response = await client.post("/api/tracking/bulk", json={"locations": [
        {"bus_id": bus.id, "latitude": 40.0, "longitude": -75.0},
        {"bus_id": bus.id, "latitude": 120.0, "longitude": -75.0},
        {"bus_id": bus.id, "latitude": 40.001, "longitude": -75.0},
    ]})

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["total"] == 3
    assert data["successful"] == 2
    assert data["failed"] == 1
    assert [r["success"] for r in data["results"]] == [True, False, True]


async def test_bulk_accepts_non_object_items(client, bus):
    response = await client.post("/api/tracking/bulk", json={"locations": [
        {"bus_id": bus.id, "latitude": 40.0, "longitude": -75.0},
        "garbage",
        None,
        {"bus_id": bus.id, "latitude": 40.001, "longitude": -75.0},
    ]})

    assert response.status_code == 200
    data = response.json()["data"]
    assert [r["success"] for r in data["results"]] == [True, False, False, True]
    assert data["failed"] == 2


async def test_eta_for_route_without_stops(client, db, bus):
    await add_route(db, bus.id, [])
    await client.post("/api/tracking/", json={"bus_id": bus.id, "latitude": 40.0, "longitude": -75.0})

    response = await client.get(f"/api/tracking/bus/{bus.id}/eta")

    assert response.status_code == 200
    assert set(response.json()["data"]) == {"bus_id", "current_location"}


async def test_monitor_speed(client, bus, publisher):
    response = await client.post(f"/api/eta-speed/speed/monitor/{bus.id}", json={
        "current_speed": 70,
        "latitude": 40.0,
        "longitude": -75.0
    })

    assert response.status_code == 200
    body = response.json()
    assert body["data"]["severity"] == "VIOLATION"
    assert body["message"] == "Speed violation detected and recorded"

    response = await client.post(f"/api/eta-speed/speed/monitor/{bus.id}", json={
        "current_speed": 30,
        "latitude": 40.0,
        "longitude": -75.0
    })
    assert response.json()["data"] is None


async def test_predict_requires_stop(client, bus):
    response = await client.get(f"/api/eta-speed/eta/predict/{bus.id}")
    assert response.status_code == 422


async def test_health(client):
    response = await client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["cache"]["connected"] is True


async def test_create_tables(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'fresh.db'}")
    await create_db_and_tables(engine)

    async with engine.connect() as conn:
        tables = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())
        indexes = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_indexes("gpstracking"))

    assert {"bus", "gpstracking", "speedviolation", "geofence", "attendance"} <= set(tables)
    composite = [i for i in indexes if i["name"] == "ix_gpstracking_bus_time"]
    assert composite[0]["column_names"] == ["bus_id", "timestamp"]
    await dispose_engine(engine)
