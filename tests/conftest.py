from datetime import datetime, timezone
from typing import List, Optional

import pytest
from fakeredis import FakeAsyncRedis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

import app.models.fleet  # noqa: F401
import app.models.tracking  # noqa: F401
from app.config import ETAParameters, PredictionParameters, SpeedThresholds
from app.core.analytics import AnalyticsAggregator
from app.core.eta import ETAEngine
from app.core.geofencing import GeofenceMonitor
from app.core.location_cache import LocationCache
from app.core.speed_monitor import SpeedMonitor
from app.core.tracking import TrackingService
from app.models.fleet import Bus, Driver, Route, RouteStop

# Monday 10:00 UTC, outside every traffic peak
FIXED_NOW = datetime(2024, 3, 4, 10, 0, tzinfo=timezone.utc)


class RecordingPublisher:
    """Collects published events instead of sending them anywhere"""

    def __init__(self):
        self.events = []

    async def publish(self, room, event, data):
        self.events.append((room, event, data))
        return 1

    def rooms_for(self, event):
        return [room for room, name, _ in self.events if name == event]


class FailingPublisher:
    async def publish(self, room, event, data):
        raise RuntimeError("socket layer down")


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'tracking.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def db(engine):
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest.fixture
async def redis_client():
    client = FakeAsyncRedis(decode_responses=True)
    await client.flushall()
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def cache(redis_client):
    return LocationCache(redis_client, ttl_seconds=300)


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def thresholds():
    return SpeedThresholds()


@pytest.fixture
def speed_monitor(publisher, thresholds):
    return SpeedMonitor(publisher, thresholds)


@pytest.fixture
def geofence_monitor(cache, publisher):
    return GeofenceMonitor(cache, publisher)


@pytest.fixture
def tracking_service(cache, publisher, speed_monitor, geofence_monitor):
    return TrackingService(
        cache,
        publisher,
        speed_monitor=speed_monitor,
        geofence_monitor=geofence_monitor
    )


@pytest.fixture
def eta_engine(cache):
    return ETAEngine(cache, ETAParameters(), clock=lambda: FIXED_NOW)


@pytest.fixture
def analytics(eta_engine):
    return AnalyticsAggregator(eta_engine, PredictionParameters(), clock=lambda: FIXED_NOW)


async def add_bus(
    db,
    bus_id: str = "B1",
    school_id: str = "school-1",
    with_driver: bool = True,
    is_active: bool = True
) -> Bus:
    driver_id = None
    if with_driver:
        driver = Driver(
            id=f"driver-{bus_id}",
            school_id=school_id,
            first_name="Amaka",
            last_name="Okafor"
        )
        db.add(driver)
        await db.commit()
        driver_id = driver.id

    bus = Bus(
        id=bus_id,
        plate_number=f"SCH-{bus_id}",
        model="Coaster",
        capacity=30,
        school_id=school_id,
        driver_id=driver_id,
        is_active=is_active
    )
    db.add(bus)
    await db.commit()
    return bus


async def add_route(db, bus_id: str, stops: Optional[List[dict]] = None) -> Route:
    route = Route(name=f"Morning run {bus_id}", bus_id=bus_id)
    db.add(route)
    await db.commit()

    for sequence, stop in enumerate(stops or [], start=1):
        db.add(RouteStop(route_id=route.id, sequence=stop.pop("sequence", sequence), **stop))
    await db.commit()
    return route


@pytest.fixture
async def bus(db):
    return await add_bus(db)
