from sqlmodel import SQLModel, Field, Column, DateTime
from datetime import datetime, timezone
from typing import Optional, List
import uuid


def new_id() -> str:
    return str(uuid.uuid4())


class Driver(SQLModel, table=True):

    id: str = Field(default_factory=new_id, primary_key=True)
    school_id: str = Field(index=True)
    first_name: str
    last_name: str
    phone: Optional[str] = None
    is_active: bool = True


class Bus(SQLModel, table=True):

    id: str = Field(default_factory=new_id, primary_key=True)
    plate_number: str = Field(unique=True, index=True)
    model: Optional[str] = None
    capacity: int = 0
    school_id: str = Field(index=True)
    driver_id: Optional[str] = Field(default=None, foreign_key="driver.id")
    is_active: bool = True


class Route(SQLModel, table=True):

    id: str = Field(default_factory=new_id, primary_key=True)
    name: str
    bus_id: str = Field(foreign_key="bus.id", index=True)
    is_active: bool = True
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True))
    )


class RouteStopBase(SQLModel):
    name: str
    latitude: float
    longitude: float
    sequence: int
    pickup_time: Optional[str] = None  # "HH:MM", no date
    drop_time: Optional[str] = None    # "HH:MM", no date
    is_active: bool = True


class RouteStop(RouteStopBase, table=True):

    id: str = Field(default_factory=new_id, primary_key=True)
    route_id: str = Field(foreign_key="route.id", index=True)


class RouteStopRead(RouteStopBase):
    id: str
    route_id: str


class RouteWithStops(SQLModel):
    id: str
    name: str
    bus_id: str
    is_active: bool
    stops: List[RouteStopRead] = []


class Trip(SQLModel, table=True):

    id: str = Field(default_factory=new_id, primary_key=True)
    bus_id: str = Field(foreign_key="bus.id", index=True)
    route_id: Optional[str] = Field(default=None, foreign_key="route.id")
    scheduled_start: datetime = Field(sa_column=Column(DateTime(timezone=True)))
    actual_start: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True))
    )


class Attendance(SQLModel, table=True):

    id: str = Field(default_factory=new_id, primary_key=True)
    trip_id: str = Field(foreign_key="trip.id", index=True)
    stop_id: str = Field(foreign_key="routestop.id", index=True)
    pickup_time: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True))
    )
    drop_time: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True))
    )
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True))
    )
