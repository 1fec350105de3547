from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import timeclock.models  # noqa: F401
from timeclock.db import Base
from timeclock.models import (
    ClockEvent,
    ClockEventKind,
    ClockEventSource,
    Location,
    Organization,
    UserProfile,
    UserRole,
)
from timeclock.services.clock_events import ClockEventCandidate, append_clock_event


def utc(year: int, month: int, day: int, hour: int = 0, minute: int = 0) -> datetime:
    return datetime(year, month, day, hour, minute, tzinfo=timezone.utc)


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def make_session() -> Session:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return factory()


def make_org(db: Session, *, name: str = "Acme", tz: str | None = "UTC", **time_clock_settings: Any) -> Organization:
    organization = Organization(name=name, timezone=tz, time_clock_settings=dict(time_clock_settings))
    db.add(organization)
    db.commit()
    return organization


def make_user(
    db: Session,
    organization: Organization,
    *,
    name: str = "Employee",
    role: UserRole = UserRole.EMPLOYEE,
    **overrides: Any,
) -> UserProfile:
    fields: dict[str, Any] = {"is_active": True, **overrides}
    user = UserProfile(
        organization_id=organization.id,
        display_name=name,
        role=role,
        **fields,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def make_location(db: Session, organization: Organization, **fields: Any) -> Location:
    values: dict[str, Any] = {
        "name": "HQ",
        "is_active": True,
        "latitude": 35.0,
        "longitude": 139.0,
        "radius_meters": 100.0,
        "geofence_enabled": True,
        "allow_clock_outside": True,
    }
    values.update(fields)
    location = Location(organization_id=organization.id, **values)
    db.add(location)
    db.commit()
    return location


def record(
    db: Session,
    user: UserProfile,
    kind: ClockEventKind,
    ts_utc: datetime,
    *,
    source: ClockEventSource = ClockEventSource.DEVICE,
    **fields: Any,
) -> ClockEvent:
    return append_clock_event(
        db,
        ClockEventCandidate(
            organization_id=user.organization_id,
            user_id=user.id,
            kind=kind,
            ts_utc=ts_utc,
            source=source,
            **fields,
        ),
    )


def record_day(db: Session, user: UserProfile, *pairs: tuple[ClockEventKind, datetime]) -> list[ClockEvent]:
    return [record(db, user, kind, ts_utc) for kind, ts_utc in pairs]


class FakeEvent:
    """Plain stand-in for a stored clock event in pure computations."""

    def __init__(self, kind: ClockEventKind, ts_utc: datetime) -> None:
        self.kind = kind
        self.ts_utc = ts_utc

    def __repr__(self) -> str:
        return f"FakeEvent({self.kind.value}, {self.ts_utc.isoformat()})"
