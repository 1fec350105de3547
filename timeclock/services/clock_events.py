from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from timeclock.errors import ApiError, GeofenceViolation, InvalidTransition, PersistenceFailure
from timeclock.models import (
    ClockEvent,
    ClockEventHead,
    ClockEventKind,
    ClockEventSource,
    ClockEventStatus,
    Location,
    Shift,
    UserProfile,
)
from timeclock.services.attendance_state import (
    AttendanceSnapshot,
    AttendanceStatus,
    build_snapshot,
    is_legal_transition,
    status_after,
)
from timeclock.services.geofence import evaluate_geofence, fence_is_enforceable
from timeclock.services.local_time import (
    local_day,
    local_day_bounds_utc,
    normalize_ts,
    period_bounds_utc,
    resolve_timezone,
)
from timeclock.services.time_clock_settings import resolve_allow_time_edit, resolve_time_clock_settings

logger = logging.getLogger("timeclock.clock_events")

APPEND_ATTEMPTS = 2


@dataclass(frozen=True)
class ClockEventCandidate:
    organization_id: int
    user_id: int
    kind: ClockEventKind
    ts_utc: datetime
    source: ClockEventSource = ClockEventSource.DEVICE
    location_id: int | None = None
    shift_id: int | None = None
    lat: float | None = None
    lng: float | None = None
    notes: str | None = None
    status: ClockEventStatus = ClockEventStatus.PENDING
    # Manual and system entries record the fence result but are never blocked by it.
    enforce_geofence: bool = True


def _transition_error(previous: ClockEventKind | None, candidate: ClockEventKind) -> InvalidTransition:
    current = status_after(previous)
    if candidate == ClockEventKind.CLOCK_IN:
        if current == AttendanceStatus.ON_BREAK:
            reason, message = "ALREADY_CLOCKED_IN", "You are already clocked in and on a break."
        else:
            reason, message = "ALREADY_CLOCKED_IN", "You are already clocked in."
    elif candidate == ClockEventKind.BREAK_START:
        if current == AttendanceStatus.ON_BREAK:
            reason, message = "ALREADY_ON_BREAK", "You are already on a break."
        else:
            reason, message = "NOT_CLOCKED_IN", "You must be clocked in to start a break."
    elif candidate == ClockEventKind.BREAK_END:
        if current == AttendanceStatus.CLOCKED_IN:
            reason, message = "NOT_ON_BREAK", "You are not on a break."
        else:
            reason, message = "NOT_CLOCKED_IN", "You must be clocked in to end a break."
    else:
        if current == AttendanceStatus.ON_BREAK:
            reason, message = "BREAK_IN_PROGRESS", "End your break before clocking out."
        else:
            reason, message = "NOT_CLOCKED_IN", "You are not clocked in."
    return InvalidTransition(current_status=current.value, reason=reason, message=message)


def _lock_head(db: Session, *, organization_id: int, user_id: int) -> ClockEventHead:
    head = db.scalar(
        select(ClockEventHead)
        .where(
            ClockEventHead.organization_id == organization_id,
            ClockEventHead.user_id == user_id,
        )
        .with_for_update()
    )
    if head is None:
        # A concurrent first append collides on the primary key and is retried.
        head = ClockEventHead(organization_id=organization_id, user_id=user_id, sequence=0)
        db.add(head)
        db.flush()
    return head


def latest_event_at_or_before(
    db: Session,
    *,
    organization_id: int,
    user_id: int,
    reference_ts_utc: datetime | None = None,
) -> ClockEvent | None:
    stmt = select(ClockEvent).where(
        ClockEvent.organization_id == organization_id,
        ClockEvent.user_id == user_id,
    )
    if reference_ts_utc is not None:
        stmt = stmt.where(ClockEvent.ts_utc <= normalize_ts(reference_ts_utc))
    return db.scalar(stmt.order_by(ClockEvent.ts_utc.desc(), ClockEvent.sequence.desc()).limit(1))


def _earliest_event_after(
    db: Session,
    *,
    organization_id: int,
    user_id: int,
    reference_ts_utc: datetime,
) -> ClockEvent | None:
    return db.scalar(
        select(ClockEvent)
        .where(
            ClockEvent.organization_id == organization_id,
            ClockEvent.user_id == user_id,
            ClockEvent.ts_utc > normalize_ts(reference_ts_utc),
        )
        .order_by(ClockEvent.ts_utc.asc(), ClockEvent.sequence.asc())
        .limit(1)
    )


def session_clock_in(
    db: Session,
    *,
    organization_id: int,
    user_id: int,
    reference_ts_utc: datetime,
) -> ClockEvent | None:
    return db.scalar(
        select(ClockEvent)
        .where(
            ClockEvent.organization_id == organization_id,
            ClockEvent.user_id == user_id,
            ClockEvent.kind == ClockEventKind.CLOCK_IN,
            ClockEvent.ts_utc <= normalize_ts(reference_ts_utc),
        )
        .order_by(ClockEvent.ts_utc.desc(), ClockEvent.sequence.desc())
        .limit(1)
    )


def _append_once(db: Session, candidate: ClockEventCandidate) -> ClockEvent:
    ts_utc = normalize_ts(candidate.ts_utc)
    head = _lock_head(db, organization_id=candidate.organization_id, user_id=candidate.user_id)

    previous = latest_event_at_or_before(
        db,
        organization_id=candidate.organization_id,
        user_id=candidate.user_id,
        reference_ts_utc=ts_utc,
    )
    previous_kind = previous.kind if previous is not None else None
    if not is_legal_transition(previous_kind, candidate.kind):
        raise _transition_error(previous_kind, candidate.kind)

    following = _earliest_event_after(
        db,
        organization_id=candidate.organization_id,
        user_id=candidate.user_id,
        reference_ts_utc=ts_utc,
    )
    if following is not None and not is_legal_transition(candidate.kind, following.kind):
        raise InvalidTransition(
            current_status=status_after(previous_kind).value,
            reason="SEQUENCE_CONFLICT",
            message=(
                f"A {candidate.kind.value} at this time conflicts with the "
                f"{following.kind.value} recorded after it."
            ),
        )

    location_id = candidate.location_id
    shift_id = candidate.shift_id
    if candidate.kind != ClockEventKind.CLOCK_IN:
        session_start = session_clock_in(
            db,
            organization_id=candidate.organization_id,
            user_id=candidate.user_id,
            reference_ts_utc=ts_utc,
        )
        if session_start is not None:
            location_id = location_id if location_id is not None else session_start.location_id
            shift_id = shift_id if shift_id is not None else session_start.shift_id

    location = db.get(Location, location_id) if location_id is not None else None
    geofence = evaluate_geofence(location, candidate.lat, candidate.lng)
    if (
        candidate.enforce_geofence
        and candidate.kind == ClockEventKind.CLOCK_IN
        and fence_is_enforceable(location)
        and not location.allow_clock_outside  # type: ignore[union-attr]
        and geofence.inside is not True
    ):
        if geofence.inside is None:
            raise GeofenceViolation(
                message=f"Your location is required to clock in at {location.name}.",  # type: ignore[union-attr]
                radius_m=location.radius_meters,  # type: ignore[union-attr]
            )
        raise GeofenceViolation(
            message=f"You must be within {location.radius_meters:g}m of {location.name} to clock in.",  # type: ignore[union-attr]
            distance_m=geofence.distance_m,
            radius_m=geofence.radius_m,
        )

    head.sequence += 1
    event = ClockEvent(
        organization_id=candidate.organization_id,
        user_id=candidate.user_id,
        sequence=head.sequence,
        kind=candidate.kind,
        ts_utc=ts_utc,
        location_id=location_id,
        shift_id=shift_id,
        lat=candidate.lat,
        lng=candidate.lng,
        is_inside_geofence=geofence.inside,
        source=candidate.source,
        notes=candidate.notes,
        status=candidate.status,
    )
    db.add(event)
    db.commit()
    db.refresh(event)
    return event


def append_clock_event(db: Session, candidate: ClockEventCandidate) -> ClockEvent:
    """Validate a candidate against the user's log and persist it.

    The user's ``ClockEventHead`` row is locked for the whole read/validate/insert
    sequence. A sequence collision rolls back and re-runs once against fresh state,
    which turns a racing duplicate into ``InvalidTransition``.
    """
    for attempt in range(1, APPEND_ATTEMPTS + 1):
        try:
            event = _append_once(db, candidate)
        except ApiError:
            db.rollback()
            raise
        except IntegrityError:
            db.rollback()
            if attempt < APPEND_ATTEMPTS:
                logger.warning(
                    "clock_event_sequence_conflict",
                    extra={
                        "organization_id": candidate.organization_id,
                        "user_id": candidate.user_id,
                        "kind": candidate.kind.value,
                        "attempt": attempt,
                    },
                )
                continue
            logger.exception(
                "clock_event_append_failed",
                extra={"organization_id": candidate.organization_id, "user_id": candidate.user_id},
            )
            raise PersistenceFailure() from None
        except SQLAlchemyError:
            db.rollback()
            logger.exception(
                "clock_event_append_failed",
                extra={"organization_id": candidate.organization_id, "user_id": candidate.user_id},
            )
            raise PersistenceFailure() from None

        logger.info(
            "clock_event_appended",
            extra={
                "organization_id": event.organization_id,
                "user_id": event.user_id,
                "event_id": event.id,
                "kind": event.kind.value,
                "source": event.source.value,
                "sequence": event.sequence,
                "is_inside_geofence": event.is_inside_geofence,
            },
        )
        return event

    raise PersistenceFailure()


def _resolve_location(db: Session, *, organization_id: int, location_id: int) -> Location:
    location = db.get(Location, location_id)
    if location is None or location.organization_id != organization_id:
        raise ApiError(status_code=404, code="INVALID_LOCATION", message="Location not found.")
    if not location.is_active:
        raise ApiError(status_code=400, code="LOCATION_INACTIVE", message="Location is not active.")
    return location


def _validate_shift_for_clock_in(
    db: Session,
    *,
    actor: UserProfile,
    shift_id: int,
    now_utc: datetime,
    require_window: bool,
    early_minutes: int,
    late_minutes: int,
) -> Shift:
    shift = db.get(Shift, shift_id)
    if shift is None or shift.organization_id != actor.organization_id or shift.user_id != actor.id:
        raise ApiError(status_code=403, code="SHIFT_NOT_ASSIGNED", message="This shift is not assigned to you.")

    tz = resolve_timezone(actor.organization.timezone)
    shift_start = normalize_ts(shift.start_time)
    if local_day(shift_start, tz) != local_day(now_utc, tz):
        raise ApiError(status_code=400, code="SHIFT_NOT_TODAY", message="This shift is not scheduled for today.")

    already = db.scalar(
        select(ClockEvent.id).where(
            ClockEvent.organization_id == actor.organization_id,
            ClockEvent.user_id == actor.id,
            ClockEvent.shift_id == shift.id,
            ClockEvent.kind == ClockEventKind.CLOCK_IN,
        )
    )
    if already is not None:
        raise ApiError(
            status_code=409,
            code="SHIFT_ALREADY_CLOCKED_IN",
            message="You have already clocked in for this shift.",
        )

    if require_window:
        if now_utc < shift_start - timedelta(minutes=early_minutes):
            raise ApiError(
                status_code=400,
                code="CLOCK_IN_TOO_EARLY",
                message=f"You can clock in at most {early_minutes} minutes before your shift starts.",
                details={"shift_start": shift_start.isoformat()},
            )
        if now_utc > shift_start + timedelta(minutes=late_minutes):
            raise ApiError(
                status_code=400,
                code="CLOCK_IN_WINDOW_EXPIRED",
                message=f"The clock-in window closed {late_minutes} minutes after your shift started.",
                details={"shift_start": shift_start.isoformat()},
            )
    return shift


def clock_in(
    db: Session,
    *,
    actor: UserProfile,
    location_id: int | None = None,
    shift_id: int | None = None,
    lat: float | None = None,
    lng: float | None = None,
    notes: str | None = None,
    now_utc: datetime | None = None,
) -> ClockEvent:
    now = normalize_ts(now_utc)
    settings = resolve_time_clock_settings(actor.organization)

    if settings.require_shift_for_clock_in and shift_id is None:
        raise ApiError(status_code=400, code="SHIFT_REQUIRED", message="A shift is required to clock in.")

    shift: Shift | None = None
    if shift_id is not None:
        shift = _validate_shift_for_clock_in(
            db,
            actor=actor,
            shift_id=shift_id,
            now_utc=now,
            require_window=settings.require_shift_for_clock_in,
            early_minutes=settings.allow_early_clock_in_minutes,
            late_minutes=settings.allow_late_clock_in_minutes,
        )
        if location_id is None:
            location_id = shift.location_id

    if location_id is not None:
        _resolve_location(db, organization_id=actor.organization_id, location_id=location_id)

    return append_clock_event(
        db,
        ClockEventCandidate(
            organization_id=actor.organization_id,
            user_id=actor.id,
            kind=ClockEventKind.CLOCK_IN,
            ts_utc=now,
            location_id=location_id,
            shift_id=shift.id if shift is not None else None,
            lat=lat,
            lng=lng,
            notes=notes,
        ),
    )


def _follow_up_action(
    db: Session,
    *,
    actor: UserProfile,
    kind: ClockEventKind,
    lat: float | None,
    lng: float | None,
    notes: str | None,
    now_utc: datetime | None,
) -> ClockEvent:
    return append_clock_event(
        db,
        ClockEventCandidate(
            organization_id=actor.organization_id,
            user_id=actor.id,
            kind=kind,
            ts_utc=normalize_ts(now_utc),
            lat=lat,
            lng=lng,
            notes=notes,
        ),
    )


def clock_out(
    db: Session,
    *,
    actor: UserProfile,
    lat: float | None = None,
    lng: float | None = None,
    notes: str | None = None,
    now_utc: datetime | None = None,
) -> ClockEvent:
    return _follow_up_action(
        db, actor=actor, kind=ClockEventKind.CLOCK_OUT, lat=lat, lng=lng, notes=notes, now_utc=now_utc
    )


def start_break(
    db: Session,
    *,
    actor: UserProfile,
    lat: float | None = None,
    lng: float | None = None,
    notes: str | None = None,
    now_utc: datetime | None = None,
) -> ClockEvent:
    return _follow_up_action(
        db, actor=actor, kind=ClockEventKind.BREAK_START, lat=lat, lng=lng, notes=notes, now_utc=now_utc
    )


def end_break(
    db: Session,
    *,
    actor: UserProfile,
    lat: float | None = None,
    lng: float | None = None,
    notes: str | None = None,
    now_utc: datetime | None = None,
) -> ClockEvent:
    return _follow_up_action(
        db, actor=actor, kind=ClockEventKind.BREAK_END, lat=lat, lng=lng, notes=notes, now_utc=now_utc
    )


def load_events_between(
    db: Session,
    *,
    organization_id: int,
    user_id: int,
    start_utc: datetime,
    end_utc: datetime,
) -> list[ClockEvent]:
    return list(
        db.scalars(
            select(ClockEvent)
            .where(
                ClockEvent.organization_id == organization_id,
                ClockEvent.user_id == user_id,
                ClockEvent.ts_utc >= start_utc,
                ClockEvent.ts_utc < end_utc,
            )
            .order_by(ClockEvent.ts_utc.asc(), ClockEvent.sequence.asc())
        ).all()
    )


def get_status_snapshot(
    db: Session,
    *,
    actor: UserProfile,
    now_utc: datetime | None = None,
) -> AttendanceSnapshot:
    now = normalize_ts(now_utc)
    tz = resolve_timezone(actor.organization.timezone)
    day_start_utc, day_end_utc = local_day_bounds_utc(local_day(now, tz), tz)
    day_events = load_events_between(
        db,
        organization_id=actor.organization_id,
        user_id=actor.id,
        start_utc=day_start_utc,
        end_utc=min(day_end_utc, now + timedelta(microseconds=1)),
    )
    latest = latest_event_at_or_before(
        db,
        organization_id=actor.organization_id,
        user_id=actor.id,
        reference_ts_utc=now,
    )
    return build_snapshot(day_events, now_utc=now, latest_event=latest)


def resolve_target_user(db: Session, *, actor: UserProfile, user_id: int | None) -> UserProfile:
    if user_id is None or user_id == actor.id:
        return actor
    if not actor.is_privileged:
        raise ApiError(
            status_code=403,
            code="FORBIDDEN",
            message="Only managers and administrators can act on other users' entries.",
        )
    target = db.get(UserProfile, user_id)
    if target is None or target.organization_id != actor.organization_id:
        raise ApiError(status_code=404, code="USER_NOT_FOUND", message="User not found.")
    return target


def list_entries(
    db: Session,
    *,
    actor: UserProfile,
    start_date: date,
    end_date: date,
    user_id: int | None = None,
    status: ClockEventStatus | None = None,
    all_users: bool = False,
) -> list[ClockEvent]:
    if end_date < start_date:
        raise ApiError(status_code=422, code="INVALID_DATE_RANGE", message="end_date must not be before start_date.")

    tz = resolve_timezone(actor.organization.timezone)
    start_utc, end_utc = period_bounds_utc(start_date, end_date, tz)
    stmt = select(ClockEvent).where(
        ClockEvent.organization_id == actor.organization_id,
        ClockEvent.ts_utc >= start_utc,
        ClockEvent.ts_utc < end_utc,
    )
    if all_users and user_id is None:
        if not actor.is_privileged:
            raise ApiError(
                status_code=403,
                code="FORBIDDEN",
                message="Only managers and administrators can list every user's entries.",
            )
    else:
        target = resolve_target_user(db, actor=actor, user_id=user_id)
        stmt = stmt.where(ClockEvent.user_id == target.id)
    if status is not None:
        stmt = stmt.where(ClockEvent.status == status)
    return list(
        db.scalars(stmt.order_by(ClockEvent.ts_utc.asc(), ClockEvent.sequence.asc())).all()
    )


def record_manual_entry(
    db: Session,
    *,
    actor: UserProfile,
    kind: ClockEventKind,
    ts_utc: datetime,
    user_id: int | None = None,
    location_id: int | None = None,
    notes: str | None = None,
    now_utc: datetime | None = None,
) -> ClockEvent:
    settings = resolve_time_clock_settings(actor.organization)
    if not settings.allow_manual_time_entry:
        raise ApiError(
            status_code=403,
            code="MANUAL_ENTRY_DISABLED",
            message="Manual time entries are disabled for this organization.",
        )

    target = resolve_target_user(db, actor=actor, user_id=user_id)
    if not actor.is_privileged and not resolve_allow_time_edit(actor, settings):
        raise ApiError(
            status_code=403,
            code="TIME_EDIT_NOT_ALLOWED",
            message="You are not allowed to add manual time entries.",
        )

    cleaned_notes = (notes or "").strip() or None
    if settings.require_notes_for_manual_entry and cleaned_notes is None:
        raise ApiError(status_code=422, code="NOTES_REQUIRED", message="Notes are required for manual entries.")

    entry_ts = normalize_ts(ts_utc)
    if entry_ts > normalize_ts(now_utc):
        raise ApiError(
            status_code=422,
            code="FUTURE_TIMESTAMP",
            message="Manual entries cannot be recorded in the future.",
        )

    if location_id is not None:
        _resolve_location(db, organization_id=actor.organization_id, location_id=location_id)

    return append_clock_event(
        db,
        ClockEventCandidate(
            organization_id=target.organization_id,
            user_id=target.id,
            kind=kind,
            ts_utc=entry_ts,
            source=ClockEventSource.MANUAL,
            location_id=location_id,
            notes=cleaned_notes,
            status=ClockEventStatus.PENDING,
            enforce_geofence=False,
        ),
    )


def _resolve_org_event(db: Session, *, actor: UserProfile, event_id: int) -> ClockEvent:
    event = db.get(ClockEvent, event_id)
    if event is None or event.organization_id != actor.organization_id:
        raise ApiError(status_code=404, code="ENTRY_NOT_FOUND", message="Time entry not found.")
    return event


def _apply_status(event: ClockEvent, *, status: ClockEventStatus, actor: UserProfile, now_utc: datetime) -> None:
    event.status = status
    if status == ClockEventStatus.APPROVED:
        event.approved_by = actor.id
        event.approved_at = now_utc
    else:
        event.approved_by = None
        event.approved_at = None


def _commit(db: Session, *, action: str, details: dict[str, object]) -> None:
    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception(f"{action}_failed", extra=details)
        raise PersistenceFailure() from None


def amend_clock_event(
    db: Session,
    *,
    actor: UserProfile,
    event_id: int,
    notes: str | None = None,
    status: ClockEventStatus | None = None,
    now_utc: datetime | None = None,
) -> ClockEvent:
    """Change the mutable fields of an entry; kind and timestamp never change."""
    if notes is None and status is None:
        raise ApiError(status_code=422, code="NO_CHANGES", message="Nothing to update.")

    event = _resolve_org_event(db, actor=actor, event_id=event_id)
    if status is not None and not actor.is_privileged:
        raise ApiError(
            status_code=403,
            code="FORBIDDEN",
            message="Only managers and administrators can change an entry's status.",
        )
    if notes is not None and event.user_id != actor.id and not actor.is_privileged:
        raise ApiError(status_code=403, code="FORBIDDEN", message="You can only edit your own entries.")
    if status is not None and event.source != ClockEventSource.MANUAL:
        raise ApiError(
            status_code=422,
            code="ENTRY_NOT_MANUAL",
            message="Only manual entries carry an approval status.",
            details={"source": event.source.value},
        )

    if notes is not None:
        event.notes = notes.strip() or None
    if status is not None:
        _apply_status(event, status=status, actor=actor, now_utc=normalize_ts(now_utc))

    _commit(db, action="clock_event_amend", details={"event_id": event_id})
    db.refresh(event)
    return event


def bulk_update_entry_status(
    db: Session,
    *,
    actor: UserProfile,
    entry_ids: list[int],
    status: ClockEventStatus,
    now_utc: datetime | None = None,
) -> list[ClockEvent]:
    if not actor.is_privileged:
        raise ApiError(
            status_code=403,
            code="FORBIDDEN",
            message="Only managers and administrators can change entry status.",
        )
    unique_ids = sorted(set(entry_ids))
    if not unique_ids:
        raise ApiError(status_code=422, code="EMPTY_ENTRY_IDS", message="entry_ids must not be empty.")

    events = list(
        db.scalars(
            select(ClockEvent)
            .where(
                ClockEvent.organization_id == actor.organization_id,
                ClockEvent.id.in_(unique_ids),
            )
            .order_by(ClockEvent.id.asc())
        ).all()
    )
    missing = sorted(set(unique_ids) - {event.id for event in events})
    if missing:
        raise ApiError(
            status_code=404,
            code="ENTRY_NOT_FOUND",
            message="Some time entries were not found.",
            details={"missing_ids": missing},
        )
    not_manual = [event.id for event in events if event.source != ClockEventSource.MANUAL]
    if not_manual:
        raise ApiError(
            status_code=422,
            code="ENTRY_NOT_MANUAL",
            message="Only manual entries carry an approval status.",
            details={"entry_ids": not_manual},
        )

    now = normalize_ts(now_utc)
    for event in events:
        _apply_status(event, status=status, actor=actor, now_utc=now)
    _commit(db, action="clock_event_bulk_status", details={"entry_count": len(events)})
    return events
