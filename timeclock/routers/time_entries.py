from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.orm import Session

from timeclock.db import get_db
from timeclock.models import ClockEventStatus, UserProfile
from timeclock.audit import AuditAction, audit_user_action
from timeclock.schemas import BulkEntryStatusUpdate, ClockEventRead, EntryUpdate, ManualEntryCreate
from timeclock.security import get_current_actor
from timeclock.services.clock_events import (
    amend_clock_event,
    bulk_update_entry_status,
    list_entries,
    record_manual_entry,
)

router = APIRouter(prefix="/api/time-entries", tags=["time-entries"])


@router.get("", response_model=list[ClockEventRead])
def list_entries_endpoint(
    start_date: date = Query(...),
    end_date: date = Query(...),
    user_id: int | None = Query(default=None, ge=1),
    entry_status: ClockEventStatus | None = Query(default=None, alias="status"),
    all_users: bool = Query(default=False),
    actor: UserProfile = Depends(get_current_actor),
    db: Session = Depends(get_db),
) -> list[ClockEventRead]:
    events = list_entries(
        db,
        actor=actor,
        start_date=start_date,
        end_date=end_date,
        user_id=user_id,
        status=entry_status,
        all_users=all_users,
    )
    return [ClockEventRead.model_validate(item) for item in events]


@router.post("", response_model=ClockEventRead, status_code=status.HTTP_201_CREATED)
def create_manual_entry_endpoint(
    payload: ManualEntryCreate,
    request: Request,
    actor: UserProfile = Depends(get_current_actor),
    db: Session = Depends(get_db),
) -> ClockEventRead:
    event = record_manual_entry(
        db,
        actor=actor,
        kind=payload.kind,
        ts_utc=payload.ts_utc,
        user_id=payload.user_id,
        location_id=payload.location_id,
        notes=payload.notes,
    )
    request.state.event_id = event.id
    audit_user_action(
        db,
        request,
        actor=actor,
        action=AuditAction.TIME_ENTRY_MANUAL_CREATED,
        entity_type="clock_event",
        entity_id=event.id,
        details={"user_id": event.user_id, "kind": event.kind.value, "ts_utc": payload.ts_utc.isoformat()},
    )
    return ClockEventRead.model_validate(event)


@router.put("/bulk-status", response_model=list[ClockEventRead])
def bulk_status_endpoint(
    payload: BulkEntryStatusUpdate,
    request: Request,
    actor: UserProfile = Depends(get_current_actor),
    db: Session = Depends(get_db),
) -> list[ClockEventRead]:
    events = bulk_update_entry_status(db, actor=actor, entry_ids=payload.entry_ids, status=payload.status)
    audit_user_action(
        db,
        request,
        actor=actor,
        action=AuditAction.TIME_ENTRY_BULK_STATUS,
        entity_type="clock_event",
        entity_id=None,
        details={"entry_ids": [event.id for event in events], "status": payload.status.value},
    )
    return [ClockEventRead.model_validate(item) for item in events]


@router.put("/{entry_id}", response_model=ClockEventRead)
def update_entry_endpoint(
    entry_id: int,
    payload: EntryUpdate,
    request: Request,
    actor: UserProfile = Depends(get_current_actor),
    db: Session = Depends(get_db),
) -> ClockEventRead:
    event = amend_clock_event(
        db,
        actor=actor,
        event_id=entry_id,
        notes=payload.notes,
        status=payload.status,
    )
    audit_user_action(
        db,
        request,
        actor=actor,
        action=AuditAction.TIME_ENTRY_UPDATED,
        entity_type="clock_event",
        entity_id=event.id,
        details=payload.model_dump(mode="json", exclude_none=True),
    )
    return ClockEventRead.model_validate(event)
