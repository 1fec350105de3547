from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from timeclock.db import get_db
from timeclock.models import UserProfile
from timeclock.audit import AuditAction, audit_user_action
from timeclock.security import get_current_actor
from timeclock.services.time_clock_settings import (
    TimeClockSettings,
    TimeClockSettingsUpdate,
    resolve_time_clock_settings,
    update_time_clock_settings,
)

router = APIRouter(prefix="/api/settings", tags=["settings"])


@router.get("/organization/time-clock", response_model=TimeClockSettings)
def read_time_clock_settings(actor: UserProfile = Depends(get_current_actor)) -> TimeClockSettings:
    return resolve_time_clock_settings(actor.organization)


@router.put("/organization/time-clock", response_model=TimeClockSettings)
def write_time_clock_settings(
    payload: TimeClockSettingsUpdate,
    request: Request,
    actor: UserProfile = Depends(get_current_actor),
    db: Session = Depends(get_db),
) -> TimeClockSettings:
    resolved = update_time_clock_settings(
        db,
        actor=actor,
        organization=actor.organization,
        payload=payload,
    )
    audit_user_action(
        db,
        request,
        actor=actor,
        action=AuditAction.TIME_CLOCK_SETTINGS_UPDATED,
        entity_type="organization",
        entity_id=actor.organization_id,
        details=payload.model_dump(exclude_none=True),
    )
    return resolved
