from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import time
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from sqlalchemy.orm import Session

from timeclock.errors import ApiError
from timeclock.models import SETTINGS_ADMIN_ROLES, Organization, UserProfile

logger = logging.getLogger("timeclock.settings")

DEFAULT_ALLOW_TIME_EDIT = True


class TimeClockSettings(BaseModel):
    """Fully-resolved tenant time-clock configuration."""

    model_config = ConfigDict(extra="ignore")

    require_shift_for_clock_in: bool = False
    allow_early_clock_in_minutes: int = Field(default=30, ge=0)
    allow_late_clock_in_minutes: int = Field(default=60, ge=0)

    auto_clock_out_enabled: bool = False
    auto_clock_out_hours: float = Field(default=12, gt=0)

    allow_manual_time_entry: bool = True
    require_notes_for_manual_entry: bool = True

    overtime_threshold_hours: float = Field(default=8, ge=0)
    notify_on_overtime: bool = True


class TimeClockSettingsUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    require_shift_for_clock_in: bool | None = None
    allow_early_clock_in_minutes: int | None = Field(default=None, ge=0)
    allow_late_clock_in_minutes: int | None = Field(default=None, ge=0)
    auto_clock_out_enabled: bool | None = None
    auto_clock_out_hours: float | None = Field(default=None, gt=0)
    allow_manual_time_entry: bool | None = None
    require_notes_for_manual_entry: bool | None = None
    overtime_threshold_hours: float | None = Field(default=None, ge=0)
    notify_on_overtime: bool | None = None


def resolve_time_clock_settings(organization: Organization | None) -> TimeClockSettings:
    raw: Any = organization.time_clock_settings if organization is not None else None
    if not raw:
        return TimeClockSettings()
    if not isinstance(raw, dict):
        logger.warning(
            "time_clock_settings_defaulted",
            extra={"organization_id": organization.id if organization else None, "reason": "not_an_object"},
        )
        return TimeClockSettings()
    try:
        return TimeClockSettings.model_validate(raw)
    except ValidationError as exc:
        logger.warning(
            "time_clock_settings_defaulted",
            extra={
                "organization_id": organization.id if organization else None,
                "reason": "invalid_document",
                "errors": exc.errors(include_url=False),
            },
        )
        return TimeClockSettings()


def update_time_clock_settings(
    db: Session,
    *,
    actor: UserProfile,
    organization: Organization,
    payload: TimeClockSettingsUpdate,
) -> TimeClockSettings:
    if actor.role not in SETTINGS_ADMIN_ROLES:
        raise ApiError(status_code=403, code="FORBIDDEN", message="Only owners and admins can change time-clock settings.")

    merged = resolve_time_clock_settings(organization).model_dump()
    merged.update(payload.model_dump(exclude_none=True))
    resolved = TimeClockSettings.model_validate(merged)
    organization.time_clock_settings = resolved.model_dump()
    db.commit()
    return resolved


@dataclass(frozen=True)
class AutoClockOutPolicy:
    enabled: bool
    at_time: time | None
    after_hours: float
    source: str


def resolve_auto_clock_out_policy(user: UserProfile, settings: TimeClockSettings) -> AutoClockOutPolicy:
    """User override first, then the organization, then the built-in default."""
    if user.auto_clock_out_enabled is False:
        return AutoClockOutPolicy(enabled=False, at_time=None, after_hours=settings.auto_clock_out_hours, source="user")
    if user.auto_clock_out_time is not None:
        return AutoClockOutPolicy(
            enabled=True,
            at_time=user.auto_clock_out_time,
            after_hours=settings.auto_clock_out_hours,
            source="user",
        )
    return AutoClockOutPolicy(
        enabled=settings.auto_clock_out_enabled,
        at_time=None,
        after_hours=settings.auto_clock_out_hours,
        source="organization",
    )


def resolve_allow_time_edit(user: UserProfile, settings: TimeClockSettings) -> bool:
    if user.allow_time_edit is not None:
        return bool(user.allow_time_edit)
    if not settings.allow_manual_time_entry:
        return False
    return DEFAULT_ALLOW_TIME_EDIT
