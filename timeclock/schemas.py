from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from timeclock.models import ClockEventKind, ClockEventSource, ClockEventStatus, TimesheetStatus


class Coordinates(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)


class ClockActionRequest(BaseModel):
    notes: str | None = Field(default=None, max_length=1000)
    coordinates: Coordinates | None = None

    @property
    def lat(self) -> float | None:
        return self.coordinates.lat if self.coordinates is not None else None

    @property
    def lng(self) -> float | None:
        return self.coordinates.lng if self.coordinates is not None else None


class ClockInRequest(ClockActionRequest):
    location_id: int | None = Field(default=None, ge=1)
    shift_id: int | None = Field(default=None, ge=1)


class ClockEventRead(BaseModel):
    id: int
    organization_id: int
    user_id: int
    sequence: int
    kind: ClockEventKind
    ts_utc: datetime
    location_id: int | None
    shift_id: int | None
    lat: float | None
    lng: float | None
    is_inside_geofence: bool | None
    source: ClockEventSource
    is_manual: bool
    notes: str | None
    status: ClockEventStatus
    approved_by: int | None
    approved_at: datetime | None

    model_config = ConfigDict(from_attributes=True)


class ClockActionResponse(BaseModel):
    event: ClockEventRead


class AttendanceStatusRead(BaseModel):
    status: str
    last_event: ClockEventRead | None
    entries: list[ClockEventRead]
    total_worked_minutes: int
    total_break_minutes: int


class ManualEntryCreate(BaseModel):
    kind: ClockEventKind
    ts_utc: datetime
    user_id: int | None = Field(default=None, ge=1)
    location_id: int | None = Field(default=None, ge=1)
    notes: str | None = Field(default=None, max_length=1000)


class EntryUpdate(BaseModel):
    notes: str | None = Field(default=None, max_length=1000)
    status: ClockEventStatus | None = None


class BulkEntryStatusUpdate(BaseModel):
    entry_ids: list[int] = Field(min_length=1)
    status: ClockEventStatus


class TimesheetGenerateRequest(BaseModel):
    period_start: date
    period_end: date
    user_id: int | None = Field(default=None, ge=1)

    @model_validator(mode="after")
    def validate_period(self) -> "TimesheetGenerateRequest":
        if self.period_end < self.period_start:
            raise ValueError("period_end must not be before period_start")
        return self


class TimesheetReviewRequest(BaseModel):
    review_comment: str | None = Field(default=None, max_length=2000)


class TimesheetRead(BaseModel):
    id: int
    organization_id: int
    user_id: int
    period_start: date
    period_end: date
    total_hours: float | None
    break_hours: float | None
    overtime_hours: float | None
    status: TimesheetStatus
    submitted_at: datetime | None
    reviewed_by: int | None
    reviewed_at: datetime | None
    review_comment: str | None

    model_config = ConfigDict(from_attributes=True)


class TimesheetCalculations(BaseModel):
    entries_processed: int
    total_hours: float
    break_hours: float
    overtime_hours: float


class TimesheetWithCalculations(BaseModel):
    timesheet: TimesheetRead
    calculations: TimesheetCalculations
    days: list[dict[str, Any]] = Field(default_factory=list)


class SweepSummaryRead(BaseModel):
    processed: int
    clocked_out: int
    errors: list[dict[str, Any]]
