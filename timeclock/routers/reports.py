from __future__ import annotations

from datetime import date
from typing import Any

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from timeclock.db import get_db
from timeclock.models import UserProfile
from timeclock.security import get_current_actor
from timeclock.services.reports import build_work_hours_report

router = APIRouter(prefix="/api/reports", tags=["reports"])


@router.get("/work-hours")
def work_hours_endpoint(
    start_date: date = Query(...),
    end_date: date = Query(...),
    user_id: int | None = Query(default=None, ge=1),
    actor: UserProfile = Depends(get_current_actor),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    report = build_work_hours_report(
        db,
        actor=actor,
        start_date=start_date,
        end_date=end_date,
        user_id=user_id,
    )
    return report.to_dict()
