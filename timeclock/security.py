from __future__ import annotations

import hmac

from fastapi import Depends, Header, Request
from sqlalchemy.orm import Session

from timeclock.db import get_db
from timeclock.errors import ApiError
from timeclock.models import UserProfile
from timeclock.settings import get_settings


def _parse_identity_header(raw_value: str | None) -> int | None:
    value = (raw_value or "").strip()
    if not value:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def get_current_actor(
    request: Request,
    x_organization_id: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
    db: Session = Depends(get_db),
) -> UserProfile:
    """Resolve the caller forwarded by the gateway to an active profile."""
    organization_id = _parse_identity_header(x_organization_id)
    user_id = _parse_identity_header(x_user_id)
    if organization_id is None or user_id is None:
        raise ApiError(status_code=401, code="UNAUTHENTICATED", message="Missing identity headers.")

    user = db.get(UserProfile, user_id)
    if user is None or user.organization_id != organization_id or not user.is_active:
        raise ApiError(status_code=401, code="UNAUTHENTICATED", message="Unknown or inactive user.")

    request.state.actor_user_id = user.id
    request.state.organization_id = user.organization_id
    return user


def require_cron_secret(x_cron_secret: str | None = Header(default=None)) -> None:
    expected = (get_settings().cron_secret or "").strip()
    if not expected:
        raise ApiError(
            status_code=503,
            code="CRON_SECRET_NOT_CONFIGURED",
            message="Auto clock-out trigger is not configured.",
        )
    if not hmac.compare_digest((x_cron_secret or "").strip(), expected):
        raise ApiError(status_code=401, code="UNAUTHENTICATED", message="Invalid cron secret.")
