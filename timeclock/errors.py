from __future__ import annotations

from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse


class ApiError(Exception):
    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message
        self.details = details


class InvalidTransition(ApiError):
    """The clock action does not follow from the user's current status."""

    def __init__(self, *, current_status: str, reason: str, message: str):
        super().__init__(
            status_code=409,
            code="INVALID_TRANSITION",
            message=message,
            details={"current_status": current_status, "reason": reason},
        )
        self.current_status = current_status
        self.reason = reason


class GeofenceViolation(ApiError):
    def __init__(
        self,
        *,
        message: str,
        distance_m: float | None = None,
        radius_m: float | None = None,
    ):
        details: dict[str, Any] = {}
        if distance_m is not None:
            details["distance_m"] = round(distance_m, 2)
        if radius_m is not None:
            details["radius_m"] = radius_m
        super().__init__(
            status_code=403,
            code="GEOFENCE_VIOLATION",
            message=message,
            details=details or None,
        )
        self.distance_m = distance_m


class AlreadyExists(ApiError):
    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(status_code=409, code="ALREADY_EXISTS", message=message, details=details)


class InvalidStateForAction(ApiError):
    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(status_code=400, code="INVALID_STATE_FOR_ACTION", message=message, details=details)


class PersistenceFailure(ApiError):
    def __init__(self, message: str = "Attendance store is unavailable. Please retry."):
        super().__init__(status_code=503, code="PERSISTENCE_FAILURE", message=message)


def get_request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return str(request_id)
    return "unknown"


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> JSONResponse:
    payload: dict[str, Any] = {
        "error": {
            "code": code,
            "message": message,
            "request_id": get_request_id(request),
        }
    }
    if details:
        payload["error"]["details"] = details
    return JSONResponse(status_code=status_code, content=payload)
