import asyncio
from contextlib import suppress
from datetime import datetime, timezone
import logging
import time
from typing import Any
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from timeclock.db import engine
from timeclock.errors import ApiError, error_response
from timeclock.logging_utils import log_context, setup_json_logging
from timeclock.routers import reports, settings as settings_router, time_clock, time_entries, timesheets
from timeclock.services.auto_clock_out import run_auto_clock_out_sweep
from timeclock.services.schema_guard import SchemaGuardResult, verify_runtime_schema
from timeclock.settings import get_cors_origins, get_settings, get_worker_interval_seconds

settings = get_settings()
setup_json_logging(settings.log_level)
logger = logging.getLogger("timeclock.request")
worker_logger = logging.getLogger("timeclock.auto_clock_out_worker")


app = FastAPI(title=settings.app_name, version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-Id") or str(uuid4())
    request.state.request_id = request_id

    start = time.perf_counter()
    status_code = 500
    try:
        with log_context(request_id=request_id):
            response = await call_next(request)
        status_code = response.status_code
        response.headers["X-Request-Id"] = request_id
        return response
    finally:
        latency_ms = round((time.perf_counter() - start) * 1000, 2)
        logger.info(
            "request_complete",
            extra={
                "request_id": request_id,
                "path": request.url.path,
                "method": request.method,
                "status_code": status_code,
                "latency_ms": latency_ms,
                "organization_id": getattr(request.state, "organization_id", None),
                "actor_user_id": getattr(request.state, "actor_user_id", None),
                "event_id": getattr(request.state, "event_id", None),
            },
        )


@app.exception_handler(ApiError)
async def handle_api_error(request: Request, exc: ApiError) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details,
    )


@app.exception_handler(HTTPException)
async def handle_http_exception(request: Request, exc: HTTPException) -> JSONResponse:
    status_code = exc.status_code
    code_map = {
        401: "UNAUTHENTICATED",
        403: "FORBIDDEN",
        404: "NOT_FOUND",
        405: "METHOD_NOT_ALLOWED",
    }
    code = code_map.get(status_code, "HTTP_ERROR")
    message = str(exc.detail) if exc.detail else "Request failed."
    return error_response(
        request,
        status_code=status_code,
        code=code,
        message=message,
    )


@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(
        request,
        status_code=422,
        code="VALIDATION_ERROR",
        message="Request validation failed.",
        details={"errors": [{"loc": list(item.get("loc", ())), "msg": item.get("msg")} for item in exc.errors()]},
    )


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "unhandled_error",
        extra={
            "request_id": getattr(request.state, "request_id", "unknown"),
            "path": request.url.path,
            "method": request.method,
        },
    )
    return error_response(
        request,
        status_code=500,
        code="INTERNAL_ERROR",
        message="Unexpected server error.",
    )


app.include_router(time_clock.router)
app.include_router(time_entries.router)
app.include_router(timesheets.router)
app.include_router(reports.router)
app.include_router(settings_router.router)


def _default_schema_guard_result() -> SchemaGuardResult:
    return SchemaGuardResult(
        ok=False,
        checked_at_utc=datetime.now(timezone.utc),
        issues=["SCHEMA_GUARD_NOT_RUN"],
        warnings=[],
    )


async def _auto_clock_out_worker_loop(stop_event: asyncio.Event) -> None:
    interval_seconds = get_worker_interval_seconds()
    while not stop_event.is_set():
        now_utc = datetime.now(timezone.utc)
        try:
            with log_context(component="auto_clock_out_worker", tick_utc=now_utc.isoformat()):
                summary = await asyncio.to_thread(run_auto_clock_out_sweep, now_utc)
        except Exception:
            worker_logger.exception("auto_clock_out_worker_tick_failed")
        else:
            if summary.errors:
                worker_logger.error("auto_clock_out_worker_tick", extra=summary.to_dict())
            elif summary.clocked_out:
                worker_logger.info("auto_clock_out_worker_tick", extra=summary.to_dict())

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            continue


@app.on_event("startup")
async def run_schema_guard() -> None:
    result = await asyncio.to_thread(verify_runtime_schema, engine)
    app.state.schema_guard_result = result
    if result.ok:
        worker_logger.info("schema_guard_ok", extra=result.to_dict())
        return

    worker_logger.error("schema_guard_failed", extra=result.to_dict())
    if settings.schema_guard_strict:
        joined_issues = "; ".join(result.issues)
        raise RuntimeError(f"Runtime schema guard failed: {joined_issues}")


@app.on_event("startup")
async def start_auto_clock_out_worker() -> None:
    if not settings.auto_clock_out_worker_enabled:
        return
    if getattr(app.state, "auto_clock_out_worker_task", None) is not None:
        return

    stop_event = asyncio.Event()
    task = asyncio.create_task(_auto_clock_out_worker_loop(stop_event))
    app.state.auto_clock_out_worker_stop_event = stop_event
    app.state.auto_clock_out_worker_task = task
    worker_logger.info(
        "auto_clock_out_worker_started",
        extra={"interval_seconds": get_worker_interval_seconds()},
    )


@app.on_event("shutdown")
async def stop_auto_clock_out_worker() -> None:
    stop_event: asyncio.Event | None = getattr(app.state, "auto_clock_out_worker_stop_event", None)
    task: asyncio.Task[None] | None = getattr(app.state, "auto_clock_out_worker_task", None)
    if stop_event is not None:
        stop_event.set()
    if task is not None:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
    app.state.auto_clock_out_worker_stop_event = None
    app.state.auto_clock_out_worker_task = None


@app.get("/health")
def health() -> dict[str, Any]:
    schema_guard_result: SchemaGuardResult = getattr(app.state, "schema_guard_result", _default_schema_guard_result())
    return {
        "status": "ok",
        "schema_guard": schema_guard_result.to_dict(),
        "auto_clock_out_worker": {
            "enabled": settings.auto_clock_out_worker_enabled,
            "running": getattr(app.state, "auto_clock_out_worker_task", None) is not None,
        },
    }
