from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine, Inspector
from sqlalchemy.exc import SQLAlchemyError


@dataclass(frozen=True, slots=True)
class SchemaGuardResult:
    ok: bool
    checked_at_utc: datetime
    issues: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "checked_at_utc": self.checked_at_utc.isoformat(),
            "issues": list(self.issues),
            "warnings": list(self.warnings),
            "issue_count": len(self.issues),
            "warning_count": len(self.warnings),
        }


REQUIRED_TABLE_COLUMNS: dict[str, set[str]] = {
    "organizations": {"id", "timezone", "time_clock_settings"},
    "user_profiles": {"id", "organization_id", "role", "auto_clock_out_enabled", "auto_clock_out_time"},
    "clock_events": {"id", "organization_id", "user_id", "sequence", "kind", "ts_utc", "is_inside_geofence", "source"},
    "clock_event_heads": {"organization_id", "user_id", "sequence"},
    "timesheets": {"id", "organization_id", "user_id", "period_start", "period_end", "status"},
    "notification_intents": {"id", "user_id", "notification_type", "payload"},
    "alembic_version": {"version_num"},
}

# Appends and timesheet generation rely on these keys to reject racing writers.
REQUIRED_UNIQUE_KEYS: dict[str, tuple[str, ...]] = {
    "clock_events": ("organization_id", "user_id", "sequence"),
    "timesheets": ("organization_id", "user_id", "period_start", "period_end"),
}

REQUIRED_ENUM_VALUES: dict[str, set[str]] = {
    "clock_event_kind": {"CLOCK_IN", "CLOCK_OUT", "BREAK_START", "BREAK_END"},
    "clock_event_source": {"DEVICE", "MANUAL", "SYSTEM"},
    "timesheet_status": {"DRAFT", "SUBMITTED", "APPROVED", "REJECTED"},
}


def _check_columns(inspector: Inspector, issues: list[str]) -> set[str]:
    readable_tables: set[str] = set()
    for table_name, required_columns in REQUIRED_TABLE_COLUMNS.items():
        try:
            column_names = {str(item.get("name")) for item in inspector.get_columns(table_name)}
        except SQLAlchemyError as exc:
            issues.append(f"TABLE_UNREADABLE:{table_name}:{exc.__class__.__name__}")
            continue

        readable_tables.add(table_name)
        missing_columns = sorted(item for item in required_columns if item not in column_names)
        if missing_columns:
            issues.append(f"MISSING_COLUMNS:{table_name}:{','.join(missing_columns)}")
    return readable_tables


def _check_unique_keys(inspector: Inspector, readable_tables: set[str], issues: list[str]) -> None:
    for table_name, key_columns in REQUIRED_UNIQUE_KEYS.items():
        if table_name not in readable_tables:
            continue
        try:
            constraints = inspector.get_unique_constraints(table_name)
        except (NotImplementedError, SQLAlchemyError) as exc:
            issues.append(f"UNIQUE_KEYS_UNREADABLE:{table_name}:{exc.__class__.__name__}")
            continue
        present = {tuple(item.get("column_names") or ()) for item in constraints}
        if key_columns not in present:
            issues.append(f"MISSING_UNIQUE_KEY:{table_name}:{','.join(key_columns)}")


def _check_enums(inspector: Inspector, issues: list[str], warnings: list[str]) -> None:
    try:
        enums = inspector.get_enums() or []  # type: ignore[attr-defined]
    except (AttributeError, NotImplementedError, SQLAlchemyError) as exc:
        # Only PostgreSQL exposes named enums.
        warnings.append(f"ENUM_INSPECTION_FAILED:{exc.__class__.__name__}")
        return

    labels_by_name: dict[str, set[str]] = {}
    for enum_item in enums:
        name = str(enum_item.get("name") or "").strip()
        labels = enum_item.get("labels")
        if name and isinstance(labels, list):
            labels_by_name[name] = {str(label) for label in labels}

    for enum_name, required_values in REQUIRED_ENUM_VALUES.items():
        if enum_name not in labels_by_name:
            warnings.append(f"ENUM_NOT_FOUND:{enum_name}")
            continue
        missing_values = sorted(item for item in required_values if item not in labels_by_name[enum_name])
        if missing_values:
            issues.append(f"MISSING_ENUM_VALUES:{enum_name}:{','.join(missing_values)}")


def _check_alembic_version(engine: Engine, issues: list[str]) -> None:
    try:
        with engine.connect() as connection:
            row = connection.execute(text("SELECT version_num FROM alembic_version LIMIT 1")).scalar()
    except SQLAlchemyError as exc:
        issues.append(f"ALEMBIC_VERSION_CHECK_FAILED:{exc.__class__.__name__}")
        return
    if not (str(row).strip() if row is not None else ""):
        issues.append("ALEMBIC_VERSION_EMPTY")


def verify_runtime_schema(engine: Engine) -> SchemaGuardResult:
    """Check that the migrated database matches what the attendance services expect."""
    issues: list[str] = []
    warnings: list[str] = []
    checked_at_utc = datetime.now(timezone.utc)
    inspector = inspect(engine)

    readable_tables = _check_columns(inspector, issues)
    _check_unique_keys(inspector, readable_tables, issues)
    _check_enums(inspector, issues, warnings)
    _check_alembic_version(engine, issues)

    return SchemaGuardResult(
        ok=not issues,
        checked_at_utc=checked_at_utc,
        issues=issues,
        warnings=warnings,
    )
