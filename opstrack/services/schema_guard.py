from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine


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
    "users": {"id", "username", "password", "role", "has_import_export_permission"},
    "package_requests": {"id", "status", "progress_percent", "last_modified"},
    "package_attachments": {"id", "package_id", "type", "url"},
    "package_logs": {"id", "package_id", "action", "actor_id"},
    "reports": {"id", "report_type", "content", "admin_notes", "project_workflow_status"},
    "report_logs": {"id", "report_id", "action"},
    "notifications": {"id", "user_id", "is_read"},
    "fcm_tokens": {"id", "user_id", "token"},
    "alembic_version": {"version_num"},
}

OPTIONAL_TABLES: tuple[str, ...] = ("web_push_subscriptions", "workflow_requests")


def verify_runtime_schema(engine: Engine) -> SchemaGuardResult:
    issues: list[str] = []
    warnings: list[str] = []
    checked_at_utc = datetime.now(timezone.utc)
    inspector = inspect(engine)

    for table_name, required_columns in REQUIRED_TABLE_COLUMNS.items():
        try:
            column_names = {str(item.get("name")) for item in inspector.get_columns(table_name)}
        except Exception as exc:  # pragma: no cover
            issues.append(f"TABLE_UNREADABLE:{table_name}:{exc.__class__.__name__}")
            continue

        missing_columns = sorted(item for item in required_columns if item not in column_names)
        if missing_columns:
            issues.append(f"MISSING_COLUMNS:{table_name}:{','.join(missing_columns)}")

    for table_name in OPTIONAL_TABLES:
        try:
            if not inspector.has_table(table_name):
                warnings.append(f"TABLE_NOT_FOUND:{table_name}")
        except Exception as exc:  # pragma: no cover
            warnings.append(f"TABLE_INSPECTION_FAILED:{table_name}:{exc.__class__.__name__}")

    try:
        with engine.connect() as connection:
            row = connection.execute(text("SELECT version_num FROM alembic_version LIMIT 1")).scalar()
            version = str(row).strip() if row is not None else ""
            if not version:
                issues.append("ALEMBIC_VERSION_EMPTY")
    except Exception as exc:  # pragma: no cover
        issues.append(f"ALEMBIC_VERSION_CHECK_FAILED:{exc.__class__.__name__}")

    return SchemaGuardResult(
        ok=len(issues) == 0,
        checked_at_utc=checked_at_utc,
        issues=issues,
        warnings=warnings,
    )
