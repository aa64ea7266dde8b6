from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import inspect, text
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import AsyncEngine


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
    "anon_identities": {
        "anon_id",
        "recovery_code_hash",
        "recovery_code_fingerprint",
        "recovery_prev_fingerprint",
        "recovery_rotated_at",
        "last_active",
    },
    "anon_device_links": {"device_id", "anon_id", "last_active"},
    "alembic_version": {"version_num"},
}


def inspect_schema(connection: Connection) -> SchemaGuardResult:
    issues: list[str] = []
    warnings: list[str] = []
    checked_at_utc = datetime.now(timezone.utc)
    inspector = inspect(connection)

    try:
        table_names = set(inspector.get_table_names())
    except Exception as exc:  # pragma: no cover - defensive
        table_names = set()
        warnings.append(f"TABLE_LISTING_FAILED:{exc.__class__.__name__}")

    for table_name, required_columns in REQUIRED_TABLE_COLUMNS.items():
        if table_names and table_name not in table_names:
            issues.append(f"MISSING_TABLE:{table_name}")
            continue
        try:
            column_names = {str(item.get("name")) for item in inspector.get_columns(table_name)}
        except Exception as exc:  # pragma: no cover - defensive
            issues.append(f"TABLE_UNREADABLE:{table_name}:{exc.__class__.__name__}")
            continue

        missing_columns = sorted(item for item in required_columns if item not in column_names)
        if missing_columns:
            issues.append(f"MISSING_COLUMNS:{table_name}:{','.join(missing_columns)}")

    try:
        unique_constraints = inspector.get_unique_constraints("anon_identities")
        unique_indexes = [item for item in inspector.get_indexes("anon_identities") if item.get("unique")]
    except Exception as exc:  # pragma: no cover - defensive
        warnings.append(f"CONSTRAINT_INSPECTION_FAILED:{exc.__class__.__name__}")
    else:
        unique_column_sets = [
            tuple(item.get("column_names") or ()) for item in [*unique_constraints, *unique_indexes]
        ]
        if ("recovery_code_fingerprint",) not in unique_column_sets:
            issues.append("MISSING_UNIQUE:anon_identities:recovery_code_fingerprint")

    if "alembic_version" in table_names:
        try:
            row = connection.execute(text("SELECT version_num FROM alembic_version LIMIT 1")).scalar()
            version = str(row).strip() if row is not None else ""
            if not version:
                issues.append("ALEMBIC_VERSION_EMPTY")
        except Exception as exc:  # pragma: no cover - defensive
            issues.append(f"ALEMBIC_VERSION_CHECK_FAILED:{exc.__class__.__name__}")

    return SchemaGuardResult(
        ok=len(issues) == 0,
        checked_at_utc=checked_at_utc,
        issues=issues,
        warnings=warnings,
    )


async def verify_runtime_schema(engine: AsyncEngine) -> SchemaGuardResult:
    try:
        async with engine.connect() as connection:
            return await connection.run_sync(inspect_schema)
    except Exception as exc:
        return SchemaGuardResult(
            ok=False,
            checked_at_utc=datetime.now(timezone.utc),
            issues=[f"DATABASE_UNREACHABLE:{exc.__class__.__name__}"],
        )
