from __future__ import annotations

import unittest
from unittest.mock import patch

from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from kintai.db import Base
from kintai.services.schema_guard import verify_runtime_schema

FULL_COLUMNS = {
    "attendance_records": {"id", "clock_records", "source_id", "edit_reason", "edited_by", "flags", "version"},
    "leave_ledger_entries": {"id", "available_units", "held_units", "consumed_units"},
    "leave_holds": {"id", "request_id", "units_held", "status"},
    "leave_requests": {"id", "status", "approval_steps", "current_step"},
    "leave_grants": {"id", "units", "expires_on", "lapsed_units"},
    "alembic_version": {"version_num"},
}

FULL_ENUMS = [
    {
        "name": "attendance_status",
        "labels": ["in_progress", "normal", "late", "early_leave", "late_early_leave", "absent"],
    },
    {"name": "leave_hold_status", "labels": ["held", "finalized", "released"]},
]


class _FakeResult:
    def __init__(self, value):
        self._value = value

    def scalar(self):  # type: ignore[no-untyped-def]
        return self._value


class _FakeConnection:
    def __init__(self, version_value):
        self._version_value = version_value

    def __enter__(self):  # type: ignore[no-untyped-def]
        return self

    def __exit__(self, exc_type, exc, tb):  # type: ignore[no-untyped-def]
        return False

    def execute(self, _statement):  # type: ignore[no-untyped-def]
        return _FakeResult(self._version_value)


class _FakeEngine:
    def __init__(self, version_value):
        self._version_value = version_value

    def connect(self):  # type: ignore[no-untyped-def]
        return _FakeConnection(self._version_value)


class _FakeInspector:
    def __init__(
        self,
        *,
        columns_by_table: dict[str, set[str]],
        enums: list[dict[str, object]],
        indexes_by_table: dict[str, set[str]] | None = None,
    ):
        self._columns_by_table = columns_by_table
        self._enums = enums
        self._indexes_by_table = indexes_by_table or {"attendance_records": {"uq_attendance_records_root_day"}}

    def get_columns(self, table_name: str):  # type: ignore[no-untyped-def]
        columns = self._columns_by_table[table_name]
        return [{"name": item} for item in columns]

    def get_indexes(self, table_name: str):  # type: ignore[no-untyped-def]
        return [{"name": item} for item in self._indexes_by_table.get(table_name, set())]

    def get_enums(self):  # type: ignore[no-untyped-def]
        return self._enums


class SchemaGuardTests(unittest.TestCase):
    def test_verify_runtime_schema_ok_when_required_columns_exist(self) -> None:
        fake_inspector = _FakeInspector(columns_by_table=FULL_COLUMNS, enums=FULL_ENUMS)
        fake_engine = _FakeEngine("0002_leave_grant_lapse")

        with patch("kintai.services.schema_guard.inspect", return_value=fake_inspector):
            result = verify_runtime_schema(fake_engine)  # type: ignore[arg-type]

        self.assertTrue(result.ok)
        self.assertEqual(result.issues, [])
        self.assertEqual(result.warnings, [])

    def test_verify_runtime_schema_reports_missing_columns(self) -> None:
        fake_inspector = _FakeInspector(
            columns_by_table={
                **FULL_COLUMNS,
                "attendance_records": {"id", "clock_records", "flags"},
                "leave_holds": {"id", "request_id"},
            },
            enums=[{"name": "attendance_status", "labels": ["normal"]}],
            indexes_by_table={"attendance_records": set()},
        )
        fake_engine = _FakeEngine("")

        with patch("kintai.services.schema_guard.inspect", return_value=fake_inspector):
            result = verify_runtime_schema(fake_engine)  # type: ignore[arg-type]

        self.assertFalse(result.ok)
        self.assertIn("MISSING_COLUMNS:attendance_records:edit_reason,edited_by,source_id,version", result.issues)
        self.assertIn("MISSING_COLUMNS:leave_holds:status,units_held", result.issues)
        self.assertIn("MISSING_INDEXES:attendance_records:uq_attendance_records_root_day", result.issues)
        self.assertTrue(any(item.startswith("MISSING_ENUM_VALUES:attendance_status:") for item in result.issues))
        self.assertIn("ENUM_NOT_FOUND:leave_hold_status", result.warnings)
        self.assertIn("ALEMBIC_VERSION_EMPTY", result.issues)

    def test_sqlite_schema_without_alembic_table_is_reported(self) -> None:
        engine = create_engine("sqlite+pysqlite:///:memory:", poolclass=StaticPool)
        Base.metadata.create_all(engine)

        result = verify_runtime_schema(engine)

        self.assertFalse(result.ok)
        self.assertTrue(any(item.startswith("ALEMBIC_VERSION_CHECK_FAILED") for item in result.issues))
        self.assertFalse(any(item.startswith("MISSING_INDEXES") for item in result.issues))
        engine.dispose()


if __name__ == "__main__":
    unittest.main()
