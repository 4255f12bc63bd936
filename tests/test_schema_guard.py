from __future__ import annotations

import unittest
from unittest.mock import patch

from shiftcheck.services.schema_guard import verify_runtime_schema

from sqlite_support import build_session_factory


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
        unique_constraints: dict[str, list[dict[str, object]]] | None = None,
        indexes: dict[str, list[dict[str, object]]] | None = None,
    ):
        self._columns_by_table = columns_by_table
        self._enums = enums
        self._unique_constraints = unique_constraints or {}
        self._indexes = indexes or {}

    def get_columns(self, table_name: str):  # type: ignore[no-untyped-def]
        columns = self._columns_by_table[table_name]
        return [{"name": item} for item in columns]

    def get_unique_constraints(self, table_name: str):  # type: ignore[no-untyped-def]
        return self._unique_constraints.get(table_name, [])

    def get_indexes(self, table_name: str):  # type: ignore[no-untyped-def]
        return self._indexes.get(table_name, [])

    def get_enums(self):  # type: ignore[no-untyped-def]
        return self._enums


_FULL_COLUMNS = {
    "employees": {"id", "user_id", "full_name"},
    "shifts": {"id", "status", "qr_token", "qr_issued_at", "check_in_location"},
    "attendance": {"id", "employee_id", "date", "status", "location"},
    "alembic_version": {"version_num"},
}

_FULL_ENUMS: list[dict[str, object]] = [
    {"name": "shift_status", "labels": ["scheduled", "in-progress", "completed", "missed"]},
    {"name": "attendance_status", "labels": ["present", "late", "absent", "excused"]},
]


class SchemaGuardTests(unittest.TestCase):
    def test_verify_runtime_schema_ok_when_required_columns_exist(self) -> None:
        fake_inspector = _FakeInspector(
            columns_by_table=_FULL_COLUMNS,
            enums=_FULL_ENUMS,
            unique_constraints={
                "attendance": [{"name": "uq_attendance_employee_date", "column_names": ["employee_id", "date"]}],
            },
        )
        fake_engine = _FakeEngine("0001_initial")

        with patch("shiftcheck.services.schema_guard.inspect", return_value=fake_inspector):
            result = verify_runtime_schema(fake_engine)  # type: ignore[arg-type]

        self.assertTrue(result.ok)
        self.assertEqual(result.issues, [])
        self.assertEqual(result.warnings, [])

    def test_unique_index_satisfies_attendance_key(self) -> None:
        fake_inspector = _FakeInspector(
            columns_by_table=_FULL_COLUMNS,
            enums=_FULL_ENUMS,
            indexes={
                "attendance": [{"name": "ix_attendance_day", "column_names": ["date", "employee_id"], "unique": True}],
            },
        )

        with patch("shiftcheck.services.schema_guard.inspect", return_value=fake_inspector):
            result = verify_runtime_schema(_FakeEngine("0001_initial"))  # type: ignore[arg-type]

        self.assertTrue(result.ok)

    def test_verify_runtime_schema_reports_missing_columns(self) -> None:
        fake_inspector = _FakeInspector(
            columns_by_table={
                "employees": {"id"},
                "shifts": {"id", "status"},
                "attendance": {"id", "employee_id", "date"},
                "alembic_version": {"version_num"},
            },
            enums=[{"name": "shift_status", "labels": ["scheduled", "completed"]}],
            indexes={
                "attendance": [{"name": "ix_attendance_date", "column_names": ["employee_id", "date"], "unique": False}],
            },
        )
        fake_engine = _FakeEngine("")

        with patch("shiftcheck.services.schema_guard.inspect", return_value=fake_inspector):
            result = verify_runtime_schema(fake_engine)  # type: ignore[arg-type]

        self.assertFalse(result.ok)
        self.assertIn("MISSING_COLUMNS:employees:user_id", result.issues)
        self.assertTrue(any(item.startswith("MISSING_COLUMNS:shifts:") for item in result.issues))
        self.assertIn("MISSING_COLUMNS:attendance:location,status", result.issues)
        self.assertIn("MISSING_UNIQUE_KEY:attendance:date,employee_id", result.issues)
        self.assertIn("MISSING_ENUM_VALUES:shift_status:in-progress,missed", result.issues)
        self.assertIn("ENUM_NOT_FOUND:attendance_status", result.warnings)
        self.assertIn("ALEMBIC_VERSION_EMPTY", result.issues)

    def test_metadata_schema_passes_on_sqlite_except_migrations(self) -> None:
        engine = build_session_factory().kw["bind"]

        result = verify_runtime_schema(engine)

        self.assertFalse(result.ok)
        self.assertTrue(any(item.startswith("TABLE_UNREADABLE:alembic_version") or item.startswith("MISSING_COLUMNS:alembic_version") for item in result.issues))
        self.assertFalse(any("attendance" in item for item in result.issues))


if __name__ == "__main__":
    unittest.main()
