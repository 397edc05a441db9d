from __future__ import annotations

import unittest
from unittest.mock import patch

from opstrack.services.schema_guard import REQUIRED_TABLE_COLUMNS, verify_runtime_schema


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
    def __init__(self, *, columns_by_table: dict[str, set[str]], tables: set[str]):
        self._columns_by_table = columns_by_table
        self._tables = tables

    def get_columns(self, table_name: str):  # type: ignore[no-untyped-def]
        columns = self._columns_by_table[table_name]
        return [{"name": item} for item in columns]

    def has_table(self, table_name: str) -> bool:
        return table_name in self._tables


class SchemaGuardTests(unittest.TestCase):
    def test_verify_runtime_schema_ok_when_required_columns_exist(self) -> None:
        fake_inspector = _FakeInspector(
            columns_by_table={name: set(columns) for name, columns in REQUIRED_TABLE_COLUMNS.items()},
            tables={"web_push_subscriptions", "workflow_requests"},
        )
        fake_engine = _FakeEngine("0001_initial")

        with patch("opstrack.services.schema_guard.inspect", return_value=fake_inspector):
            result = verify_runtime_schema(fake_engine)  # type: ignore[arg-type]

        self.assertTrue(result.ok)
        self.assertEqual(result.issues, [])
        self.assertEqual(result.warnings, [])

    def test_verify_runtime_schema_reports_missing_columns(self) -> None:
        columns_by_table = {name: set(columns) for name, columns in REQUIRED_TABLE_COLUMNS.items()}
        columns_by_table["reports"] = {"id", "report_type", "content"}
        columns_by_table["package_requests"] = {"id", "status"}
        fake_inspector = _FakeInspector(columns_by_table=columns_by_table, tables={"workflow_requests"})
        fake_engine = _FakeEngine("")

        with patch("opstrack.services.schema_guard.inspect", return_value=fake_inspector):
            result = verify_runtime_schema(fake_engine)  # type: ignore[arg-type]

        self.assertFalse(result.ok)
        self.assertIn("MISSING_COLUMNS:reports:admin_notes,project_workflow_status", result.issues)
        self.assertIn("MISSING_COLUMNS:package_requests:last_modified,progress_percent", result.issues)
        self.assertIn("ALEMBIC_VERSION_EMPTY", result.issues)
        self.assertEqual(result.warnings, ["TABLE_NOT_FOUND:web_push_subscriptions"])
        self.assertEqual(result.to_dict()["issue_count"], 3)


if __name__ == "__main__":
    unittest.main()
