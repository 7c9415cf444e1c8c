from __future__ import annotations

import tempfile
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from tradeflow.registry.db import MIGRATIONS_DIR, Database

DSN = "postgresql://u:p@localhost:5432/tradeflow"


def _mock_conn(cursor: MagicMock) -> MagicMock:
    cursor.__enter__ = MagicMock(return_value=cursor)
    cursor.__exit__ = MagicMock(return_value=False)
    conn = MagicMock()
    conn.cursor.return_value = cursor
    return conn


class TestDatabaseInit:
    def test_stores_dsn(self) -> None:
        db = Database(DSN)
        assert db._dsn == DSN

    def test_not_connected_by_default(self) -> None:
        db = Database(DSN)
        assert db._pool is None
        assert db._conn is None


class TestDatabaseExecute:
    def test_execute_returns_dicts(self) -> None:
        db = Database(DSN)

        mock_cursor = MagicMock()
        mock_cursor.description = [("id",), ("status",)]
        mock_cursor.fetchall.return_value = [
            {"id": "run-1", "status": "running"},
            {"id": "run-2", "status": "pending"},
        ]
        mock_conn = _mock_conn(mock_cursor)
        db._conn = mock_conn

        result = db.execute("SELECT id, status FROM tradeflow.analysis_runs")

        assert result == [
            {"id": "run-1", "status": "running"},
            {"id": "run-2", "status": "pending"},
        ]
        mock_conn.commit.assert_called_once()

    def test_execute_no_results(self) -> None:
        db = Database(DSN)

        mock_cursor = MagicMock()
        mock_cursor.description = None
        db._conn = _mock_conn(mock_cursor)

        result = db.execute("UPDATE tradeflow.analysis_runs SET status = %s", ("error",))
        assert result == []

    def test_execute_rolls_back_and_reraises(self) -> None:
        db = Database(DSN)

        mock_cursor = MagicMock()
        mock_cursor.execute.side_effect = RuntimeError("deadlock detected")
        mock_conn = _mock_conn(mock_cursor)
        db._conn = mock_conn

        with pytest.raises(RuntimeError, match="deadlock"):
            db.execute("UPDATE tradeflow.analysis_runs SET status = 'error'")
        mock_conn.rollback.assert_called_once()
        mock_conn.commit.assert_not_called()

    def test_execute_raises_when_not_connected(self) -> None:
        db = Database(DSN)
        with pytest.raises(RuntimeError, match="not connected"):
            db.execute("SELECT 1")

    def test_pool_connection_is_returned(self) -> None:
        db = Database(DSN)
        mock_conn = _mock_conn(MagicMock(description=None))
        db._pool = MagicMock()
        db._pool.getconn.return_value = mock_conn

        db.execute("SELECT 1")

        db._pool.putconn.assert_called_once_with(mock_conn)


class TestTransaction:
    def test_commits_all_statements_together(self) -> None:
        db = Database(DSN)
        mock_cursor = MagicMock()
        mock_conn = _mock_conn(mock_cursor)
        db._conn = mock_conn

        with db.transaction() as cur:
            cur.execute("INSERT INTO a VALUES (1)")
            cur.execute("INSERT INTO b VALUES (2)")

        assert mock_cursor.execute.call_count == 2
        mock_conn.commit.assert_called_once()
        mock_conn.rollback.assert_not_called()

    def test_rolls_back_on_error(self) -> None:
        db = Database(DSN)
        mock_conn = _mock_conn(MagicMock())
        db._conn = mock_conn

        with pytest.raises(ValueError):
            with db.transaction() as cur:
                cur.execute("INSERT INTO a VALUES (1)")
                raise ValueError("step insert failed")

        mock_conn.rollback.assert_called_once()
        mock_conn.commit.assert_not_called()


class TestMigrationRunner:
    def test_finds_and_runs_sql_files(self) -> None:
        db = Database(DSN)

        with tempfile.TemporaryDirectory() as tmpdir:
            (Path(tmpdir) / "001_runs.sql").write_text("CREATE TABLE runs (id TEXT);")
            (Path(tmpdir) / "002_steps.sql").write_text("CREATE TABLE steps (id TEXT);")

            mock_cursor = MagicMock()
            mock_cursor.fetchall.return_value = []
            db._conn = _mock_conn(mock_cursor)

            applied = db.run_migrations(tmpdir)

            calls = mock_cursor.execute.call_args_list
            assert "_migrations" in str(calls[0])
            assert "SELECT filename" in str(calls[1])
            # CREATE + SELECT + 2 * (SQL + INSERT)
            assert len(calls) == 6
            assert applied == ["001_runs.sql", "002_steps.sql"]

    def test_skips_applied_migrations(self) -> None:
        db = Database(DSN)

        with tempfile.TemporaryDirectory() as tmpdir:
            (Path(tmpdir) / "001_runs.sql").write_text("CREATE TABLE runs (id TEXT);")
            (Path(tmpdir) / "002_steps.sql").write_text("CREATE TABLE steps (id TEXT);")

            mock_cursor = MagicMock()
            mock_cursor.fetchall.return_value = [{"filename": "001_runs.sql"}]
            db._conn = _mock_conn(mock_cursor)

            applied = db.run_migrations(tmpdir)

            assert len(mock_cursor.execute.call_args_list) == 4
            assert applied == ["002_steps.sql"]

    def test_bundled_schema(self) -> None:
        sql = (MIGRATIONS_DIR / "001_workflow.sql").read_text()
        for table in ("analysis_runs", "workflow_steps", "debate_rounds"):
            assert f"tradeflow.{table}" in sql


class TestHealthCheck:
    def test_healthy(self) -> None:
        db = Database(DSN)

        mock_cursor = MagicMock()
        mock_cursor.description = [("ok",)]
        mock_cursor.fetchall.return_value = [{"ok": 1}]
        db._conn = _mock_conn(mock_cursor)

        assert db.health_check() is True

    def test_unhealthy(self) -> None:
        db = Database(DSN)
        assert db.health_check() is False


class TestContextManager:
    @patch("tradeflow.registry.db.HAS_POOL", False)
    @patch("tradeflow.registry.db.psycopg")
    def test_context_manager(self, mock_psycopg: MagicMock) -> None:
        mock_conn = MagicMock()
        mock_psycopg.connect.return_value = mock_conn

        with Database(DSN) as db:
            assert db._conn is mock_conn

        mock_conn.close.assert_called_once()
