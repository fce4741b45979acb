"""Repository classes for CRUD operations on the state database.

Each write runs in its own transaction. Read operations return typed
dataclass records.
"""

from datetime import datetime
from typing import Any

from deploykit.storage.db import get_db, transaction
from deploykit.storage.models import (
    RunLogRecord,
    RunRecord,
    StepResultRecord,
    StepStateRecord,
)


def _now() -> str:
    return datetime.now().isoformat(timespec="seconds")


class RunRepository:
    """CRUD operations for the runs table."""

    def create(self, host: str, app: str, plan_fingerprint: str, dry_run: bool = False) -> int:
        """Insert a new run with status=running. Returns the run ID."""
        with transaction() as db:
            cursor = db.execute(
                """INSERT INTO runs (host, app, plan_fingerprint, dry_run, status, started_at)
                   VALUES (?, ?, ?, ?, 'running', ?)""",
                (host, app, plan_fingerprint, int(dry_run), _now()),
            )
        return cursor.lastrowid  # type: ignore[return-value]

    def finish(self, run_id: int, status: str, error_message: str | None = None) -> None:
        """Mark a run finished."""
        with transaction() as db:
            db.execute(
                "UPDATE runs SET status = ?, finished_at = ?, error_message = ? WHERE id = ?",
                (status, _now(), error_message, run_id),
            )

    def get_by_id(self, run_id: int) -> RunRecord | None:
        db = get_db()
        row = db.execute("SELECT * FROM runs WHERE id = ?", (run_id,)).fetchone()
        return self._row_to_record(row) if row else None

    def recent(self, host: str | None = None, app: str | None = None, limit: int = 20) -> list[RunRecord]:
        """Return runs, most recent first, optionally filtered."""
        db = get_db()
        clauses: list[str] = []
        params: list[Any] = []
        if host is not None:
            clauses.append("host = ?")
            params.append(host)
        if app is not None:
            clauses.append("app = ?")
            params.append(app)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        rows = db.execute(
            f"SELECT * FROM runs {where} ORDER BY id DESC LIMIT ?",
            params,
        ).fetchall()
        return [self._row_to_record(row) for row in rows]

    @staticmethod
    def _row_to_record(row: Any) -> RunRecord:
        return RunRecord(
            id=row["id"],
            host=row["host"],
            app=row["app"],
            plan_fingerprint=row["plan_fingerprint"],
            dry_run=bool(row["dry_run"]),
            status=row["status"],
            started_at=row["started_at"] or "",
            finished_at=row["finished_at"],
            error_message=row["error_message"],
            created_at=row["created_at"] or "",
        )


class StepResultRepository:
    """Append-only per-run step outcomes."""

    def add(
        self,
        run_id: int,
        step_id: str,
        fingerprint: str,
        status: str,
        *,
        output: str | None = None,
        error: str | None = None,
        started_at: str | None = None,
    ) -> int:
        with transaction() as db:
            cursor = db.execute(
                """INSERT INTO step_results (run_id, step_id, fingerprint, status, output, error,
                                             started_at, finished_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (run_id, step_id, fingerprint, status, output, error, started_at, _now()),
            )
        return cursor.lastrowid  # type: ignore[return-value]

    def get_by_run_id(self, run_id: int) -> list[StepResultRecord]:
        db = get_db()
        rows = db.execute(
            "SELECT * FROM step_results WHERE run_id = ? ORDER BY id",
            (run_id,),
        ).fetchall()
        return [self._row_to_record(row) for row in rows]

    @staticmethod
    def _row_to_record(row: Any) -> StepResultRecord:
        return StepResultRecord(
            id=row["id"],
            run_id=row["run_id"],
            step_id=row["step_id"],
            fingerprint=row["fingerprint"],
            status=row["status"],
            output=row["output"],
            error=row["error"],
            started_at=row["started_at"],
            finished_at=row["finished_at"],
        )


class StepStateRepository:
    """Which step versions are known to be applied on each host."""

    def upsert(self, host: str, app: str, step_id: str, fingerprint: str) -> None:
        with transaction() as db:
            db.execute(
                """INSERT INTO step_state (host, app, step_id, fingerprint, completed_at)
                   VALUES (?, ?, ?, ?, ?)
                   ON CONFLICT (host, app, step_id)
                   DO UPDATE SET fingerprint = excluded.fingerprint, completed_at = excluded.completed_at""",
                (host, app, step_id, fingerprint, _now()),
            )

    def get(self, host: str, app: str, step_id: str) -> StepStateRecord | None:
        db = get_db()
        row = db.execute(
            "SELECT * FROM step_state WHERE host = ? AND app = ? AND step_id = ?",
            (host, app, step_id),
        ).fetchone()
        return self._row_to_record(row) if row else None

    def get_all(self, host: str, app: str) -> list[StepStateRecord]:
        db = get_db()
        rows = db.execute(
            "SELECT * FROM step_state WHERE host = ? AND app = ? ORDER BY completed_at",
            (host, app),
        ).fetchall()
        return [self._row_to_record(row) for row in rows]

    def delete(self, host: str, app: str, step_id: str | None = None) -> int:
        """Forget one step (or all steps) for a host/app. Returns rows removed."""
        with transaction() as db:
            if step_id is None:
                cursor = db.execute("DELETE FROM step_state WHERE host = ? AND app = ?", (host, app))
            else:
                cursor = db.execute(
                    "DELETE FROM step_state WHERE host = ? AND app = ? AND step_id = ?",
                    (host, app, step_id),
                )
        return cursor.rowcount

    @staticmethod
    def _row_to_record(row: Any) -> StepStateRecord:
        return StepStateRecord(
            host=row["host"],
            app=row["app"],
            step_id=row["step_id"],
            fingerprint=row["fingerprint"],
            completed_at=row["completed_at"] or "",
        )


class RunLogRepository:
    """Append-only log storage for run progress."""

    def append(self, run_id: int, message: str, level: str = "INFO") -> None:
        with transaction() as db:
            db.execute(
                "INSERT INTO run_logs (run_id, level, message) VALUES (?, ?, ?)",
                (run_id, level, message),
            )

    def get_by_run_id(self, run_id: int) -> list[RunLogRecord]:
        db = get_db()
        rows = db.execute("SELECT * FROM run_logs WHERE run_id = ? ORDER BY id", (run_id,)).fetchall()
        return [self._row_to_record(row) for row in rows]

    @staticmethod
    def _row_to_record(row: Any) -> RunLogRecord:
        return RunLogRecord(
            id=row["id"],
            run_id=row["run_id"],
            timestamp=row["timestamp"] or "",
            level=row["level"],
            message=row["message"],
        )
