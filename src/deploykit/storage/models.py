"""Data models and schema DDL for the state database.

Provides dataclass records for each table and the DDL constants
used by db.py to initialize the database.
"""

from dataclasses import dataclass
from typing import Any


# ─── Schema DDL ────────────────────────────────────────────────────────────────

SCHEMA_RUNS = """
CREATE TABLE IF NOT EXISTS runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    host TEXT NOT NULL,
    app TEXT NOT NULL,
    plan_fingerprint TEXT NOT NULL,
    dry_run INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'running',
    started_at TEXT NOT NULL DEFAULT (datetime('now')),
    finished_at TEXT,
    error_message TEXT,
    created_at TEXT NOT NULL DEFAULT (datetime('now'))
);
"""

SCHEMA_STEP_RESULTS = """
CREATE TABLE IF NOT EXISTS step_results (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id INTEGER NOT NULL,
    step_id TEXT NOT NULL,
    fingerprint TEXT NOT NULL,
    status TEXT NOT NULL,
    output TEXT,
    error TEXT,
    started_at TEXT,
    finished_at TEXT,
    FOREIGN KEY (run_id) REFERENCES runs(id) ON DELETE CASCADE
);
"""

SCHEMA_STEP_STATE = """
CREATE TABLE IF NOT EXISTS step_state (
    host TEXT NOT NULL,
    app TEXT NOT NULL,
    step_id TEXT NOT NULL,
    fingerprint TEXT NOT NULL,
    completed_at TEXT NOT NULL DEFAULT (datetime('now')),
    PRIMARY KEY (host, app, step_id)
);
"""

SCHEMA_RUN_LOGS = """
CREATE TABLE IF NOT EXISTS run_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id INTEGER NOT NULL,
    timestamp TEXT NOT NULL DEFAULT (datetime('now')),
    level TEXT NOT NULL DEFAULT 'INFO',
    message TEXT NOT NULL,
    FOREIGN KEY (run_id) REFERENCES runs(id) ON DELETE CASCADE
);
"""

ALL_SCHEMAS = [SCHEMA_RUNS, SCHEMA_STEP_RESULTS, SCHEMA_STEP_STATE, SCHEMA_RUN_LOGS]


# ─── Record Dataclasses ───────────────────────────────────────────────────────


@dataclass
class RunRecord:
    """A deployment run."""

    id: int
    host: str
    app: str
    plan_fingerprint: str
    dry_run: bool = False
    status: str = "running"
    started_at: str = ""
    finished_at: str | None = None
    error_message: str | None = None
    created_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "host": self.host,
            "app": self.app,
            "plan_fingerprint": self.plan_fingerprint,
            "dry_run": self.dry_run,
            "status": self.status,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "error_message": self.error_message,
            "created_at": self.created_at,
        }


@dataclass
class StepResultRecord:
    """Outcome of one step within a run."""

    id: int
    run_id: int
    step_id: str
    fingerprint: str
    status: str
    output: str | None = None
    error: str | None = None
    started_at: str | None = None
    finished_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "run_id": self.run_id,
            "step_id": self.step_id,
            "fingerprint": self.fingerprint,
            "status": self.status,
            "output": self.output,
            "error": self.error,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }


@dataclass
class StepStateRecord:
    """Last known completed version of a step on a host."""

    host: str
    app: str
    step_id: str
    fingerprint: str
    completed_at: str = ""


@dataclass
class RunLogRecord:
    """A log entry for a run."""

    id: int
    run_id: int
    timestamp: str
    level: str
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "run_id": self.run_id,
            "timestamp": self.timestamp,
            "level": self.level,
            "message": self.message,
        }
