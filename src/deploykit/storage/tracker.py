"""State Tracker - what has been applied to a host, and what happened.

The executor talks to this facade only; the repositories stay an
implementation detail of the storage package.
"""

from dataclasses import dataclass, field
from typing import Any

from deploykit.storage.db import init_db
from deploykit.storage.models import RunLogRecord, RunRecord, StepResultRecord, StepStateRecord
from deploykit.storage.repositories import (
    RunLogRepository,
    RunRepository,
    StepResultRepository,
    StepStateRepository,
)


@dataclass
class RunDetails:
    """A run with its step results and log."""

    run: RunRecord
    steps: list[StepResultRecord] = field(default_factory=list)
    logs: list[RunLogRecord] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.run.to_dict(),
            "steps": [step.to_dict() for step in self.steps],
            "logs": [log.to_dict() for log in self.logs],
        }


class StateTracker:
    """Records completed steps per (host, app) and the history of runs."""

    def __init__(self, host: str, app: str, *, initialize: bool = True) -> None:
        self.host = host
        self.app = app
        self.runs = RunRepository()
        self.results = StepResultRepository()
        self.state = StepStateRepository()
        self.logs = RunLogRepository()
        if initialize:
            init_db()

    # Runs

    def start_run(self, plan_fingerprint: str, dry_run: bool = False) -> int:
        return self.runs.create(self.host, self.app, plan_fingerprint, dry_run)

    def finish_run(self, run_id: int, status: str, error_message: str | None = None) -> None:
        self.runs.finish(run_id, status, error_message)

    def append_log(self, run_id: int, message: str, level: str = "INFO") -> None:
        self.logs.append(run_id, message, level)

    def record_step(
        self,
        run_id: int,
        step_id: str,
        fingerprint: str,
        status: str,
        *,
        output: str | None = None,
        error: str | None = None,
        started_at: str | None = None,
    ) -> None:
        self.results.add(
            run_id,
            step_id,
            fingerprint,
            status,
            output=output,
            error=error,
            started_at=started_at,
        )

    # Step state

    def is_completed(self, step_id: str, fingerprint: str) -> bool:
        """True if this exact version of the step is recorded as applied."""
        record = self.state.get(self.host, self.app, step_id)
        return record is not None and record.fingerprint == fingerprint

    def mark_completed(self, step_id: str, fingerprint: str) -> None:
        self.state.upsert(self.host, self.app, step_id, fingerprint)

    def invalidate(self, step_id: str | None = None) -> int:
        """Forget recorded state so the next run re-probes the step(s)."""
        return self.state.delete(self.host, self.app, step_id)

    def completed_steps(self) -> dict[str, StepStateRecord]:
        return {record.step_id: record for record in self.state.get_all(self.host, self.app)}

    # History

    def history(self, limit: int = 20) -> list[RunRecord]:
        return self.runs.recent(host=self.host, app=self.app, limit=limit)

    def run_details(self, run_id: int) -> RunDetails | None:
        run = self.runs.get_by_id(run_id)
        if run is None:
            return None
        return RunDetails(
            run=run,
            steps=self.results.get_by_run_id(run_id),
            logs=self.logs.get_by_run_id(run_id),
        )
