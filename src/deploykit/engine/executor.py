"""Step Executor - runs a plan against one host.

For every step, in plan order:
1. Skip it if the tracker already has this exact version recorded
2. Otherwise probe the host; an already satisfied step is only recorded
3. Otherwise apply (with retries) and verify
4. Stop at the first failure; later steps are reported as not run

A re-run after a failure therefore resumes at the failed step.
"""

import logging
import shlex
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable

from paramiko.ssh_exception import SSHException

from deploykit.connector.ssh import CommandResult, SSHConnector
from deploykit.engine.jobs import DeployRun, LogListener, RunStatus
from deploykit.exceptions import LockError, StepError
from deploykit.model.target import TargetState
from deploykit.plan.builder import Plan
from deploykit.plan.steps import Step
from deploykit.storage.tracker import StateTracker

logger = logging.getLogger(__name__)

LOCK_DIR = "/var/lock"
OUTPUT_LIMIT = 4000


class StepStatus(str, Enum):
    """What happened to a step during a run."""
    SKIPPED = "skipped"  # recorded as applied, not probed
    UNCHANGED = "unchanged"  # probed, already satisfied
    PENDING = "pending"  # dry-run: would change
    CHANGED = "changed"
    FAILED = "failed"
    NOT_RUN = "not_run"


@dataclass
class StepOutcome:
    """Result of one step."""

    step_id: str
    description: str
    status: StepStatus
    message: str = ""
    output: str = ""
    duration: float = 0.0


@dataclass
class ExecutionReport:
    """Result of executing a whole plan."""

    run: DeployRun
    outcomes: list[StepOutcome] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not any(o.status == StepStatus.FAILED for o in self.outcomes)

    @property
    def changed(self) -> list[StepOutcome]:
        return [o for o in self.outcomes if o.status == StepStatus.CHANGED]

    @property
    def pending(self) -> list[StepOutcome]:
        return [o for o in self.outcomes if o.status == StepStatus.PENDING]

    @property
    def failed_step(self) -> StepOutcome | None:
        return next((o for o in self.outcomes if o.status == StepStatus.FAILED), None)

    @property
    def duration(self) -> float:
        return self.run.duration

    def counts(self) -> dict[str, int]:
        totals = {status.value: 0 for status in StepStatus}
        for outcome in self.outcomes:
            totals[outcome.status.value] += 1
        return totals


def lock_path(app: str) -> str:
    return f"{LOCK_DIR}/deploykit-{app}.lock"


def _collect_output(results: list[CommandResult]) -> str:
    text = "\n".join(r.stdout.strip() for r in results if r.stdout.strip())
    return text[-OUTPUT_LIMIT:]


class StepExecutor:
    """Execute plans idempotently, recording state as it goes.

    Example:
        >>> with SSHConnector(config) as ssh:
        ...     tracker = StateTracker(ssh.host, target.name)
        ...     report = StepExecutor(ssh, tracker).execute(plan, target)
    """

    def __init__(
        self,
        ssh: SSHConnector,
        tracker: StateTracker,
        *,
        dry_run: bool = False,
        recheck: bool = False,
        force_unlock: bool = False,
        listeners: list[LogListener] | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self.ssh = ssh
        self.tracker = tracker
        self.dry_run = dry_run
        self.recheck = recheck
        self.force_unlock = force_unlock
        self.listeners = list(listeners or [])
        self._sleep = sleep or time.sleep

    def execute(self, plan: Plan, target: TargetState) -> ExecutionReport:
        run = DeployRun(host=self.tracker.host, app=target.name, dry_run=self.dry_run)
        run.id = self.tracker.start_run(plan.fingerprint, dry_run=self.dry_run)
        run.listeners.append(lambda entry: self.tracker.append_log(run.id, entry.message, entry.level))
        run.listeners.extend(self.listeners)
        report = ExecutionReport(run=run)

        mode = "dry run" if self.dry_run else "apply"
        run.log_info(f"Run #{run.id}: {mode} of {len(plan)} steps for {target.name} on {run.host}")

        locked = False
        error_message: str | None = None
        try:
            if not self.dry_run:
                self._acquire_lock(target.name, run)
                locked = True

            for index, step in enumerate(plan):
                outcome = self._run_step(step, run)
                report.outcomes.append(outcome)
                if outcome.status == StepStatus.FAILED:
                    error_message = outcome.message
                    for remaining in plan.steps[index + 1:]:
                        report.outcomes.append(
                            StepOutcome(remaining.id, remaining.description, StepStatus.NOT_RUN)
                        )
                    break
        except LockError as e:
            error_message = str(e)
            run.log_error(error_message)
            raise
        except Exception as e:
            error_message = f"Unexpected error: {e}"
            run.log_error(error_message)
            raise
        finally:
            if locked:
                self._release_lock(target.name, run)
            status = RunStatus.SUCCESS if error_message is None else RunStatus.FAILED
            run.finish(status)
            run.result = report.counts()
            self.tracker.finish_run(run.id, status.value, error_message)

        if report.success:
            verb = "would change" if self.dry_run else "changed"
            touched = len(report.pending) if self.dry_run else len(report.changed)
            run.log_success(f"Run #{run.id} finished: {touched} step(s) {verb} in {run.duration:.1f}s")
        else:
            run.log_error(f"Run #{run.id} failed at {report.failed_step.step_id}; re-run to resume")
        return report

    # ------------------------------------------------------------------

    def _run_step(self, step: Step, run: DeployRun) -> StepOutcome:
        fingerprint = step.fingerprint()
        started = time.monotonic()
        started_at = datetime.now().isoformat(timespec="seconds")

        def finish(status: StepStatus, message: str = "", output: str = "") -> StepOutcome:
            self.tracker.record_step(
                run.id,
                step.id,
                fingerprint,
                status.value,
                output=output or None,
                error=message if status == StepStatus.FAILED else None,
                started_at=started_at,
            )
            return StepOutcome(
                step.id,
                step.description,
                status,
                message=message,
                output=output,
                duration=time.monotonic() - started,
            )

        if not step.always_run and not self.recheck and self.tracker.is_completed(step.id, fingerprint):
            logger.debug("%s: recorded as applied (%s)", step.id, fingerprint)
            return finish(StepStatus.SKIPPED, "recorded")

        try:
            if not step.always_run and step.probe(self.ssh):
                if not self.dry_run:
                    self.tracker.mark_completed(step.id, fingerprint)
                run.log_info(f"{step.id}: already in place")
                return finish(StepStatus.UNCHANGED, "already in place")

            if self.dry_run:
                run.log_info(f"{step.id}: would {step.description[0].lower()}{step.description[1:]}")
                return finish(StepStatus.PENDING, "would change")

            run.log_info(f"{step.id}: {step.description}")
            results = self._apply_with_retries(step, run)
        except StepError as e:
            run.log_error(f"{step.id}: {e}")
            output = _collect_output([e.result]) if e.result else ""
            return finish(StepStatus.FAILED, str(e), output)
        except (OSError, SSHException) as e:
            message = f"[{step.id}] connection error: {e}"
            run.log_error(message)
            return finish(StepStatus.FAILED, message)

        self.tracker.mark_completed(step.id, fingerprint)
        run.log_success(f"{step.id}: done")
        return finish(StepStatus.CHANGED, "applied", _collect_output(results))

    def _apply_with_retries(self, step: Step, run: DeployRun) -> list[CommandResult]:
        attempts = step.retries + 1
        for attempt in range(1, attempts + 1):
            try:
                results = step.apply(self.ssh)
                if not step.verify(self.ssh):
                    raise StepError(step.id, "desired state not reached after apply")
                return results
            except StepError as e:
                if attempt == attempts:
                    raise
                run.log_warn(
                    f"{step.id}: attempt {attempt}/{attempts} failed ({e}); retrying in {step.retry_delay:g}s"
                )
                self._sleep(step.retry_delay)
        raise AssertionError("unreachable")

    def _acquire_lock(self, app: str, run: DeployRun) -> None:
        path = shlex.quote(lock_path(app))
        if self.force_unlock:
            run.log_warn(f"Removing existing lock {lock_path(app)}")
            self.ssh.run(f"rm -rf {path}")

        # mkdir is atomic: exactly one concurrent deployment wins
        result = self.ssh.run(f"mkdir {path}")
        if not result.success:
            if self.ssh.dir_exists(lock_path(app)):
                raise LockError(
                    f"Another deployment of {app} holds {lock_path(app)} on {run.host}. "
                    "Wait for it, or re-run with --force-unlock if it crashed."
                )
            raise LockError(f"Could not create lock {lock_path(app)}: {result.tail(3)}")
        self.ssh.run(f"date -Is > {path}/owner")

    def _release_lock(self, app: str, run: DeployRun) -> None:
        result = self.ssh.run(f"rm -rf {shlex.quote(lock_path(app))}")
        if not result.success:
            run.log_warn(f"Could not release lock {lock_path(app)}: {result.tail(3)}")
