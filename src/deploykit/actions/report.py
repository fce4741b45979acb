"""Report Action - Render plans, run results and history to the terminal.

CONTRACT:
- read_only: True
- requires_backup: False
- rollback_support: N/A
- prerequisites: None
"""

import json
from dataclasses import dataclass
from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from deploykit.engine.executor import ExecutionReport, StepStatus
from deploykit.engine.jobs import RunLog
from deploykit.plan.builder import Plan
from deploykit.storage.models import RunRecord, StepStateRecord
from deploykit.storage.tracker import RunDetails


@dataclass
class ActionContract:
    """Explicit contract for an action."""

    read_only: bool
    requires_backup: bool
    rollback_support: bool
    prerequisites: list[str]


STATUS_STYLES = {
    StepStatus.SKIPPED.value: "dim",
    StepStatus.UNCHANGED.value: "green",
    StepStatus.PENDING.value: "yellow",
    StepStatus.CHANGED.value: "bold cyan",
    StepStatus.FAILED.value: "bold red",
    StepStatus.NOT_RUN.value: "dim",
    "success": "green",
    "failed": "red",
    "running": "yellow",
}

LEVEL_STYLES = {
    "INFO": "dim",
    "WARN": "yellow",
    "ERROR": "bold red",
    "SUCCESS": "green",
}


def _styled(value: str) -> str:
    style = STATUS_STYLES.get(value, "white")
    return f"[{style}]{value}[/]"


class ReportAction:
    """Generate terminal reports. Completely read-only."""

    CONTRACT = ActionContract(
        read_only=True,
        requires_backup=False,
        rollback_support=False,
        prerequisites=[],
    )

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    def log_listener(self, entry: RunLog) -> None:
        """Print a run log entry as it happens."""
        style = LEVEL_STYLES.get(entry.level, "white")
        stamp = entry.timestamp.strftime("%H:%M:%S")
        self.console.print(f"[dim]{stamp}[/] [{style}]{entry.level:<7}[/] {escape(entry.message)}")

    def report_plan(self, plan: Plan, states: dict[str, StepStateRecord] | None = None) -> None:
        """Print the ordered steps of a plan, with recorded state when known."""
        self.console.print()
        self.console.print(Panel.fit(f"Plan: {plan.name} ({plan.fingerprint})", style="bold cyan"))

        table = Table(show_header=True)
        table.add_column("#", justify="right")
        table.add_column("Step")
        table.add_column("Phase")
        table.add_column("Description")
        if states is not None:
            table.add_column("Recorded")

        for number, step in enumerate(plan, 1):
            row = [str(number), step.id, step.phase, escape(step.description)]
            if states is not None:
                record = states.get(step.id)
                if step.always_run:
                    row.append("[dim]always[/]")
                elif record is None:
                    row.append("[yellow]missing[/]")
                elif record.fingerprint != step.fingerprint():
                    row.append("[yellow]stale[/]")
                else:
                    row.append(f"[green]applied[/] [dim]{record.completed_at}[/]")
            table.add_row(*row)

        self.console.print(table)

    def report_execution(self, report: ExecutionReport) -> None:
        """Print the per-step outcome table and a one-line summary."""
        table = Table(show_header=True, title=f"Run #{report.run.id}")
        table.add_column("Step")
        table.add_column("Result")
        table.add_column("Time", justify="right")
        table.add_column("Detail")

        for outcome in report.outcomes:
            table.add_row(
                outcome.step_id,
                _styled(outcome.status.value),
                f"{outcome.duration:.1f}s" if outcome.status != StepStatus.NOT_RUN else "",
                escape(outcome.message) if outcome.status == StepStatus.FAILED else "",
            )

        self.console.print()
        self.console.print(table)

        counts = report.counts()
        parts = [f"{_styled(name)} {count}" for name, count in counts.items() if count]
        self.console.print(f"   Summary: {', '.join(parts)} in {report.duration:.1f}s")

        if report.failed_step:
            failed = report.failed_step
            self.console.print(f"\n[bold red]FAILED:[/] {escape(failed.message)}")
            if failed.output:
                self.console.print(Panel(escape(failed.output), title="output", style="red"))
            self.console.print("   Fix the cause and re-run; completed steps will be skipped.")
        elif report.run.dry_run:
            self.console.print(f"   [yellow]Dry run:[/] {len(report.pending)} step(s) would change.")
        else:
            self.console.print("   [green][bold]PASS:[/] Deployment converged.[/]")

    def report_json(self, data: Any) -> None:
        """Print machine-readable output for scripts and CI."""
        self.console.print(
            json.dumps(data, indent=2, default=str), markup=False, emoji=False, highlight=False, soft_wrap=True
        )

    def report_history(self, runs: list[RunRecord]) -> None:
        if not runs:
            self.console.print("   No runs recorded.")
            return

        table = Table(show_header=True)
        table.add_column("Run", justify="right")
        table.add_column("Host")
        table.add_column("App")
        table.add_column("Mode")
        table.add_column("Status")
        table.add_column("Started")
        table.add_column("Error")
        for run in runs:
            table.add_row(
                str(run.id),
                run.host,
                run.app,
                "dry-run" if run.dry_run else "apply",
                _styled(run.status),
                run.started_at,
                escape(run.error_message or ""),
            )
        self.console.print(table)

    def report_run_details(self, details: RunDetails) -> None:
        run = details.run
        self.console.print(
            Panel.fit(f"Run #{run.id}: {run.app} on {run.host} ({_styled(run.status)})", style="bold cyan")
        )

        table = Table(show_header=True)
        table.add_column("Step")
        table.add_column("Result")
        table.add_column("Fingerprint")
        table.add_column("Finished")
        for step in details.steps:
            table.add_row(step.step_id, _styled(step.status), step.fingerprint, step.finished_at or "")
        self.console.print(table)

        if details.logs:
            self.console.print("\n[bold]Log[/]")
            for entry in details.logs:
                style = LEVEL_STYLES.get(entry.level, "white")
                self.console.print(f"[dim]{entry.timestamp}[/] [{style}]{entry.level:<7}[/] {escape(entry.message)}")
