"""
Click-based CLI for deploykit.

IMPORTANT: This module only ORCHESTRATES. It never decides what to change.
- Loads profiles and target files
- Builds the plan
- Invokes the executor
- Formats output
"""

import logging
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from deploykit import __version__
from deploykit.actions.diagnose import DiagnoseAction
from deploykit.actions.render import RenderAction
from deploykit.actions.report import ReportAction
from deploykit.config import ConfigManager
from deploykit.connector.ssh import SSHConfig, SSHConnector
from deploykit.engine.executor import StepExecutor
from deploykit.exceptions import DeployKitError
from deploykit.model.target import TargetState, load_target
from deploykit.plan.builder import Plan, PlanBuilder
from deploykit.storage.db import set_db_path
from deploykit.storage.tracker import StateTracker

console = Console()
err_console = Console(stderr=True)

EXIT_ERROR = 1
EXIT_DEPLOY_FAILED = 2


@click.group()
@click.version_option(version=__version__, prog_name="deploykit")
@click.option("--config", "-c", type=click.Path(), help="Path to config directory")
@click.option("--verbose", "-v", count=True, help="Increase log verbosity (-v info, -vv debug)")
@click.pass_context
def main(ctx: click.Context, config: str | None, verbose: int) -> None:
    """deploykit: idempotent web app deployment to a single VM.

    Installs packages, writes the app's .env, unit and nginx site, obtains a
    certificate and checks health, recording progress so re-runs resume.
    """
    level = logging.WARNING - 10 * min(verbose, 2)
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )
    logging.getLogger("paramiko").setLevel(max(level, logging.WARNING))

    ctx.ensure_object(dict)
    config_mgr = ConfigManager(Path(config) if config else None)
    ctx.obj["config_mgr"] = config_mgr
    set_db_path(config_mgr.state_db_path)


def _fail(message: str, code: int = EXIT_ERROR) -> None:
    console.print(f"[bold red]Error:[/] {escape(message)}")
    sys.exit(code)


def _resolve_config(ctx: click.Context, server: str) -> SSHConfig:
    """Resolve server string to SSHConfig (profile name or IP)."""
    return ctx.obj["config_mgr"].resolve(server)


def _load(target_file: str, only: tuple[str, ...] = (), skip: tuple[str, ...] = ()) -> tuple[TargetState, Plan]:
    target = load_target(target_file)
    plan = PlanBuilder().build(target)
    if only or skip:
        plan = plan.select(only=only, skip=skip)
    return target, plan


# ---------------------------------------------------------------------------
# Planning and applying
# ---------------------------------------------------------------------------

selector_options = [
    click.option("--only", multiple=True, help="Run only steps matching this id, prefix or phase"),
    click.option("--skip", multiple=True, help="Skip steps matching this id, prefix or phase"),
]


def with_selectors(func):
    for option in reversed(selector_options):
        func = option(func)
    return func


@main.command()
@click.argument("target_file", type=click.Path(exists=True, dir_okay=False))
@with_selectors
def plan(target_file: str, only: tuple[str, ...], skip: tuple[str, ...]) -> None:
    """Show the ordered steps for a target. Read-only, no SSH."""
    try:
        _target, built = _load(target_file, only, skip)
    except DeployKitError as e:
        _fail(str(e))
    ReportAction(console).report_plan(built)


@main.command()
@click.argument("target_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--server", "-s", required=True, help="Profile name or hostname")
@click.option("--dry-run", is_flag=True, help="Probe only; report what would change")
@click.option("--recheck", is_flag=True, help="Ignore recorded state and probe every step")
@click.option("--force-unlock", is_flag=True, help="Break a stale deployment lock")
@click.option("--yes", "-y", is_flag=True, help="Skip the confirmation prompt")
@with_selectors
@click.pass_context
def apply(
    ctx: click.Context,
    target_file: str,
    server: str,
    dry_run: bool,
    recheck: bool,
    force_unlock: bool,
    yes: bool,
    only: tuple[str, ...],
    skip: tuple[str, ...],
) -> None:
    """Converge SERVER to the state described in TARGET_FILE.

    ⚠️  WARNING: Without --dry-run this modifies the server!
    """
    cfg = _resolve_config(ctx, server)
    reporter = ReportAction(console)
    try:
        target, built = _load(target_file, only, skip)
        if not dry_run and not yes:
            console.print(
                f"[bold yellow]⚠️  About to deploy {target.name} to {cfg.user}@{cfg.host} ({len(built)} steps)[/]"
            )
            if not click.confirm("Proceed?"):
                console.print("Aborted.")
                return

        with SSHConnector(cfg) as ssh:
            tracker = StateTracker(cfg.host, target.name)
            executor = StepExecutor(
                ssh,
                tracker,
                dry_run=dry_run,
                recheck=recheck,
                force_unlock=force_unlock,
                listeners=[reporter.log_listener],
            )
            report = executor.execute(built, target)
    except DeployKitError as e:
        _fail(str(e))

    reporter.report_execution(report)
    if not report.success:
        sys.exit(EXIT_DEPLOY_FAILED)


@main.command()
@click.argument("target_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--server", "-s", required=True, help="Profile name or hostname")
@click.pass_context
def status(ctx: click.Context, target_file: str, server: str) -> None:
    """Compare the plan with the state recorded for SERVER. No SSH."""
    cfg = _resolve_config(ctx, server)
    try:
        target, built = _load(target_file)
    except DeployKitError as e:
        _fail(str(e))
    tracker = StateTracker(cfg.host, target.name)
    ReportAction(console).report_plan(built, tracker.completed_steps())


@main.command()
@click.argument("target_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--server", "-s", required=True, help="Profile name or hostname")
@click.option("--step", "step_id", help="Forget only this step")
@click.pass_context
def reset(ctx: click.Context, target_file: str, server: str, step_id: str | None) -> None:
    """Forget recorded state so the next apply probes the host again."""
    cfg = _resolve_config(ctx, server)
    try:
        target, built = _load(target_file)
    except DeployKitError as e:
        _fail(str(e))
    if step_id and built.get(step_id) is None:
        _fail(f"Unknown step {step_id!r}. Known steps: {', '.join(built.ids)}")

    removed = StateTracker(cfg.host, target.name).invalidate(step_id)
    console.print(f"[bold green]✓ Forgot {removed} recorded step(s)[/] for {target.name} on {cfg.host}")


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------


@main.command()
@click.option("--server", "-s", help="Profile name or hostname")
@click.option("--app", "-a", help="Application name")
@click.option("--limit", "-n", default=20, show_default=True, help="Number of runs")
@click.option("--json", "as_json", is_flag=True, help="Print runs as JSON")
@click.pass_context
def history(ctx: click.Context, server: str | None, app: str | None, limit: int, as_json: bool) -> None:
    """List past runs."""
    host = _resolve_config(ctx, server).host if server else None
    tracker = StateTracker(host or "", app or "")
    runs = tracker.runs.recent(host=host, app=app, limit=limit)
    if as_json:
        ReportAction(console).report_json([run.to_dict() for run in runs])
        return
    ReportAction(console).report_history(runs)


@main.command()
@click.argument("run_id", type=int)
@click.option("--json", "as_json", is_flag=True, help="Print the run as JSON")
def show(run_id: int, as_json: bool) -> None:
    """Show the steps and log of one run."""
    details = StateTracker("", "").run_details(run_id)
    if details is None:
        _fail(f"Run {run_id} not found.")
    if as_json:
        ReportAction(console).report_json(details.to_dict())
        return
    ReportAction(console).report_run_details(details)


# ---------------------------------------------------------------------------
# Artifacts and troubleshooting
# ---------------------------------------------------------------------------


@main.command()
@click.argument("target_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--out", "-o", "out_dir", type=click.Path(file_okay=False), default="deploy", show_default=True)
def render(target_file: str, out_dir: str) -> None:
    """Write nginx, process manager, .env and CI files locally."""
    try:
        target = load_target(target_file)
    except DeployKitError as e:
        _fail(str(e))
    for path in RenderAction().write(target, out_dir):
        console.print(f"[green]✓[/] {path}")


@main.command()
@click.argument("target_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--server", "-s", required=True, help="Profile name or hostname")
@click.pass_context
def diagnose(ctx: click.Context, target_file: str, server: str) -> None:
    """Run troubleshooting probes: logs, ports, nginx, certificates."""
    cfg = _resolve_config(ctx, server)
    try:
        target = load_target(target_file)
        with SSHConnector(cfg) as ssh:
            action = DiagnoseAction(ssh, console)
            with console.status("[bold blue]Probing server...[/]"):
                results = action.run(target)
    except DeployKitError as e:
        _fail(str(e))

    action.report(results)
    if not all(result.ok for result in results):
        sys.exit(EXIT_ERROR)


# ---------------------------------------------------------------------------
# Profiles
# ---------------------------------------------------------------------------


@main.group()
def profile() -> None:
    """Manage server connection profiles."""
    pass


@profile.command("add")
@click.argument("name")
@click.option("--host", "-h", required=True, help="Server hostname or IP")
@click.option("--user", "-u", default="root", help="SSH username")
@click.option("--port", "-p", default=22, help="SSH port")
@click.option("--password", help="SSH password (stored in the OS keyring)")
@click.option("--key", "-k", type=click.Path(), help="Path to SSH private key")
@click.option("--sudo/--no-sudo", default=True, help="Use sudo for commands")
@click.pass_context
def profile_add(
    ctx: click.Context, name: str, host: str, user: str, port: int, password: str | None, key: str | None, sudo: bool
) -> None:
    """Add a new server profile."""
    config_mgr = ctx.obj["config_mgr"]
    cfg = SSHConfig(host=host, user=user, port=port, password=password, key_path=key, use_sudo=sudo)
    config_mgr.add_profile(name, cfg)
    console.print(f"[bold green]✓ Added server profile:[/] {name}")


@profile.command("list")
@click.pass_context
def profile_list(ctx: click.Context) -> None:
    """List all server profiles."""
    profiles = ctx.obj["config_mgr"].list_profiles()
    if not profiles:
        console.print("[dim]No profiles configured yet.[/]")
        return

    for name, data in profiles.items():
        console.print(f"[bold green]{name}[/]: {data['user']}@{data['host']}:{data['port']}")


@profile.command("remove")
@click.argument("name")
@click.pass_context
def profile_remove(ctx: click.Context, name: str) -> None:
    """Remove a server profile."""
    if ctx.obj["config_mgr"].remove_profile(name):
        console.print(f"[bold green]✓ Removed profile:[/] {name}")
    else:
        _fail(f"Profile {name} not found.")


if __name__ == "__main__":
    main()
