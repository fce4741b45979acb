"""Diagnose Action - the troubleshooting checklist, automated.

CONTRACT:
- read_only: True
- requires_backup: False
- rollback_support: N/A
- prerequisites: ["SSH access"]

Each probe is one read-only command plus a rule deciding whether its
output is healthy. Probes never stop each other: a dead app should not
hide an expiring certificate.
"""

from __future__ import annotations

import shlex
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from deploykit.actions.report import ActionContract
from deploykit.connector.ssh import CommandResult, SSHConnector
from deploykit.model.target import ProcessManager, TargetState
from deploykit.plan.templates import LETSENCRYPT_LIVE

CERT_WARN_DAYS = 14


@dataclass
class Probe:
    """A named read-only check."""

    name: str
    command: str
    ok_when: Callable[[CommandResult], bool] = lambda r: r.success
    timeout: float = 15
    summarize: Callable[[CommandResult], str] | None = None


@dataclass
class ProbeResult:
    name: str
    ok: bool
    summary: str
    output: str


def days_until(enddate_line: str, now: datetime | None = None) -> int | None:
    """Parse `openssl x509 -enddate` output into days remaining."""
    value = enddate_line.strip()
    if "=" in value:
        value = value.split("=", 1)[1].strip()
    try:
        expires = datetime.strptime(value, "%b %d %H:%M:%S %Y %Z").replace(tzinfo=timezone.utc)
    except ValueError:
        return None
    now = now or datetime.now(timezone.utc)
    return (expires - now).days


def _cert_ok(result: CommandResult) -> bool:
    days = days_until(result.stdout)
    return result.success and days is not None and days >= CERT_WARN_DAYS


def _cert_summary(result: CommandResult) -> str:
    days = days_until(result.stdout)
    if days is None:
        return "certificate not found"
    return f"expires in {days} days"


def _first_line(result: CommandResult) -> str:
    text = (result.stdout.strip() or result.stderr.strip()).splitlines()
    return text[0] if text else f"exit {result.exit_code}"


class DiagnoseAction:
    """Run the troubleshooting probes for a deployed target."""

    CONTRACT = ActionContract(
        read_only=True,
        requires_backup=False,
        rollback_support=False,
        prerequisites=["SSH access"],
    )

    def __init__(self, ssh: SSHConnector, console: Console | None = None) -> None:
        self.ssh = ssh
        self.console = console or Console()

    def probes(self, target: TargetState) -> list[Probe]:
        name = shlex.quote(target.service_name)
        port = target.app.port
        url = f"http://127.0.0.1:{port}{target.healthcheck.path}"

        probes = [
            Probe("nginx config", "nginx -t 2>&1"),
        ]
        if target.process_manager == ProcessManager.PM2:
            probes.append(
                Probe(
                    "app process",
                    f"sudo -u {shlex.quote(target.app.user)} -H pm2 describe {name} | grep -E 'status'",
                    ok_when=lambda r: r.success and "online" in r.stdout,
                )
            )
        else:
            probes.append(
                Probe(
                    "app process",
                    f"systemctl is-active {name}",
                    ok_when=lambda r: r.stdout.strip() == "active",
                )
            )
            probes.append(
                Probe(
                    "app journal",
                    f"journalctl -u {name} -n 50 --no-pager 2>&1",
                    ok_when=lambda r: r.success and "Failed" not in r.stdout,
                    summarize=lambda r: (r.stdout.strip().splitlines() or ["(empty)"])[-1],
                )
            )

        probes.extend(
            [
                Probe(
                    "port listening",
                    f"ss -ltn 'sport = :{port}'",
                    ok_when=lambda r: r.success and f":{port}" in r.stdout,
                    summarize=lambda r: f"port {port} open" if f":{port}" in r.stdout else f"nothing on :{port}",
                ),
                Probe(
                    "nginx error log",
                    "tail -n 20 /var/log/nginx/error.log 2>&1",
                    ok_when=lambda r: r.success and "connect() failed" not in r.stdout,
                    summarize=lambda r: (r.stdout.strip().splitlines() or ["(empty)"])[-1],
                ),
                Probe(
                    "local health",
                    f"curl -fsS -o /dev/null -w '%{{http_code}}' --max-time {target.healthcheck.timeout} {shlex.quote(url)}",
                    summarize=lambda r: f"HTTP {r.stdout.strip()}" if r.stdout.strip() else _first_line(r),
                ),
            ]
        )

        if target.tls.enabled:
            cert = f"{LETSENCRYPT_LIVE}/{target.domain.name}/fullchain.pem"
            probes.extend(
                [
                    Probe(
                        "certificate expiry",
                        f"openssl x509 -enddate -noout -in {shlex.quote(cert)}",
                        ok_when=_cert_ok,
                        summarize=_cert_summary,
                    ),
                    Probe(
                        "renewal dry run",
                        "certbot renew --dry-run 2>&1",
                        timeout=120,
                        summarize=lambda r: "renewal would succeed" if r.success else _first_line(r),
                    ),
                ]
            )
        return probes

    def run(self, target: TargetState) -> list[ProbeResult]:
        results: list[ProbeResult] = []
        for probe in self.probes(target):
            result = self.ssh.run(probe.command, timeout=probe.timeout)
            ok = probe.ok_when(result)
            summary = probe.summarize(result) if probe.summarize else _first_line(result)
            results.append(ProbeResult(probe.name, ok, summary, result.stdout or result.stderr))
        return results

    def report(self, results: list[ProbeResult]) -> None:
        table = Table(show_header=True, title="Diagnostics")
        table.add_column("Probe")
        table.add_column("Status")
        table.add_column("Detail")
        for result in results:
            status = "[green]OK[/]" if result.ok else "[bold red]FAIL[/]"
            table.add_row(result.name, status, escape(result.summary))
        self.console.print(table)
