"""Plan Builder - turns a TargetState into an ordered list of steps.

The order mirrors what an operator would do by hand on a fresh VM:
packages, app user and files, process manager, firewall, nginx over
plain HTTP, certificate, nginx over HTTPS, then a health check.
"""

import hashlib
import logging
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Iterator

from deploykit.exceptions import PlanError
from deploykit.model.target import ProcessManager, Runtime, TargetState
from deploykit.plan.steps import CommandStep, FileStep, Step, SymlinkStep, UploadStep
from deploykit.plan.templates import ACME_WEBROOT, LETSENCRYPT_LIVE, TemplateRenderer

logger = logging.getLogger(__name__)

RUNTIME_PACKAGES: dict[Runtime, list[str]] = {
    Runtime.NODE: ["nodejs", "npm"],
    Runtime.PYTHON: ["python3", "python3-venv", "python3-pip"],
    Runtime.CUSTOM: [],
}

NGINX_AVAILABLE = "/etc/nginx/sites-available"
NGINX_ENABLED = "/etc/nginx/sites-enabled"
NGINX_RELOAD = "systemctl reload nginx"
RENEWAL_HOOK = "/etc/letsencrypt/renewal-hooks/deploy/reload-nginx.sh"


@dataclass
class Plan:
    """An ordered, filterable list of steps for one target."""

    name: str
    steps: list[Step] = field(default_factory=list)

    def __iter__(self) -> Iterator[Step]:
        return iter(self.steps)

    def __len__(self) -> int:
        return len(self.steps)

    @property
    def ids(self) -> list[str]:
        return [step.id for step in self.steps]

    @property
    def fingerprint(self) -> str:
        digest = hashlib.sha256()
        for step in self.steps:
            digest.update(f"{step.id}={step.fingerprint()};".encode("utf-8"))
        return digest.hexdigest()[:16]

    def get(self, step_id: str) -> Step | None:
        return next((step for step in self.steps if step.id == step_id), None)

    def select(self, only: Iterable[str] | None = None, skip: Iterable[str] | None = None) -> "Plan":
        """Filter steps by id or phase, preserving order.

        A selector matches a step when it equals the step id, is a dotted
        prefix of it (``proxy`` matches ``proxy.site``), or names its phase.
        """
        only = list(only or [])
        skip = list(skip or [])

        for selector in [*only, *skip]:
            if not any(_matches(step, selector) for step in self.steps):
                raise PlanError(f"Selector {selector!r} matches no step in plan {self.name!r}")

        steps = [
            step
            for step in self.steps
            if (not only or any(_matches(step, s) for s in only))
            and not any(_matches(step, s) for s in skip)
        ]
        return Plan(name=self.name, steps=steps)


def _matches(step: Step, selector: str) -> bool:
    return step.id == selector or step.id.startswith(selector + ".") or step.phase == selector


def _certificate_check(target: TargetState) -> str:
    cert = f"{LETSENCRYPT_LIVE}/{target.domain.name}/fullchain.pem"
    return f"test -f {shlex.quote(cert)}"


class PlanBuilder:
    """Build the ordered deployment plan for a target."""

    def __init__(self, renderer: TemplateRenderer | None = None) -> None:
        self.renderer = renderer or TemplateRenderer()

    def build(self, target: TargetState) -> Plan:
        plan = Plan(name=target.name)
        plan.steps.extend(self._system_steps(target))
        app_steps = self._app_steps(target)
        plan.steps.extend(app_steps)
        plan.steps.extend(self._process_steps(target, app_steps))
        if target.firewall.enabled:
            plan.steps.append(self._firewall_step())
        plan.steps.extend(self._proxy_steps(target))
        if target.tls.enabled:
            plan.steps.extend(self._tls_steps(target))
        plan.steps.append(self._health_step(target))

        seen: set[str] = set()
        for step in plan.steps:
            if step.id in seen:
                raise PlanError(f"Duplicate step id {step.id!r} in plan {plan.name!r}")
            seen.add(step.id)

        logger.debug("Built plan %s with %d steps (%s)", plan.name, len(plan), plan.fingerprint)
        return plan

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def _system_steps(self, target: TargetState) -> list[Step]:
        packages = ["nginx"]
        if target.firewall.enabled:
            packages.append("ufw")
        if target.tls.enabled:
            packages.append("certbot")
        packages.extend(RUNTIME_PACKAGES[target.app.runtime])
        if target.process_manager == ProcessManager.PM2 and "npm" not in packages:
            packages.append("npm")
        packages.extend(p for p in target.packages if p not in packages)
        quoted = " ".join(shlex.quote(p) for p in packages)

        steps: list[Step] = [
            CommandStep(
                id="system.apt",
                description=f"Install system packages: {', '.join(packages)}",
                phase="system",
                check=f"dpkg -s {quoted} >/dev/null 2>&1",
                commands=[
                    "apt-get update -q",
                    f"DEBIAN_FRONTEND=noninteractive apt-get install -y -q {quoted}",
                ],
                timeout=900,
                retries=3,
                retry_delay=10.0,
            )
        ]
        if target.process_manager == ProcessManager.PM2:
            steps.append(
                CommandStep(
                    id="system.pm2",
                    description="Install the PM2 process manager",
                    phase="system",
                    check="command -v pm2",
                    commands=["npm install -g pm2"],
                    timeout=600,
                )
            )
        return steps

    def _app_steps(self, target: TargetState) -> list[Step]:
        app = target.app
        user = shlex.quote(app.user)
        workdir = shlex.quote(app.working_dir)
        owner = f"{app.user}:{app.user}"

        steps: list[Step] = [
            CommandStep(
                id="app.user",
                description=f"Create system user {app.user}",
                check=f"id -u {user}",
                commands=[
                    f"useradd --system --create-home --home-dir {shlex.quote(target.user_home)} "
                    f"--shell /bin/bash {user}"
                ],
            ),
            CommandStep(
                id="app.dir",
                description=f"Create working directory {app.working_dir}",
                check=f'test -d {workdir} && test "$(stat -c %U {workdir})" = {user}',
                commands=[f"mkdir -p {workdir}", f"chown {shlex.quote(owner)} {workdir}"],
            ),
        ]

        release: Step | None = None
        if app.artifact:
            if not Path(app.artifact).is_file():
                raise PlanError(f"Release artifact not found: {app.artifact}")
            release = UploadStep(
                id="app.release",
                description=f"Upload and unpack {Path(app.artifact).name}",
                local_path=app.artifact,
                remote_dir=app.working_dir,
                owner=owner,
            )
            steps.append(release)

        steps.append(
            FileStep(
                id="app.env",
                description=f"Write {target.env_path}",
                path=target.env_path,
                content=self.renderer.env_file(target),
                mode="600",
                owner=owner,
            )
        )

        upstream = [release] if release else []
        if app.install_command:
            install = CommandStep(
                id="app.install",
                description="Install application dependencies",
                commands=[app.install_command],
                cwd=app.working_dir,
                as_user=app.user,
                timeout=900,
                triggers=list(upstream),
            )
            steps.append(install)
            upstream.append(install)
        if app.build_command:
            steps.append(
                CommandStep(
                    id="app.build",
                    description="Build the application",
                    commands=[app.build_command],
                    cwd=app.working_dir,
                    as_user=app.user,
                    timeout=900,
                    triggers=list(upstream),
                )
            )
        return steps

    def _process_steps(self, target: TargetState, app_steps: list[Step]) -> list[Step]:
        name = target.service_name
        quoted = shlex.quote(name)
        # Anything that changes what the process runs must restart it
        restart_triggers = [s for s in app_steps if s.id in ("app.release", "app.env", "app.install", "app.build")]

        if target.process_manager == ProcessManager.PM2:
            ecosystem_path = f"{target.app.working_dir}/ecosystem.config.js"
            ecosystem = FileStep(
                id="process.ecosystem",
                description=f"Write PM2 ecosystem file {ecosystem_path}",
                phase="process",
                path=ecosystem_path,
                content=self.renderer.pm2_ecosystem(target),
                mode="600",
                owner=f"{target.app.user}:{target.app.user}",
            )
            user = shlex.quote(target.app.user)
            # Resolved on the host; an existing account may live outside /home
            home = f"\"$(getent passwd {user} | cut -d: -f6)\""
            return [
                ecosystem,
                CommandStep(
                    id="process.pm2",
                    description=f"Start or reload {name} under PM2",
                    phase="process",
                    commands=[
                        f"pm2 startOrReload {shlex.quote(ecosystem_path)} --update-env",
                        "pm2 save",
                    ],
                    as_user=target.app.user,
                    triggers=[ecosystem, *restart_triggers],
                ),
                CommandStep(
                    id="process.pm2-startup",
                    description="Register PM2 to resurrect apps at boot",
                    phase="process",
                    check=f"systemctl is-enabled --quiet pm2-{user}",
                    commands=[
                        f"env PATH=$PATH:/usr/bin pm2 startup systemd -u {user} --hp {home}"
                    ],
                ),
            ]

        unit_path = f"/etc/systemd/system/{name}.service"
        unit = FileStep(
            id="process.unit",
            description=f"Write systemd unit {unit_path}",
            phase="process",
            path=unit_path,
            content=self.renderer.systemd_unit(target),
            on_change=["systemctl daemon-reload"],
        )
        return [
            unit,
            CommandStep(
                id="process.enable",
                description=f"Enable and start {name}.service",
                phase="process",
                check=f"systemctl is-enabled --quiet {quoted} && systemctl is-active --quiet {quoted}",
                commands=[f"systemctl enable --now {quoted}"],
            ),
            CommandStep(
                id="process.restart",
                description=f"Restart {name}.service to pick up changes",
                phase="process",
                commands=[f"systemctl restart {quoted}"],
                triggers=[unit, *restart_triggers],
            ),
        ]

    def _firewall_step(self) -> Step:
        return CommandStep(
            id="system.firewall",
            description="Allow SSH and HTTP(S) through ufw and enable it",
            phase="system",
            check="ufw status | grep -q 'Status: active' && ufw status | grep -q 'Nginx Full'",
            commands=["ufw allow OpenSSH", "ufw allow 'Nginx Full'", "ufw --force enable"],
        )

    def _proxy_steps(self, target: TargetState) -> list[Step]:
        name = target.name
        available = f"{NGINX_AVAILABLE}/{name}"
        default_site = f"{NGINX_ENABLED}/default"
        cert_check = _certificate_check(target)

        return [
            CommandStep(
                id="proxy.acme-webroot",
                description=f"Create ACME challenge webroot {ACME_WEBROOT}",
                phase="proxy",
                check=f"test -d {ACME_WEBROOT}",
                commands=[f"mkdir -p {ACME_WEBROOT}"],
            ),
            FileStep(
                id="proxy.site",
                description=f"Write nginx site {available} (HTTP)",
                phase="proxy",
                path=available,
                content=self.renderer.nginx_site(target, https=False),
                validate="nginx -t",
                on_change=[NGINX_RELOAD],
                # Once a certificate exists the HTTPS site owns this file
                unless=cert_check if target.tls.enabled else None,
            ),
            SymlinkStep(
                id="proxy.enable",
                description=f"Enable nginx site {name}",
                phase="proxy",
                link=f"{NGINX_ENABLED}/{name}",
                target=available,
                validate="nginx -t",
                on_change=[NGINX_RELOAD],
            ),
            CommandStep(
                id="proxy.default-off",
                description="Disable the default nginx site",
                phase="proxy",
                check=f"test ! -e {default_site}",
                commands=[f"rm -f {default_site}", "nginx -t", NGINX_RELOAD],
            ),
        ]

    def _tls_steps(self, target: TargetState) -> list[Step]:
        tls = target.tls
        domains = " ".join(f"-d {shlex.quote(n)}" for n in target.server_names)
        certbot = (
            f"certbot certonly --webroot -w {ACME_WEBROOT} --non-interactive --agree-tos "
            f"-m {shlex.quote(tls.email or '')} {domains}"
        )
        if tls.staging:
            certbot += " --staging"

        return [
            CommandStep(
                id="tls.certificate",
                description=f"Obtain a certificate for {', '.join(target.server_names)}",
                phase="tls",
                check=_certificate_check(target),
                commands=[certbot],
                timeout=300,
                retries=1,
                retry_delay=30.0,
            ),
            FileStep(
                id="tls.site",
                description=f"Write nginx site {NGINX_AVAILABLE}/{target.name} (HTTPS)",
                phase="tls",
                path=f"{NGINX_AVAILABLE}/{target.name}",
                content=self.renderer.nginx_site(target, https=True),
                validate="nginx -t",
                on_change=[NGINX_RELOAD],
            ),
            FileStep(
                id="tls.reload-hook",
                description="Reload nginx after certificate renewal",
                phase="tls",
                path=RENEWAL_HOOK,
                content=f"#!/bin/sh\n{NGINX_RELOAD}\n",
                mode="755",
            ),
            CommandStep(
                id="tls.renewal",
                description="Enable the certbot renewal timer",
                phase="tls",
                check="systemctl is-active --quiet certbot.timer",
                commands=["systemctl enable --now certbot.timer"],
            ),
        ]

    def _health_step(self, target: TargetState) -> Step:
        hc = target.healthcheck
        url = f"http://127.0.0.1:{target.app.port}{hc.path}"
        return CommandStep(
            id="verify.health",
            description=f"Check the app answers on {url}",
            phase="verify",
            commands=[f"curl -fsS -o /dev/null --max-time {hc.timeout} {shlex.quote(url)}"],
            always_run=True,
            retries=5,
            retry_delay=2.0,
        )
