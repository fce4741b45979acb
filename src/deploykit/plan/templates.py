"""Template rendering for the configuration artifacts a deployment writes.

Every artifact (nginx site, systemd unit, PM2 ecosystem, .env, CI
workflow) is a fixed Jinja2 template with the target state substituted in.
"""

import os
import shlex

from jinja2 import Environment, FileSystemLoader, StrictUndefined

from deploykit.model.target import ProcessManager, TargetState

MARKER = "managed by deploykit"
ACME_WEBROOT = "/var/www/certbot"
LETSENCRYPT_LIVE = "/etc/letsencrypt/live"


def env_quote(value: str) -> str:
    """Quote a .env value when dotenv parsers would otherwise split it."""
    if "\n" in value or "\r" in value:
        raise ValueError("a .env value cannot span lines")
    if value == "" or any(ch in value for ch in " \t#\"'$\\"):
        escaped = value.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    return value


def split_start_command(command: str) -> tuple[str, str]:
    """Split a start command into PM2's script and args."""
    parts = shlex.split(command)
    if not parts:
        return "", ""
    return parts[0], shlex.join(parts[1:])


def restart_command(target: TargetState) -> str:
    """Shell line that restarts the app under its process manager."""
    if target.process_manager == ProcessManager.PM2:
        ecosystem = f"{target.app.working_dir}/ecosystem.config.js"
        return (
            f"sudo -u {target.app.user} -H bash -lc "
            f"{shlex.quote(f'pm2 startOrReload {ecosystem} --update-env && pm2 save')}"
        )
    return f"sudo systemctl restart {target.service_name}"


class TemplateRenderer:
    """Render deployment artifacts for a target."""

    def __init__(self, template_dir: str | None = None) -> None:
        if template_dir is None:
            template_dir = os.path.join(os.path.dirname(__file__), "..", "templates")

        self.env = Environment(
            loader=FileSystemLoader(template_dir),
            undefined=StrictUndefined,
            autoescape=False,
        )
        self.env.filters["env_quote"] = env_quote
        self.env.filters["shell_quote"] = shlex.quote

    def render(self, name: str, target: TargetState, **extra: object) -> str:
        """Render a template by file name. Output always ends with a newline."""
        template = self.env.get_template(name)
        text = template.render(
            target=target,
            marker=MARKER,
            acme_webroot=ACME_WEBROOT,
            cert_dir=f"{LETSENCRYPT_LIVE}/{target.domain.name}",
            **extra,
        )
        return text if text.endswith("\n") else text + "\n"

    def nginx_site(self, target: TargetState, *, https: bool) -> str:
        return self.render("nginx_https.conf.j2" if https else "nginx_http.conf.j2", target)

    def systemd_unit(self, target: TargetState) -> str:
        return self.render("systemd.service.j2", target)

    def pm2_ecosystem(self, target: TargetState) -> str:
        script, args = split_start_command(target.app.start_command)
        return self.render("ecosystem.config.js.j2", target, script=script, args=args)

    def env_file(self, target: TargetState) -> str:
        return self.render("env.j2", target)

    def ci_workflow(self, target: TargetState) -> str:
        return self.render("deploy.yml.j2", target, restart_command=restart_command(target))
