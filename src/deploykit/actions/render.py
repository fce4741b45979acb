"""Render Action - write every deployment artifact to a local directory.

CONTRACT:
- read_only: True (for the server; writes only under the output dir)
- requires_backup: False
- rollback_support: N/A
- prerequisites: None

Useful for review, for committing the CI workflow, and for hosts where
an operator prefers to copy files by hand.
"""

from pathlib import Path

from deploykit.actions.report import ActionContract
from deploykit.model.target import ProcessManager, TargetState
from deploykit.plan.templates import TemplateRenderer

# Artifacts that carry the app environment
PRIVATE_ARTIFACTS = {".env", "ecosystem.config.js"}


class RenderAction:
    """Render a target's artifacts into `out_dir`, mirroring their roles."""

    CONTRACT = ActionContract(
        read_only=True,
        requires_backup=False,
        rollback_support=False,
        prerequisites=[],
    )

    def __init__(self, renderer: TemplateRenderer | None = None) -> None:
        self.renderer = renderer or TemplateRenderer()

    def artifacts(self, target: TargetState) -> dict[str, str]:
        """Relative path -> content for every artifact of the target."""
        name = target.name
        files = {
            f"nginx/{name}.http.conf": self.renderer.nginx_site(target, https=False),
            ".env": self.renderer.env_file(target),
            ".github/workflows/deploy.yml": self.renderer.ci_workflow(target),
        }
        if target.tls.enabled:
            files[f"nginx/{name}.https.conf"] = self.renderer.nginx_site(target, https=True)
        if target.process_manager == ProcessManager.PM2:
            files["ecosystem.config.js"] = self.renderer.pm2_ecosystem(target)
        else:
            files[f"systemd/{name}.service"] = self.renderer.systemd_unit(target)
        return files

    def write(self, target: TargetState, out_dir: str | Path) -> list[Path]:
        out = Path(out_dir)
        written: list[Path] = []
        for relative, content in sorted(self.artifacts(target).items()):
            path = out / relative
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
            if relative in PRIVATE_ARTIFACTS:
                path.chmod(0o600)
            written.append(path)
        return written
