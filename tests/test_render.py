"""Tests for local artifact rendering."""

from deploykit.actions.render import RenderAction
from deploykit.model.target import TargetState


def test_systemd_artifacts(target):
    files = RenderAction().artifacts(target)

    assert sorted(files) == [
        ".env",
        ".github/workflows/deploy.yml",
        "nginx/myapp.http.conf",
        "nginx/myapp.https.conf",
        "systemd/myapp.service",
    ]


def test_pm2_without_tls(target_data):
    target_data["process_manager"] = "pm2"
    target_data["tls"] = {"enabled": False}
    files = RenderAction().artifacts(TargetState.model_validate(target_data))

    assert "ecosystem.config.js" in files
    assert "systemd/myapp.service" not in files
    assert "nginx/myapp.https.conf" not in files


def test_write(tmp_path, target):
    written = RenderAction().write(target, tmp_path / "deploy")

    assert len(written) == 5
    env = tmp_path / "deploy" / ".env"
    assert env.read_text().endswith("PORT=3000\n")
    assert env.stat().st_mode & 0o777 == 0o600


def test_write_keeps_pm2_ecosystem_private(tmp_path, target_data):
    target_data["process_manager"] = "pm2"
    RenderAction().write(TargetState.model_validate(target_data), tmp_path)

    ecosystem = tmp_path / "ecosystem.config.js"
    assert "DATABASE_URL" in ecosystem.read_text()
    assert ecosystem.stat().st_mode & 0o777 == 0o600
