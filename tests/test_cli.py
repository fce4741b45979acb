"""Tests for the deploykit CLI.

Verifies:
1. plan/status/render work offline.
2. apply drives the executor over a (fake) SSH connection and records state.
3. A failed apply exits 2 and a re-run resumes.
4. Profiles round-trip through the config directory.
"""

import json
import logging
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from deploykit.cli import main
from deploykit.exceptions import ConnectorError
from deploykit.storage.db import close_db


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def cli_args(tmp_path, monkeypatch):
    monkeypatch.delenv("DEPLOYKIT_DB", raising=False)
    monkeypatch.delenv("DEPLOYKIT_CONFIG", raising=False)
    monkeypatch.setenv("COLUMNS", "200")
    yield ["--config", str(tmp_path / "cfg")]
    close_db()


@pytest.fixture
def patched_ssh(fake_ssh):
    # certbot is not emulated, so the certificate is already issued
    fake_ssh.files["/etc/letsencrypt/live/example.com/fullchain.pem"] = "-----BEGIN CERTIFICATE-----\n"
    with patch("deploykit.cli.SSHConnector") as MockConnector:
        MockConnector.return_value.__enter__.return_value = fake_ssh
        yield MockConnector


def test_plan_lists_steps(runner, cli_args, target_file):
    result = runner.invoke(main, [*cli_args, "plan", str(target_file)])

    assert result.exit_code == 0, result.output
    assert "system.apt" in result.output
    assert "tls.certificate" in result.output


def test_plan_with_unknown_selector(runner, cli_args, target_file):
    result = runner.invoke(main, [*cli_args, "plan", str(target_file), "--only", "nope"])

    assert result.exit_code == 1
    assert "matches no step" in result.output


def test_plan_with_invalid_target(runner, cli_args, tmp_path):
    bad = tmp_path / "bad.yaml"
    bad.write_text("app: {name: x}\n")
    result = runner.invoke(main, [*cli_args, "plan", str(bad)])

    assert result.exit_code == 1
    assert "Error:" in result.output


def test_render_writes_artifacts(runner, cli_args, target_file, tmp_path):
    out = tmp_path / "out"
    result = runner.invoke(main, [*cli_args, "render", str(target_file), "--out", str(out)])

    assert result.exit_code == 0, result.output
    assert (out / "nginx" / "myapp.https.conf").exists()
    assert (out / "systemd" / "myapp.service").exists()
    assert (out / ".github" / "workflows" / "deploy.yml").exists()
    assert (out / ".env").stat().st_mode & 0o777 == 0o600


def test_apply_dry_run(runner, cli_args, target_file, patched_ssh, fake_ssh):
    result = runner.invoke(main, [*cli_args, "apply", str(target_file), "--server", "203.0.113.10", "--dry-run"])

    assert result.exit_code == 0, result.output
    assert "Dry run:" in result.output
    assert not fake_ssh.ran("mkdir /var/lock")
    assert not [c for c in fake_ssh.commands if c.startswith("write ")]


def test_apply_then_rerun_skips(runner, cli_args, target_file, patched_ssh, fake_ssh):
    first = runner.invoke(main, [*cli_args, "apply", str(target_file), "-s", "203.0.113.10", "--yes"])
    assert first.exit_code == 0, first.output
    assert "/var/www/myapp/.env" in fake_ssh.files
    assert "/etc/nginx/sites-available/myapp" in fake_ssh.files

    fake_ssh.commands.clear()
    second = runner.invoke(main, [*cli_args, "apply", str(target_file), "-s", "203.0.113.10", "--yes"])
    assert second.exit_code == 0, second.output
    assert not [c for c in fake_ssh.commands if c.startswith("write ")]
    assert fake_ssh.ran("curl -fsS")

    status = runner.invoke(main, [*cli_args, "status", str(target_file), "-s", "203.0.113.10"])
    assert status.exit_code == 0
    assert "applied" in status.output
    assert "missing" not in status.output


def test_failed_apply_exits_2_and_resumes(runner, cli_args, target_file, patched_ssh, fake_ssh):
    fake_ssh.respond("dpkg -s", exit_code=1)
    fake_ssh.respond("apt-get install", exit_code=100, stderr="E: Unable to locate package nodejs")

    with patch("deploykit.engine.executor.time.sleep"):
        failed = runner.invoke(main, [*cli_args, "apply", str(target_file), "-s", "203.0.113.10", "-y"])

    assert failed.exit_code == 2
    assert "FAILED" in failed.output
    assert "system.apt" in failed.output

    fake_ssh.responses.clear()
    resumed = runner.invoke(main, [*cli_args, "apply", str(target_file), "-s", "203.0.113.10", "-y"])
    assert resumed.exit_code == 0, resumed.output

    history = runner.invoke(main, [*cli_args, "history", "--limit", "5"])
    assert history.exit_code == 0
    assert "failed" in history.output
    assert "success" in history.output


def test_apply_needs_confirmation(runner, cli_args, target_file, patched_ssh):
    result = runner.invoke(main, [*cli_args, "apply", str(target_file), "-s", "203.0.113.10"], input="n\n")

    assert result.exit_code == 0
    assert "Aborted." in result.output
    assert not patched_ssh.called


def test_apply_connection_error(runner, cli_args, target_file, patched_ssh):
    patched_ssh.return_value.__enter__.side_effect = ConnectorError("Authentication failed for 203.0.113.10")
    result = runner.invoke(main, [*cli_args, "apply", str(target_file), "-s", "203.0.113.10", "-y"])

    assert result.exit_code == 1
    assert "Authentication failed" in result.output


def test_apply_held_lock(runner, cli_args, target_file, patched_ssh, fake_ssh):
    fake_ssh.dirs.add("/var/lock/deploykit-myapp.lock")
    result = runner.invoke(main, [*cli_args, "apply", str(target_file), "-s", "203.0.113.10", "-y"])

    assert result.exit_code == 1
    assert "--force-unlock" in result.output


def test_reset_unknown_step(runner, cli_args, target_file):
    result = runner.invoke(main, [*cli_args, "reset", str(target_file), "-s", "prod", "--step", "nope"])

    assert result.exit_code == 1
    assert "Unknown step" in result.output


def test_reset_forgets_state(runner, cli_args, target_file, patched_ssh):
    runner.invoke(main, [*cli_args, "apply", str(target_file), "-s", "203.0.113.10", "-y"])
    result = runner.invoke(main, [*cli_args, "reset", str(target_file), "-s", "203.0.113.10", "--step", "app.env"])

    assert result.exit_code == 0
    assert "Forgot 1 recorded step(s)" in result.output


def test_history_and_show_as_json(runner, cli_args, target_file, patched_ssh):
    applied = runner.invoke(main, [*cli_args, "apply", str(target_file), "-s", "203.0.113.10", "-y"])
    assert applied.exit_code == 0, applied.output

    history = runner.invoke(main, [*cli_args, "history", "--json"])
    assert history.exit_code == 0, history.output
    runs = json.loads(history.output)
    assert len(runs) == 1
    assert runs[0]["app"] == "myapp"
    assert runs[0]["host"] == "203.0.113.10"
    assert runs[0]["status"] == "success"

    shown = runner.invoke(main, [*cli_args, "show", str(runs[0]["id"]), "--json"])
    assert shown.exit_code == 0, shown.output
    details = json.loads(shown.output)
    assert details["id"] == runs[0]["id"]
    assert "app.env" in [step["step_id"] for step in details["steps"]]
    assert details["logs"]


def test_show_missing_run(runner, cli_args):
    result = runner.invoke(main, [*cli_args, "show", "42"])

    assert result.exit_code == 1
    assert "Run 42 not found" in result.output


def test_profile_lifecycle(runner, cli_args):
    added = runner.invoke(
        main, [*cli_args, "profile", "add", "prod", "--host", "203.0.113.10", "--user", "ubuntu"]
    )
    assert added.exit_code == 0

    listed = runner.invoke(main, [*cli_args, "profile", "list"])
    assert "ubuntu@203.0.113.10:22" in listed.output

    removed = runner.invoke(main, [*cli_args, "profile", "remove", "prod"])
    assert removed.exit_code == 0
    again = runner.invoke(main, [*cli_args, "profile", "remove", "prod"])
    assert again.exit_code == 1


@pytest.mark.parametrize("flags, level", [([], logging.WARNING), (["-v"], logging.INFO), (["-vv"], logging.DEBUG)])
def test_verbosity_sets_log_level(runner, cli_args, flags, level):
    result = runner.invoke(main, [*cli_args, *flags, "profile", "list"])

    assert result.exit_code == 0, result.output
    assert logging.getLogger().level == level
    assert logging.getLogger("paramiko").level == max(level, logging.WARNING)
