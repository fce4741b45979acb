"""Tests for target state loading and validation."""

import pytest
import yaml

from deploykit.exceptions import TargetConfigError
from deploykit.model.target import ProcessManager, Runtime, TargetState, load_target


def test_load_target_defaults(target_file):
    target = load_target(target_file)

    assert target.name == "myapp"
    assert target.app.runtime == Runtime.NODE
    assert target.process_manager == ProcessManager.SYSTEMD
    assert target.firewall.enabled is True
    assert target.healthcheck.path == "/"
    assert target.env_path == "/var/www/myapp/.env"


def test_env_values_are_strings(target):
    assert target.app.env["PORT"] == "3000"
    assert target.app.env["NODE_ENV"] == "production"


def test_env_defaults_filled_from_port(target_data):
    target_data["app"]["env"] = {}
    target_data["app"]["port"] = 8080
    target = TargetState.model_validate(target_data)

    assert target.app.env == {"NODE_ENV": "production", "PORT": "8080"}


def test_python_runtime_uses_app_env(target_data):
    target_data["app"]["env"] = {}
    target_data["app"]["runtime"] = "python"
    target = TargetState.model_validate(target_data)

    assert target.app.env["APP_ENV"] == "production"
    assert "NODE_ENV" not in target.app.env


def test_server_names_are_deduplicated(target_data):
    target_data["domain"]["aliases"] = ["www.example.com", "example.com", "www.example.com"]
    target = TargetState.model_validate(target_data)

    assert target.server_names == ["example.com", "www.example.com"]


def test_tls_requires_email(tmp_path, target_data):
    target_data["tls"] = {"enabled": True}
    path = tmp_path / "t.yaml"
    path.write_text(yaml.safe_dump(target_data))

    with pytest.raises(TargetConfigError, match="tls.email is required"):
        load_target(path)


def test_tls_disabled_needs_no_email(target_data):
    target_data["tls"] = {"enabled": False}
    target = TargetState.model_validate(target_data)
    assert target.tls.email is None


@pytest.mark.parametrize(
    "field, value, message",
    [
        ("name", "My_App", "app.name"),
        ("working_dir", "var/www/app", "app.working_dir"),
        ("port", 70000, "app.port"),
        ("user", "Bad User", "app.user"),
    ],
)
def test_invalid_app_fields(tmp_path, target_data, field, value, message):
    target_data["app"][field] = value
    path = tmp_path / "t.yaml"
    path.write_text(yaml.safe_dump(target_data))

    with pytest.raises(TargetConfigError, match=message):
        load_target(path)


def test_invalid_env_key(target_data):
    target_data["app"]["env"] = {"lower-case": "x"}
    with pytest.raises(ValueError, match="invalid environment variable names"):
        TargetState.model_validate(target_data)


@pytest.mark.parametrize("value", ["hi\nPATH=/evil", "carriage\rreturn", "nul\x00byte"])
def test_env_values_reject_control_characters(target_data, value):
    target_data["app"]["env"]["GREETING"] = value
    with pytest.raises(ValueError, match="control characters in environment values: GREETING"):
        TargetState.model_validate(target_data)


def test_env_values_keep_tabs(target_data):
    target_data["app"]["env"]["GREETING"] = "hello\tworld"
    assert TargetState.model_validate(target_data).app.env["GREETING"] == "hello\tworld"


@pytest.mark.parametrize(
    "domain",
    ["example.com; touch /tmp/pwned #", "exa mple.com", "-bad.example.com", "", "a" * 64 + ".com", "*.example.com"],
)
def test_invalid_domain_names(tmp_path, target_data, domain):
    target_data["domain"]["name"] = domain
    path = tmp_path / "t.yaml"
    path.write_text(yaml.safe_dump(target_data))

    with pytest.raises(TargetConfigError, match="domain.name"):
        load_target(path)


def test_invalid_domain_alias(target_data):
    target_data["domain"]["aliases"] = ["www.example.com", "$(reboot)"]
    with pytest.raises(ValueError, match="invalid host name"):
        TargetState.model_validate(target_data)


def test_domain_names_are_normalized(target_data):
    target_data["domain"] = {"name": "Example.COM.", "aliases": [" WWW.example.com"]}
    target = TargetState.model_validate(target_data)

    assert target.server_names == ["example.com", "www.example.com"]


def test_working_dir_is_normalized(target_data):
    target_data["app"]["working_dir"] = "/var/www/myapp/"
    target = TargetState.model_validate(target_data)
    assert target.app.working_dir == "/var/www/myapp"


def test_missing_file(tmp_path):
    with pytest.raises(TargetConfigError, match="not found"):
        load_target(tmp_path / "nope.yaml")


def test_invalid_yaml(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("app: [unclosed\n")
    with pytest.raises(TargetConfigError, match="invalid YAML"):
        load_target(path)


def test_non_mapping_document(tmp_path):
    path = tmp_path / "list.yaml"
    path.write_text("- a\n- b\n")
    with pytest.raises(TargetConfigError, match="mapping"):
        load_target(path)


def test_relative_artifact_resolved_against_target_file(tmp_path, target_data):
    (tmp_path / "dist").mkdir()
    archive = tmp_path / "dist" / "release.tar.gz"
    archive.write_bytes(b"not really gzip")
    target_data["app"]["artifact"] = "dist/release.tar.gz"
    path = tmp_path / "target.yaml"
    path.write_text(yaml.safe_dump(target_data))

    target = load_target(path)
    assert target.app.artifact == str(archive.resolve())
