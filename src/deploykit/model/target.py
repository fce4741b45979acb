"""Target state - the declarative description of a deployment.

A target file is YAML validated into the pydantic models below. It
describes *what* the host should look like; the plan builder decides
*how* to get there.
"""

from __future__ import annotations

import posixpath
import re
from enum import Enum
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from deploykit.exceptions import TargetConfigError

_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9-]*$")
_ENV_KEY_RE = re.compile(r"^[A-Z_][A-Z0-9_]*$")
_USER_RE = re.compile(r"^[a-z_][a-z0-9_-]*$")
_LABEL_RE = re.compile(r"^(?!-)[a-z0-9-]{1,63}(?<!-)$")
_CONTROL_RE = re.compile(r"[\x00-\x08\x0a-\x1f\x7f]")


class Runtime(str, Enum):
    """Language runtime the app needs on the host."""

    NODE = "node"
    PYTHON = "python"
    CUSTOM = "custom"


class ProcessManager(str, Enum):
    """Supervisor that keeps the app running."""

    SYSTEMD = "systemd"
    PM2 = "pm2"


class AppSpec(BaseModel):
    """The application process."""

    name: str = Field(..., description="Short name used for unit and site files")
    user: str = Field("deploy", description="System user that owns and runs the app")
    working_dir: str = Field(..., description="Absolute directory the app runs from")
    port: int = Field(3000, ge=1, le=65535, description="Local port the app listens on")
    runtime: Runtime = Runtime.NODE
    start_command: str = Field(..., description="Command line that starts the app")
    install_command: Optional[str] = None
    build_command: Optional[str] = None
    artifact: Optional[str] = Field(None, description="Local release archive to upload")
    env: dict[str, str] = Field(default_factory=dict)

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        if not _NAME_RE.match(value):
            raise ValueError("must be lowercase letters, digits and dashes")
        return value

    @field_validator("user")
    @classmethod
    def _check_user(cls, value: str) -> str:
        if not _USER_RE.match(value):
            raise ValueError(f"invalid system user name: {value!r}")
        return value

    @field_validator("working_dir")
    @classmethod
    def _check_working_dir(cls, value: str) -> str:
        if not value.startswith("/"):
            raise ValueError("must be an absolute path")
        return posixpath.normpath(value)

    @field_validator("env", mode="before")
    @classmethod
    def _stringify_env(cls, value: object) -> object:
        if isinstance(value, dict):
            return {str(k): "" if v is None else str(v) for k, v in value.items()}
        return value

    @field_validator("env")
    @classmethod
    def _check_env_keys(cls, value: dict[str, str]) -> dict[str, str]:
        bad = [key for key in value if not _ENV_KEY_RE.match(key)]
        if bad:
            raise ValueError(f"invalid environment variable names: {', '.join(bad)}")
        unsafe = [key for key, item in value.items() if _CONTROL_RE.search(item)]
        if unsafe:
            raise ValueError(f"control characters in environment values: {', '.join(unsafe)}")
        return value


class DomainSpec(BaseModel):
    name: str
    aliases: list[str] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        return _hostname(value)

    @field_validator("aliases")
    @classmethod
    def _check_aliases(cls, value: list[str]) -> list[str]:
        return [_hostname(alias) for alias in value]


def _hostname(value: str) -> str:
    host = value.strip().lower().rstrip(".")
    if not host or len(host) > 253 or not all(_LABEL_RE.match(label) for label in host.split(".")):
        raise ValueError(f"invalid host name: {value!r}")
    return host


class TLSSpec(BaseModel):
    enabled: bool = True
    email: Optional[str] = None
    staging: bool = False


class FirewallSpec(BaseModel):
    enabled: bool = True


class HealthcheckSpec(BaseModel):
    path: str = "/"
    timeout: int = Field(10, ge=1)

    @field_validator("path")
    @classmethod
    def _leading_slash(cls, value: str) -> str:
        return value if value.startswith("/") else f"/{value}"


class CISpec(BaseModel):
    branch: str = "main"
    node_version: str = "20"
    python_version: str = "3.12"


class TargetState(BaseModel):
    """Complete desired state for one application on one host."""

    app: AppSpec
    process_manager: ProcessManager = ProcessManager.SYSTEMD
    domain: DomainSpec
    tls: TLSSpec = Field(default_factory=TLSSpec)
    firewall: FirewallSpec = Field(default_factory=FirewallSpec)
    packages: list[str] = Field(default_factory=list)
    healthcheck: HealthcheckSpec = Field(default_factory=HealthcheckSpec)
    ci: CISpec = Field(default_factory=CISpec)

    @model_validator(mode="after")
    def _check_consistency(self) -> "TargetState":
        if self.tls.enabled and not self.tls.email:
            raise ValueError("tls.email is required when tls.enabled is true")
        # The guide's .env always pins the environment and port
        self.app.env.setdefault("NODE_ENV" if self.app.runtime == Runtime.NODE else "APP_ENV", "production")
        self.app.env.setdefault("PORT", str(self.app.port))
        return self

    @property
    def name(self) -> str:
        return self.app.name

    @property
    def service_name(self) -> str:
        return self.app.name

    @property
    def server_names(self) -> list[str]:
        names: list[str] = []
        for name in [self.domain.name, *self.domain.aliases]:
            if name not in names:
                names.append(name)
        return names

    @property
    def env_path(self) -> str:
        return posixpath.join(self.app.working_dir, ".env")

    @property
    def user_home(self) -> str:
        return f"/home/{self.app.user}"


def load_target(path: str | Path) -> TargetState:
    """Load and validate a target state YAML file.

    Raises:
        TargetConfigError: If the file is missing, unparsable or invalid.
    """
    target_file = Path(path).expanduser()
    if not target_file.is_file():
        raise TargetConfigError(f"Target file not found: {target_file}")

    try:
        raw = yaml.safe_load(target_file.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise TargetConfigError(f"{target_file}: invalid YAML: {e}") from e

    if not isinstance(raw, dict):
        raise TargetConfigError(f"{target_file}: expected a mapping at the top level")

    try:
        target = TargetState.model_validate(raw)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}" for err in e.errors()
        )
        raise TargetConfigError(f"{target_file}: {problems}") from e

    # Artifact paths are relative to the target file
    if target.app.artifact and not Path(target.app.artifact).is_absolute():
        target.app.artifact = str((target_file.parent / target.app.artifact).resolve())
    return target
