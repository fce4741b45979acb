"""Configuration management for deploykit server profiles."""

import logging
import os
from pathlib import Path
from typing import Any

import keyring
import yaml
from keyring.errors import KeyringError

from deploykit.connector.ssh import SSHConfig
from deploykit.storage.db import resolve_db_path

logger = logging.getLogger(__name__)

KEYRING_SENTINEL = "__keyring__"


def default_config_dir() -> Path:
    """Config directory: $DEPLOYKIT_CONFIG or ~/.deploykit."""
    env_config = os.getenv("DEPLOYKIT_CONFIG")
    if env_config:
        return Path(env_config).expanduser().resolve()
    return Path.home() / ".deploykit"


class ConfigManager:
    """Manages server profiles stored in YAML format with secure keyring for passwords."""

    def __init__(self, config_dir: Path | None = None) -> None:
        self.config_dir = config_dir or default_config_dir()
        self.profiles_file = self.config_dir / "profiles.yaml"
        self.service_id = "deploykit"
        self._ensure_config_dir()

    @property
    def state_db_path(self) -> Path:
        """Location of the state database ($DEPLOYKIT_DB wins)."""
        return resolve_db_path(self.config_dir)

    def _ensure_config_dir(self) -> None:
        """Create config directory if it doesn't exist."""
        self.config_dir.mkdir(parents=True, exist_ok=True)
        if not self.profiles_file.exists():
            self._save_profiles({})

    def _load_profiles(self) -> dict[str, Any]:
        """Load all profiles from the YAML file."""
        if not self.profiles_file.exists():
            return {}

        try:
            with open(self.profiles_file, "r") as f:
                return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            logger.warning("Ignoring unreadable profiles file %s: %s", self.profiles_file, e)
            return {}

    def _save_profiles(self, profiles: dict[str, Any]) -> None:
        """Save profiles to the YAML file with proper permissions."""
        self.profiles_file.touch(mode=0o600)
        with open(self.profiles_file, "w") as f:
            yaml.safe_dump(profiles, f)

    def add_profile(self, name: str, config: SSHConfig) -> None:
        """Add or update a server profile."""
        profiles = self._load_profiles()

        # Handle password via keyring
        password_ref = None
        if config.password:
            try:
                keyring.set_password(self.service_id, name, config.password)
                password_ref = KEYRING_SENTINEL
            except KeyringError:
                # Headless hosts often have no keyring backend
                logger.warning("No keyring backend; storing password for %s in %s", name, self.profiles_file)
                password_ref = config.password

        profiles[name] = {
            "host": config.host,
            "user": config.user,
            "port": config.port,
            "key_path": config.key_path,
            "use_sudo": config.use_sudo,
            "password": password_ref,
        }
        self._save_profiles(profiles)

    def get_profile(self, name: str) -> SSHConfig | None:
        """Get an SSHConfig by profile name."""
        profiles = self._load_profiles()
        data = profiles.get(name)
        if not data:
            return None

        # Resolve password from keyring if needed
        password = data.get("password")
        if password == KEYRING_SENTINEL:
            try:
                password = keyring.get_password(self.service_id, name)
            except KeyringError:
                password = None

        return SSHConfig(
            host=data["host"],
            user=data.get("user", "root"),
            port=data.get("port", 22),
            key_path=data.get("key_path"),
            use_sudo=data.get("use_sudo", True),
            password=password,
        )

    def resolve(self, server: str) -> SSHConfig:
        """Resolve a profile name or bare hostname to an SSHConfig."""
        cfg = self.get_profile(server)
        if cfg:
            return cfg
        # Otherwise treat as hostname/IP with default root user
        return SSHConfig(host=server, user="root")

    def list_profiles(self) -> dict[str, Any]:
        """List all available profiles."""
        return self._load_profiles()

    def remove_profile(self, name: str) -> bool:
        """Remove a server profile."""
        profiles = self._load_profiles()
        if name not in profiles:
            return False

        if profiles[name].get("password") == KEYRING_SENTINEL:
            try:
                keyring.delete_password(self.service_id, name)
            except KeyringError as e:
                logger.warning("Could not remove keyring entry for %s: %s", name, e)

        del profiles[name]
        self._save_profiles(profiles)
        return True
