"""Exceptions raised by deploykit.

The CLI catches DeployKitError and turns it into a readable message;
anything else is a bug and propagates with a traceback.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from deploykit.connector.ssh import CommandResult


class DeployKitError(Exception):
    """Base class for all expected deploykit failures."""


class TargetConfigError(DeployKitError):
    """Raised when a target state file cannot be loaded or is invalid."""


class PlanError(DeployKitError):
    """Raised when a plan cannot be built or filtered."""


class LockError(DeployKitError):
    """Raised when another deployment holds the host lock."""


class ConnectorError(DeployKitError, ConnectionError):
    """Raised when the SSH transport cannot be established."""


class StepError(DeployKitError):
    """Raised when a step fails to reach its desired state."""

    def __init__(
        self,
        step_id: str,
        message: str,
        result: CommandResult | None = None,
    ) -> None:
        super().__init__(f"[{step_id}] {message}")
        self.step_id = step_id
        self.result = result
