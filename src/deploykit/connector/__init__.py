"""Connector package - SSH transport to the target host."""

from deploykit.connector.ssh import CommandResult, SSHConfig, SSHConnector

__all__ = ["CommandResult", "SSHConfig", "SSHConnector"]
