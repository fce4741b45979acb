"""SSH Connector - Secure connection to the target host.

This module handles all SSH communication with the server being
deployed to. Commands run through a login shell, optionally under
sudo, and files are transferred over SFTP.
"""

import hashlib
import logging
import posixpath
import secrets
import shlex
from dataclasses import dataclass, field
from pathlib import Path

import paramiko
from paramiko.ssh_exception import AuthenticationException, SSHException

from deploykit.exceptions import ConnectorError

logger = logging.getLogger(__name__)


@dataclass
class SSHConfig:
    """SSH connection configuration."""

    host: str
    user: str = "root"
    port: int = 22
    key_path: str | None = None
    password: str | None = None  # Fallback, prefer keys
    use_sudo: bool = True
    timeout: int = 30


@dataclass
class CommandResult:
    """Result of a command execution."""

    command: str
    stdout: str
    stderr: str
    exit_code: int
    success: bool = field(init=False)

    def __post_init__(self) -> None:
        self.success = self.exit_code == 0

    def tail(self, lines: int = 20) -> str:
        """Last lines of stderr (or stdout when stderr is empty)."""
        text = self.stderr.strip() or self.stdout.strip()
        return "\n".join(text.splitlines()[-lines:])


class SSHConnector:
    """SSH connection manager for deployment operations.

    Example:
        >>> config = SSHConfig(host="203.0.113.10", user="deploy")
        >>> with SSHConnector(config) as ssh:
        ...     result = ssh.run("nginx -v")
        ...     print(result.stderr)
    """

    def __init__(self, config: SSHConfig) -> None:
        """Initialize SSH connector with configuration."""
        self.config = config
        self._client: paramiko.SSHClient | None = None

    @property
    def host(self) -> str:
        return self.config.host

    def connect(self) -> None:
        """Establish SSH connection."""
        self._client = paramiko.SSHClient()
        self._client.load_system_host_keys()
        self._client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        connect_kwargs: dict = {
            "hostname": self.config.host,
            "port": self.config.port,
            "username": self.config.user,
            "timeout": self.config.timeout,
        }

        # Prefer key-based authentication
        if self.config.key_path:
            key_path = Path(self.config.key_path).expanduser()
            if key_path.exists():
                connect_kwargs["key_filename"] = str(key_path)
        elif self.config.password:
            connect_kwargs["password"] = self.config.password

        logger.debug("Connecting to %s@%s:%s", self.config.user, self.config.host, self.config.port)
        try:
            self._client.connect(**connect_kwargs)
        except AuthenticationException as e:
            raise ConnectorError(f"Authentication failed for {self.config.host}: {e}") from e
        except (SSHException, OSError) as e:
            raise ConnectorError(f"SSH error for {self.config.host}: {e}") from e

    def disconnect(self) -> None:
        """Close SSH connection."""
        if self._client:
            self._client.close()
            self._client = None

    def __enter__(self) -> "SSHConnector":
        """Context manager entry."""
        self.connect()
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.disconnect()

    def _wrap(self, command: str, use_sudo: bool, cwd: str | None, as_user: str | None) -> str:
        """Build the shell line actually sent over the channel."""
        if cwd:
            command = f"cd {shlex.quote(cwd)} && {command}"

        if as_user and as_user != self.config.user:
            command = f"sudo -u {shlex.quote(as_user)} -H bash -lc {shlex.quote(command)}"
            # The outer sudo hop is only needed for the password prompt
            use_sudo = self.config.user != "root" and bool(self.config.password)
            if not use_sudo:
                return command
        elif as_user:
            return f"bash -lc {shlex.quote(command)}"

        if use_sudo and self.config.user != "root":
            if self.config.password:
                # Use -S to read password from stdin
                return f"echo {shlex.quote(self.config.password)} | sudo -S -p '' bash -c {shlex.quote(command)}"
            return f"sudo -n bash -c {shlex.quote(command)}"
        return command

    def run(
        self,
        command: str,
        use_sudo: bool | None = None,
        timeout: float | None = None,
        *,
        cwd: str | None = None,
        as_user: str | None = None,
    ) -> CommandResult:
        """Execute a command on the remote server.

        Args:
            command: The shell command to execute.
            use_sudo: Whether to use sudo. Defaults to config setting.
            timeout: Command timeout in seconds. Defaults to config timeout.
            cwd: Directory to change into first.
            as_user: Run the command as this (non-login) system user.

        Returns:
            CommandResult with stdout, stderr, and exit_code. The recorded
            command is the unwrapped one so credentials never leak into logs.
        """
        if not self._client:
            raise RuntimeError("Not connected. Use 'with SSHConnector(config):' context.")

        if use_sudo is None:
            use_sudo = self.config.use_sudo

        wire_command = self._wrap(command, use_sudo, cwd, as_user)
        cmd_timeout = timeout if timeout is not None else self.config.timeout
        logger.debug("run: %s", command)

        try:
            _stdin, stdout, stderr = self._client.exec_command(wire_command, timeout=cmd_timeout)
            exit_code = stdout.channel.recv_exit_status()

            return CommandResult(
                command=command,
                stdout=stdout.read().decode("utf-8", errors="replace"),
                stderr=stderr.read().decode("utf-8", errors="replace"),
                exit_code=exit_code,
            )
        except Exception as e:
            # Timeouts and channel errors are reported like a failed command
            logger.debug("run failed: %s (%s)", command, e)
            return CommandResult(
                command=command,
                stdout="",
                stderr=f"SSH Execution Error: {str(e)}",
                exit_code=255,
            )

    def read_file(self, path: str) -> str | None:
        """Read file contents from the remote server, or None if missing."""
        result = self.run(f"cat {shlex.quote(path)}", use_sudo=True)
        if result.success:
            return result.stdout
        return None

    def file_exists(self, path: str) -> bool:
        """Check if a file exists on the remote server."""
        return self.run(f"test -f {shlex.quote(path)}", use_sudo=True).success

    def dir_exists(self, path: str) -> bool:
        """Check if a directory exists on the remote server."""
        return self.run(f"test -d {shlex.quote(path)}", use_sudo=True).success

    def sha256(self, path: str) -> str | None:
        """Return the hex sha256 of a remote file, or None if missing."""
        result = self.run(f"sha256sum {shlex.quote(path)}", use_sudo=True)
        if not result.success or not result.stdout.strip():
            return None
        return result.stdout.split()[0]

    def stat(self, path: str) -> tuple[str, str] | None:
        """Return (octal mode, owner:group) of a remote path, or None."""
        result = self.run(f"stat -c '%a %U:%G' {shlex.quote(path)}", use_sudo=True)
        if not result.success:
            return None
        parts = result.stdout.split()
        if len(parts) != 2:
            return None
        return parts[0], parts[1]

    # =========================================================================
    # WRITE OPERATIONS
    # =========================================================================

    def put_file(self, local_path: str | Path, remote_path: str) -> None:
        """Upload a local file over SFTP (as the SSH user)."""
        if not self._client:
            raise RuntimeError("Not connected. Use 'with SSHConnector(config):' context.")
        sftp = self._client.open_sftp()
        try:
            sftp.put(str(local_path), remote_path)
        finally:
            sftp.close()

    def write_file(
        self,
        path: str,
        content: str,
        *,
        mode: str = "644",
        owner: str = "root:root",
    ) -> CommandResult:
        """Write content to a file on the remote server.

        The content is staged in /tmp over SFTP, then moved into place
        with `install` so mode and ownership are set atomically.
        """
        if not self._client:
            raise RuntimeError("Not connected. Use 'with SSHConnector(config):' context.")

        staging = f"/tmp/.deploykit-{secrets.token_hex(6)}-{posixpath.basename(path)}"
        sftp = self._client.open_sftp()
        try:
            with sftp.open(staging, "w") as handle:
                # Private before any content lands in /tmp
                handle.chmod(0o600)
                handle.write(content.encode("utf-8"))
        finally:
            sftp.close()

        user, _, group = owner.partition(":")
        result = self.run(
            f"install -m {mode} -o {shlex.quote(user)} -g {shlex.quote(group or user)} "
            f"{shlex.quote(staging)} {shlex.quote(path)}",
            use_sudo=True,
        )
        self.run(f"rm -f {shlex.quote(staging)}", use_sudo=True)
        logger.debug("wrote %s (sha256 %s)", path, hashlib.sha256(content.encode("utf-8")).hexdigest()[:12])
        return result
