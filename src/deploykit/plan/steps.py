"""Idempotent deployment steps.

Each step knows how to probe whether the host already has the desired
state (`is_satisfied`) and how to get there (`apply`). Steps never
decide whether they should run; that is the executor's job.

CONTRACT for every apply():
- raises StepError on failure
- undoes its own partial change where it can (file steps restore backups)
- returns the CommandResults it produced, for the run log
"""

from __future__ import annotations

import hashlib
import json
import posixpath
import shlex
from dataclasses import dataclass, field
from pathlib import Path

from paramiko.ssh_exception import SSHException

from deploykit.connector.ssh import CommandResult, SSHConnector
from deploykit.exceptions import StepError

BACKUP_DIR = "/var/backups/deploykit"
RELEASE_MARKER = ".deploykit-release"


def sha256_text(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def sha256_file(path: str | Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


def run_checked(
    ssh: SSHConnector,
    step_id: str,
    command: str,
    *,
    cwd: str | None = None,
    as_user: str | None = None,
    timeout: float | None = None,
) -> CommandResult:
    """Run a command and raise StepError if it exits non-zero."""
    result = ssh.run(command, cwd=cwd, as_user=as_user, timeout=timeout)
    if not result.success:
        raise StepError(
            step_id,
            f"`{command}` exited {result.exit_code}: {result.tail(5)}",
            result,
        )
    return result


@dataclass(kw_only=True)
class Step:
    """Base class for a single idempotent unit of change."""

    id: str
    description: str
    phase: str = "app"
    always_run: bool = False
    retries: int = 0
    retry_delay: float = 2.0
    # Shell probe that, when it succeeds, makes the step moot
    unless: str | None = None
    # Upstream steps whose change must re-trigger this one
    triggers: list[Step] = field(default_factory=list, repr=False)

    kind = "step"

    def definition(self) -> list[str]:
        """Everything that determines what this step does."""
        raise NotImplementedError

    def fingerprint(self) -> str:
        payload = [self.kind, self.id, self.unless or "", *self.definition()]
        payload.extend(upstream.fingerprint() for upstream in self.triggers)
        return hashlib.sha256(json.dumps(payload).encode("utf-8")).hexdigest()[:16]

    def probe(self, ssh: SSHConnector) -> bool:
        """True when the host needs nothing from this step."""
        if self.unless and ssh.run(self.unless).success:
            return True
        return self.is_satisfied(ssh)

    def is_satisfied(self, ssh: SSHConnector) -> bool:
        raise NotImplementedError

    def apply(self, ssh: SSHConnector) -> list[CommandResult]:
        raise NotImplementedError

    def verify(self, ssh: SSHConnector) -> bool:
        """Post-condition checked after apply()."""
        return self.is_satisfied(ssh)


@dataclass(kw_only=True)
class CommandStep(Step):
    """Run shell commands unless a check command already succeeds.

    A step without a check is never satisfied by probing; it relies on
    the recorded state (or always_run) to stay idempotent.
    """

    commands: list[str]
    check: str | None = None
    cwd: str | None = None
    as_user: str | None = None
    timeout: float | None = None

    kind = "command"

    def definition(self) -> list[str]:
        return [self.check or "", self.cwd or "", self.as_user or "", *self.commands]

    def is_satisfied(self, ssh: SSHConnector) -> bool:
        if self.check is None:
            return False
        return ssh.run(self.check, cwd=self.cwd, as_user=self.as_user).success

    def apply(self, ssh: SSHConnector) -> list[CommandResult]:
        return [
            run_checked(ssh, self.id, command, cwd=self.cwd, as_user=self.as_user, timeout=self.timeout)
            for command in self.commands
        ]

    def verify(self, ssh: SSHConnector) -> bool:
        if self.check is None:
            return True
        return self.is_satisfied(ssh)


@dataclass(kw_only=True)
class FileStep(Step):
    """Ensure a remote file has exactly the given content, mode and owner.

    Safety model (same as editing nginx by hand, minus the mistakes):
    1. Backup before edit
    2. Validate (e.g. nginx -t)
    3. Rollback on failure
    4. Run on_change hooks (reloads) only on success
    """

    path: str
    content: str
    mode: str = "644"
    owner: str = "root:root"
    validate: str | None = None
    on_change: list[str] = field(default_factory=list)

    kind = "file"

    @property
    def backup_path(self) -> str:
        # Never inside the target's own directory
        return f"{BACKUP_DIR}{posixpath.normpath(self.path)}.bak"

    def definition(self) -> list[str]:
        return [
            self.path,
            sha256_text(self.content),
            self.mode,
            self.owner,
            self.validate or "",
            *self.on_change,
        ]

    def is_satisfied(self, ssh: SSHConnector) -> bool:
        if ssh.sha256(self.path) != sha256_text(self.content):
            return False
        return ssh.stat(self.path) == (self.mode, self.owner)

    def apply(self, ssh: SSHConnector) -> list[CommandResult]:
        results: list[CommandResult] = []
        quoted_path = shlex.quote(self.path)
        quoted_backup = shlex.quote(self.backup_path)

        existed = ssh.file_exists(self.path)
        if existed:
            ssh.run(f"mkdir -p {shlex.quote(posixpath.dirname(self.backup_path))}")
            results.append(run_checked(ssh, self.id, f"cp -p {quoted_path} {quoted_backup}"))
        else:
            ssh.run(f"mkdir -p {shlex.quote(posixpath.dirname(self.path))}")

        write = ssh.write_file(self.path, self.content, mode=self.mode, owner=self.owner)
        results.append(write)
        if not write.success:
            self._restore(ssh, existed)
            raise StepError(self.id, f"could not write {self.path}: {write.tail(5)}", write)

        if self.validate:
            check = ssh.run(self.validate)
            results.append(check)
            if not check.success:
                self._restore(ssh, existed)
                raise StepError(
                    self.id,
                    f"`{self.validate}` rejected {self.path}, previous version restored: {check.tail(5)}",
                    check,
                )

        for command in self.on_change:
            results.append(run_checked(ssh, self.id, command))
        return results

    def _restore(self, ssh: SSHConnector, existed: bool) -> None:
        if existed:
            ssh.run(f"cp -p {shlex.quote(self.backup_path)} {shlex.quote(self.path)}")
        else:
            ssh.run(f"rm -f {shlex.quote(self.path)}")


@dataclass(kw_only=True)
class SymlinkStep(Step):
    """Ensure `link` is a symlink resolving to `target`."""

    link: str
    target: str
    validate: str | None = None
    on_change: list[str] = field(default_factory=list)

    kind = "symlink"

    def definition(self) -> list[str]:
        return [self.link, self.target, self.validate or "", *self.on_change]

    def is_satisfied(self, ssh: SSHConnector) -> bool:
        link, target = shlex.quote(self.link), shlex.quote(self.target)
        return ssh.run(f'test -L {link} && test "$(readlink -f {link})" = "$(readlink -f {target})"').success

    def apply(self, ssh: SSHConnector) -> list[CommandResult]:
        results = [run_checked(ssh, self.id, f"ln -sfn {shlex.quote(self.target)} {shlex.quote(self.link)}")]
        if self.validate:
            check = ssh.run(self.validate)
            results.append(check)
            if not check.success:
                ssh.run(f"rm -f {shlex.quote(self.link)}")
                raise StepError(self.id, f"`{self.validate}` failed, link removed: {check.tail(5)}", check)
        for command in self.on_change:
            results.append(run_checked(ssh, self.id, command))
        return results


@dataclass(kw_only=True)
class UploadStep(Step):
    """Upload a release archive and unpack it into the working directory.

    The archive's sha256 is written to a marker file next to the release
    so an unchanged archive is never unpacked twice.
    """

    local_path: str
    remote_dir: str
    owner: str
    archive_sha256: str = ""

    kind = "upload"

    def __post_init__(self) -> None:
        if not self.archive_sha256:
            self.archive_sha256 = sha256_file(self.local_path)

    @property
    def marker_path(self) -> str:
        return posixpath.join(self.remote_dir, RELEASE_MARKER)

    def definition(self) -> list[str]:
        return [self.remote_dir, self.owner, self.archive_sha256]

    def is_satisfied(self, ssh: SSHConnector) -> bool:
        current = ssh.read_file(self.marker_path)
        return current is not None and current.strip() == self.archive_sha256

    def apply(self, ssh: SSHConnector) -> list[CommandResult]:
        staging = f"/tmp/deploykit-{self.archive_sha256[:12]}.tar.gz"
        try:
            ssh.put_file(self.local_path, staging)
        except (OSError, SSHException) as e:
            raise StepError(self.id, f"upload of {self.local_path} failed: {e}") from e

        remote_dir = shlex.quote(self.remote_dir)
        user, _, group = self.owner.partition(":")
        results = [
            run_checked(ssh, self.id, f"mkdir -p {remote_dir}"),
            run_checked(ssh, self.id, f"tar -xzf {shlex.quote(staging)} -C {remote_dir}", timeout=600),
            run_checked(ssh, self.id, f"chown -R {shlex.quote(user)}:{shlex.quote(group or user)} {remote_dir}"),
            run_checked(ssh, self.id, f"printf '%s\\n' {self.archive_sha256} > {shlex.quote(self.marker_path)}"),
        ]
        ssh.run(f"rm -f {shlex.quote(staging)}")
        return results
