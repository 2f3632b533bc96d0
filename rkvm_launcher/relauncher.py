"""Privileged relaunch of an ``rkvm-<role>`` binary with the caller's environment.

Linear pipeline: validate role -> snapshot environment -> resolve paths ->
run through the escalation tool -> clean up. The transient artifact is
removed on every exit path, including signals delivered while the
privileged child is running: handlers are installed before the artifact
is created and removed only after it is gone.
"""

from __future__ import annotations

import contextlib
import signal
import subprocess
import threading
from collections.abc import Mapping
from pathlib import Path

from rkvm_launcher.artifact import TransientArtifact
from rkvm_launcher.environment import CapturedEnvironment
from rkvm_launcher.escalation import build_command, describe_failure
from rkvm_launcher.exceptions import PrivilegeError
from rkvm_launcher.role import LaunchTarget, resolve_target, validate_role
from rkvm_launcher.utils.logging import get_logger

log = get_logger("relauncher")

FORWARDED_SIGNALS = (signal.SIGINT, signal.SIGTERM, signal.SIGHUP)
_CHILD_GRACE_SEC = 5


class Interrupted(Exception):
    """Raised from a signal handler while a relaunch is in progress."""

    def __init__(self, signum: int):
        super().__init__(f"Interrupted by {signal.Signals(signum).name}")
        self.signum = signum

    @property
    def exit_code(self) -> int:
        return 128 + self.signum


def _raise_interrupted(signum, frame) -> None:
    raise Interrupted(signum)


class Relauncher:
    """Relaunch ``rkvm-<role>`` under elevated privileges.

    Args:
        bin_dir: Directory holding the ``rkvm-*`` binaries.
        config_dir: Directory holding the ``<role>.toml`` files.
        escalation: Escalation tool name (``"pkexec"`` or ``"sudo"``).
        temp_root: Parent directory for the transient artifact.
        python: Interpreter used for the privileged restore helper.
    """

    def __init__(
        self,
        bin_dir: str | Path,
        config_dir: str | Path,
        escalation: str = "pkexec",
        temp_root: str | Path | None = None,
        python: str | None = None,
    ):
        self.bin_dir = Path(bin_dir)
        self.config_dir = Path(config_dir)
        self.escalation = escalation
        self.temp_root = temp_root
        self.python = python

    def run(self, role: str, environ: Mapping[str, str] | None = None) -> int:
        """Run the full pipeline for *role* and return the child's exit status.

        Args:
            role: Role name selecting binary and configuration.
            environ: Environment to capture. Defaults to ``os.environ``.

        Returns:
            The relaunched program's exit status, or ``128 + signum`` if it
            was killed by a signal.

        Raises:
            InvalidRoleError: If the role is invalid.
            NotFoundError: If the configuration file is missing.
            PrivilegeError: If escalation is unavailable or denied.
            Interrupted: If this process received a terminating signal.
        """
        validate_role(role)
        environment = CapturedEnvironment.capture(environ)
        target = resolve_target(role, self.bin_dir, self.config_dir)
        log.info("Relaunching %s with %s", target.binary, target.config_path)

        with (
            _signals_raise_interrupted(),
            TransientArtifact(environment, role=role, temp_root=self.temp_root) as artifact,
        ):
            return self._execute(target, artifact)

    def _execute(self, target: LaunchTarget, artifact: TransientArtifact) -> int:
        cmd = build_command(self.escalation, artifact.path, target, python=self.python)
        log.debug("Escalation command: %s", cmd)

        try:
            process = subprocess.Popen(cmd)
        except OSError as e:
            raise PrivilegeError(f"Failed to start {cmd[0]}: {e}") from e

        try:
            returncode = process.wait()
        except Interrupted as e:
            _stop_child(process, e.signum)
            raise

        # Only the restore helper consumes the artifact, so while it exists
        # the status belongs to the escalation tool.
        if returncode != 0 and artifact.exists():
            raise PrivilegeError(describe_failure(self.escalation, returncode))

        if returncode < 0:
            log.warning("%s was killed by signal %d", target.binary, -returncode)
            return 128 - returncode

        log.info("%s exited with status %d", target.binary, returncode)
        return returncode


def _stop_child(process: subprocess.Popen, signum: int) -> None:
    """Forward *signum* to the child and wait briefly for it to exit."""
    log.warning("Forwarding %s to privileged child", signal.Signals(signum).name)
    try:
        process.send_signal(signum)
    except (ProcessLookupError, PermissionError) as e:
        log.warning("Could not signal privileged child: %s", e)
        return

    try:
        process.wait(timeout=_CHILD_GRACE_SEC)
    except subprocess.TimeoutExpired:
        log.warning("Privileged child still running after %ds", _CHILD_GRACE_SEC)


@contextlib.contextmanager
def _signals_raise_interrupted():
    """Turn terminating signals into :class:`Interrupted` for the block's duration.

    Signal handlers can only be installed from the main thread; elsewhere
    this is a no-op.
    """
    previous = {}
    if threading.current_thread() is threading.main_thread():
        for signum in FORWARDED_SIGNALS:
            previous[signum] = signal.signal(signum, _raise_interrupted)
    try:
        yield
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)
