"""Privilege-escalation mechanism lookup and command construction.

The escalation tool never receives a shell string: the privileged side runs
the restore helper module with the artifact, binary and config paths as
separate argv entries.
"""

from __future__ import annotations

import shutil
import sys
from pathlib import Path

from rkvm_launcher.exceptions import ConfigError, PrivilegeError
from rkvm_launcher.role import LaunchTarget

RESTORE_MODULE = "rkvm_launcher.restore"

# pkexec exit codes with a known meaning; sudo only reports 1.
_PKEXEC_REASONS = {
    126: "authentication dismissed",
    127: "not authorized",
}

# Arguments placed between the tool and the command it should run.
_TOOL_ARGS = {
    "pkexec": [],
    "sudo": ["--"],
}


def escalation_prefix(tool: str) -> list[str]:
    """Return the argv prefix for running a command through *tool*.

    Raises:
        ConfigError: If *tool* is not a supported escalation mechanism.
        PrivilegeError: If *tool* cannot be found on ``PATH``.
    """
    if tool not in _TOOL_ARGS:
        raise ConfigError(f"Unsupported escalation tool: {tool!r}")

    executable = shutil.which(tool)
    if executable is None:
        raise PrivilegeError(f"Could not find {tool!r} on PATH")

    return [executable, *_TOOL_ARGS[tool]]


def build_command(
    tool: str,
    artifact: Path,
    target: LaunchTarget,
    python: str | None = None,
) -> list[str]:
    """Build the full argv for the privileged relaunch.

    Args:
        tool: Escalation tool name (``"pkexec"`` or ``"sudo"``).
        artifact: Path of the serialized environment snapshot.
        target: Resolved binary and configuration path.
        python: Interpreter for the restore helper. Defaults to
            ``sys.executable``; must be absolute for ``pkexec``.

    Returns:
        Argument vector for ``subprocess.Popen``.
    """
    python = python or sys.executable
    return [
        *escalation_prefix(tool),
        python,
        "-m",
        RESTORE_MODULE,
        str(artifact),
        str(target.binary),
        str(target.config_path),
    ]


def describe_failure(tool: str, returncode: int) -> str:
    """Message for an escalation that exited before the restore helper ran."""
    reason = _PKEXEC_REASONS.get(returncode) if tool == "pkexec" else None
    if reason is None:
        reason = "authentication failed or was refused"
    return f"{tool} did not authorize the relaunch: {reason} (exit {returncode})"
