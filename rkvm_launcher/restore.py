"""Privileged-side helper: restore the captured environment and exec the target.

Run by the escalation tool as::

    python -m rkvm_launcher.restore <artifact> <binary> <config>

The artifact is unlinked as soon as it has been read; the unprivileged
launcher uses its disappearance to tell a denied escalation apart from the
target's own exit status.
"""

from __future__ import annotations

import argparse
import errno
import os
from pathlib import Path

from rkvm_launcher.environment import CapturedEnvironment
from rkvm_launcher.exceptions import PrivilegeError
from rkvm_launcher.utils.terminal import report_error

EXIT_NOT_EXECUTABLE = 126
EXIT_NOT_FOUND = 127


def read_artifact(path: Path) -> CapturedEnvironment:
    """Load the environment snapshot and remove the artifact file.

    Raises:
        PrivilegeError: If the artifact is missing or malformed.
    """
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise PrivilegeError(f"Cannot read environment snapshot {path}: {e}") from e
    finally:
        path.unlink(missing_ok=True)

    try:
        return CapturedEnvironment.loads(text)
    except ValueError as e:
        raise PrivilegeError(f"Malformed environment snapshot {path}: {e}") from e


def exec_target(binary: Path, config_path: Path, environment: CapturedEnvironment) -> None:
    """Replace this process with ``binary config_path`` under *environment*.

    Only returns by raising ``OSError`` when the exec itself fails.
    """
    os.execve(str(binary), [str(binary), str(config_path)], environment.to_dict())


def main(argv: list[str] | None = None) -> int:
    """Entry point for the privileged side. Returns an exit code on failure."""
    parser = argparse.ArgumentParser(
        prog="rkvm_launcher.restore",
        description="Restore a captured environment and exec an rkvm binary",
    )
    parser.add_argument("artifact", type=Path)
    parser.add_argument("binary", type=Path)
    parser.add_argument("config", type=Path)
    args = parser.parse_args(argv)

    try:
        environment = read_artifact(args.artifact)
    except PrivilegeError as e:
        report_error(str(e), exit_code=e.exit_code)
        return e.exit_code

    try:
        exec_target(args.binary, args.config, environment)
    except OSError as e:
        code = EXIT_NOT_FOUND if e.errno == errno.ENOENT else EXIT_NOT_EXECUTABLE
        report_error(f"Cannot execute {args.binary}: {e.strerror}", exit_code=code)
        return code
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
