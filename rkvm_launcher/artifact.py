"""Transient artifact carrying the environment across the privilege boundary.

Each artifact lives in its own ``mkdtemp`` directory (mode 0700) named after
the role and the process id, so concurrent launches never share a path.
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path

from rkvm_launcher.environment import CapturedEnvironment
from rkvm_launcher.exceptions import CleanupError
from rkvm_launcher.utils.logging import get_logger

log = get_logger("artifact")

ARTIFACT_NAME = "environ.json"


class TransientArtifact:
    """Private temp file holding a serialized :class:`CapturedEnvironment`.

    Usage::

        with TransientArtifact(env, role="server") as artifact:
            run(artifact.path)

    Cleanup runs on every exit from the ``with`` block and may also be
    called directly; calling it again is a no-op.

    Args:
        environment: Snapshot to write.
        role: Role name, used in the directory prefix.
        temp_root: Parent directory. Defaults to the system temp dir.
    """

    def __init__(
        self,
        environment: CapturedEnvironment,
        role: str,
        temp_root: str | Path | None = None,
    ):
        self.environment = environment
        self.role = role
        self.temp_root = temp_root
        self._directory: Path | None = None
        self.path: Path | None = None

    def __enter__(self) -> TransientArtifact:
        self.create()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        try:
            self.cleanup()
        except CleanupError as e:
            log.warning("%s", e)
        return None

    def create(self) -> Path:
        """Write the snapshot to a fresh private file and return its path."""
        directory = Path(
            tempfile.mkdtemp(
                prefix=f"rkvm-{self.role}-{os.getpid()}-",
                dir=None if self.temp_root is None else str(self.temp_root),
            )
        )
        self._directory = directory
        path = directory / ARTIFACT_NAME
        self.path = path
        try:
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(self.environment.dumps())
        except BaseException:
            self.cleanup()
            raise

        log.debug("Wrote environment snapshot (%d variables) to %s", len(self.environment), path)
        return path

    def exists(self) -> bool:
        """Return True while the artifact file is still on disk."""
        return self.path is not None and self.path.exists()

    def cleanup(self) -> None:
        """Remove the artifact file and its directory.

        Raises:
            CleanupError: If removal fails for a reason other than the
                files already being gone.
        """
        directory, self._directory = self._directory, None
        if directory is None:
            return

        try:
            (directory / ARTIFACT_NAME).unlink(missing_ok=True)
            directory.rmdir()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise CleanupError(f"Failed to remove transient artifact {directory}: {e}") from e

        log.debug("Removed transient artifact directory %s", directory)
