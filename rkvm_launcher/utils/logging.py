"""Logging setup for rkvm-launch.

Logs to a file when configured, otherwise to stderr. Every line carries the
launcher's pid so concurrent launches of different roles can be told apart.
"""

import logging
import sys

_configured = False

_FILE_FORMAT = "%(asctime)s %(levelname)s rkvm-launch[%(process)d] %(name)s %(message)s"
_STDERR_FORMAT = "rkvm-launch[%(process)d] %(levelname)s: %(message)s"


def resolve_level(name: str | None, verbose: bool = False) -> int:
    """Map a settings level name and the ``-v`` flag to a logging level.

    ``-v`` always wins; unknown names fall back to WARNING.
    """
    if verbose:
        return logging.DEBUG
    level = logging.getLevelName(str(name or "WARNING").upper())
    return level if isinstance(level, int) else logging.WARNING


def setup_logging(level: int = logging.WARNING, log_file: str | None = None) -> None:
    """Configure logging for the launcher.

    Args:
        level: Logging level (default: WARNING).
        log_file: Path to a log file. If given, logs go to the file with
            timestamps. If None, logs go to stderr in a short format.
    """
    global _configured
    if _configured:
        return

    if log_file:
        handler = logging.FileHandler(log_file, encoding="utf-8")
        handler.setFormatter(logging.Formatter(_FILE_FORMAT))
    else:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(_STDERR_FORMAT))

    root_logger = logging.getLogger("rkvm_launcher")
    root_logger.setLevel(level)
    root_logger.addHandler(handler)
    _configured = True


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the rkvm_launcher namespace.

    Args:
        name: Module name (e.g., "relauncher").
    """
    return logging.getLogger(f"rkvm_launcher.{name}")
