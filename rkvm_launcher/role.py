"""Role validation and launch target resolution.

A role selects both the binary (``<bin-dir>/rkvm-<role>``) and its
configuration file (``<config-dir>/<role>.toml``).
"""

import re
from dataclasses import dataclass
from pathlib import Path

from rkvm_launcher.exceptions import InvalidRoleError, NotFoundError

_ROLE_PATTERN = re.compile(r"[A-Za-z0-9_-]+")

BINARY_PREFIX = "rkvm-"
CONFIG_SUFFIX = ".toml"


@dataclass(frozen=True)
class LaunchTarget:
    """Resolved binary and configuration paths for one role."""

    role: str
    binary: Path
    config_path: Path


def validate_role(role: str) -> str:
    """Check that *role* only contains letters, digits, ``-`` and ``_``.

    Raises:
        InvalidRoleError: If the role is empty or contains other characters.
    """
    if not isinstance(role, str) or not _ROLE_PATTERN.fullmatch(role):
        raise InvalidRoleError(
            f"Invalid role {role!r}: only letters, digits, '-' and '_' are allowed"
        )
    return role


def resolve_target(role: str, bin_dir: str | Path, config_dir: str | Path) -> LaunchTarget:
    """Build the launch target for a validated role.

    The configuration check is best-effort: the relaunched program remains
    the authority on whether it can actually read the file.

    Args:
        role: Role name, validated again here.
        bin_dir: Directory holding the ``rkvm-*`` binaries.
        config_dir: Directory holding the ``*.toml`` files.

    Returns:
        The resolved :class:`LaunchTarget` with absolute paths.

    Raises:
        InvalidRoleError: If the role is invalid.
        NotFoundError: If the configuration file does not exist.
    """
    validate_role(role)
    binary = Path(bin_dir).absolute() / f"{BINARY_PREFIX}{role}"
    config_path = Path(config_dir).absolute() / f"{role}{CONFIG_SUFFIX}"

    if not config_path.is_file():
        raise NotFoundError(f"Configuration file not found: {config_path}")

    return LaunchTarget(role=role, binary=binary, config_path=config_path)
