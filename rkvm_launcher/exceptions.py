"""Custom exception hierarchy for the privileged relauncher.

Each error carries the process exit code the CLI reports for it.
"""


class LauncherError(Exception):
    """Base exception for all launcher errors."""

    exit_code = 1


class InvalidRoleError(LauncherError):
    """The role argument contains characters outside [A-Za-z0-9_-]."""

    exit_code = 2


class NotFoundError(LauncherError):
    """The role's configuration file does not exist."""

    exit_code = 3


class PrivilegeError(LauncherError):
    """The escalation mechanism is missing, denied, or failed."""

    exit_code = 4


class ConfigError(LauncherError):
    """Errors related to loading the launcher settings."""

    exit_code = 5


class CleanupError(LauncherError):
    """A transient artifact could not be removed.

    Logged only; never changes the exit status of the launch.
    """
