"""Settings loader for the launcher.

Settings come from built-in defaults, an optional YAML file, and
``RKVM_*`` environment variables, in that order. CLI flags are applied
on top by ``main``.
"""

import os
from dataclasses import dataclass, replace
from pathlib import Path

import yaml

from rkvm_launcher.exceptions import ConfigError

_DEFAULT_SETTINGS_PATH = Path("~/.config/rkvm/launcher.yaml")

_SETTINGS_ENV = "RKVM_LAUNCHER_SETTINGS"
_ENV_OVERRIDES = {
    "RKVM_BIN_DIR": "bin_dir",
    "RKVM_CONFIG_DIR": "config_dir",
    "RKVM_ESCALATION": "escalation",
}

ESCALATION_TOOLS = ("pkexec", "sudo")


@dataclass(frozen=True)
class Settings:
    """Resolved launcher settings.

    Args:
        bin_dir: Directory holding the ``rkvm-<role>`` binaries.
        config_dir: Directory holding the ``<role>.toml`` files.
        escalation: Name of the privilege-escalation tool.
        log_level: Logging level name.
        log_file: Optional log file path.
    """

    bin_dir: Path = Path("~/bin")
    config_dir: Path = Path("~/.config/rkvm")
    escalation: str = "pkexec"
    log_level: str = "WARNING"
    log_file: str | None = None

    def with_overrides(self, **overrides) -> "Settings":
        """Return a copy with every non-None override applied and paths expanded."""
        values = {k: v for k, v in overrides.items() if v is not None}
        return _normalize(replace(self, **values))


def load_settings(path: Path | None = None, environ: dict | None = None) -> Settings:
    """Load launcher settings.

    Args:
        path: Explicit settings file. Defaults to ``$RKVM_LAUNCHER_SETTINGS``,
            then ``~/.config/rkvm/launcher.yaml`` when it exists.
        environ: Environment used for overrides. Defaults to ``os.environ``.

    Returns:
        Resolved settings with ``~`` and variables expanded in paths.

    Raises:
        ConfigError: If an explicitly named file is missing or the file
            is malformed.
    """
    environ = os.environ if environ is None else environ

    if path is None and environ.get(_SETTINGS_ENV):
        path = Path(environ[_SETTINGS_ENV])

    if path is not None:
        data = _read_yaml(Path(os.path.expanduser(path)))
    else:
        default_path = Path(os.path.expanduser(_DEFAULT_SETTINGS_PATH))
        data = _read_yaml(default_path) if default_path.exists() else {}

    settings = _from_mapping(data)

    env_values = {
        field: environ[var] for var, field in _ENV_OVERRIDES.items() if environ.get(var)
    }
    return settings.with_overrides(**env_values)


def _read_yaml(path: Path) -> dict:
    if not path.is_file():
        raise ConfigError(f"Settings file not found: {path}")

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Settings file {path} is not valid YAML: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Settings file {path} must contain a mapping")
    return data


def _from_mapping(data: dict) -> Settings:
    logging_cfg = data.get("logging") or {}
    if not isinstance(logging_cfg, dict):
        raise ConfigError("logging must be a mapping")

    return Settings().with_overrides(
        bin_dir=data.get("bin_dir"),
        config_dir=data.get("config_dir"),
        escalation=data.get("escalation"),
        log_level=logging_cfg.get("level"),
        log_file=logging_cfg.get("file"),
    )


def _expand(value) -> Path:
    """Expand ~ and environment variables in a path-like value."""
    return Path(os.path.expandvars(os.path.expanduser(str(value))))


def _normalize(settings: Settings) -> Settings:
    if settings.escalation not in ESCALATION_TOOLS:
        raise ConfigError(
            f"Unknown escalation tool {settings.escalation!r}; "
            f"expected one of: {', '.join(ESCALATION_TOOLS)}"
        )
    log_file = settings.log_file
    if log_file:
        log_file = str(_expand(log_file))
    return replace(
        settings,
        bin_dir=_expand(settings.bin_dir),
        config_dir=_expand(settings.config_dir),
        log_level=str(settings.log_level).upper(),
        log_file=log_file,
    )
