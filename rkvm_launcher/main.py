"""rkvm-launch: relaunch an rkvm role binary with elevated privileges.

Captures the caller's environment, restores it on the privileged side and
runs ``<bin-dir>/rkvm-<role> <config-dir>/<role>.toml``. The exit status of
the relaunched program becomes the exit status of this command.
"""

from __future__ import annotations

import argparse
import signal
from pathlib import Path

from rkvm_launcher.config import ESCALATION_TOOLS, load_settings
from rkvm_launcher.exceptions import ConfigError, LauncherError
from rkvm_launcher.relauncher import Interrupted, Relauncher
from rkvm_launcher.utils.logging import get_logger, resolve_level, setup_logging
from rkvm_launcher.utils.terminal import report_error

log = get_logger("main")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rkvm-launch",
        description="Relaunch rkvm-<role> with elevated privileges and the current environment",
    )
    parser.add_argument("role", help="Role to launch, e.g. 'server' or 'client'")
    parser.add_argument("--bin-dir", type=Path, help="Directory holding rkvm-* binaries")
    parser.add_argument("--config-dir", type=Path, help="Directory holding <role>.toml files")
    parser.add_argument(
        "--escalation",
        choices=ESCALATION_TOOLS,
        help="Privilege-escalation tool (default: pkexec)",
    )
    parser.add_argument("--settings", type=Path, help="Launcher settings YAML file")
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )
    return parser


def run(argv: list[str] | None = None) -> int:
    """Parse arguments, relaunch the role and return the exit code."""
    args = build_parser().parse_args(argv)

    try:
        settings = load_settings(args.settings).with_overrides(
            bin_dir=args.bin_dir,
            config_dir=args.config_dir,
            escalation=args.escalation,
        )
    except ConfigError as e:
        setup_logging()
        report_error(str(e), exit_code=e.exit_code)
        return e.exit_code

    setup_logging(
        level=resolve_level(settings.log_level, verbose=args.verbose),
        log_file=settings.log_file,
    )

    relauncher = Relauncher(
        bin_dir=settings.bin_dir,
        config_dir=settings.config_dir,
        escalation=settings.escalation,
    )

    try:
        return relauncher.run(args.role)
    except LauncherError as e:
        log.debug("Launch failed: %r", e)
        report_error(str(e), exit_code=e.exit_code)
        return e.exit_code
    except Interrupted as e:
        report_error(str(e), exit_code=e.exit_code)
        return e.exit_code
    except KeyboardInterrupt:
        code = 128 + signal.SIGINT
        report_error("Interrupted", exit_code=code)
        return code


def main() -> None:
    """Console script entry point."""
    raise SystemExit(run())


if __name__ == "__main__":
    main()
