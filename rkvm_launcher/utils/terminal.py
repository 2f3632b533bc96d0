"""Error reporting on the invoking terminal using Rich."""

from rich.console import Console
from rich.text import Text

_console = Console(stderr=True, highlight=False, soft_wrap=True)


def report_error(message: str, *, exit_code: int | None = None) -> None:
    """Print a human-readable error line to stderr.

    Args:
        message: What went wrong.
        exit_code: Exit code the launcher is about to return, shown as a hint.
    """
    text = Text("rkvm-launch: ", style="bold red")
    text.append(message)
    if exit_code is not None:
        text.append(f" (exit {exit_code})", style="dim")
    _console.print(text)
