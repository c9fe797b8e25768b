"""Shared Rich consoles and logging setup for the med2nii CLI."""

from __future__ import annotations

import logging
import sys

from rich.console import Console

# Structure names may carry non-ASCII text; print them as UTF-8 on any code page.
try:
    sys.stdout.reconfigure(encoding="utf-8", errors="replace")
    sys.stderr.reconfigure(encoding="utf-8", errors="replace")
except (AttributeError, OSError):
    pass

console = Console()
err_console = Console(stderr=True)


def setup_logging(verbose: bool) -> None:
    log_level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=log_level, format="%(levelname)s: %(message)s")


def print_error(message: str) -> None:
    err_console.print(f"[red]Error: {message}[/red]", highlight=False)
