"""Shared utilities for the CLI command modules.

Provides the Rich console instance, logging setup and the error
reporting every command uses.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import NoReturn

from rich.console import Console
from rich.markup import escape

from ..errors import AuthExpiredError, KBSyncError, NotFoundError, UnsupportedTargetError
from ..sync import SyncEngine
from ..sync.reporter import RichReporter

console = Console()
logger = logging.getLogger("kbsync.cli")

LOCATIONS = ("origin", "aws", "localstack", "cache")


def configure_logging(verbose: bool) -> None:
    """Route kbsync logs to stderr; DEBUG when verbose, warnings otherwise."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(name)s: %(message)s",
        stream=sys.stderr,
    )


def build_engine(project: str) -> SyncEngine:
    """Create an engine for a project directory that reports to the console."""
    return SyncEngine(Path(project), reporter=RichReporter(console))


def fail(exc: KBSyncError, action: str) -> NoReturn:
    """Print a sync failure and exit non-zero.

    Args:
        exc: The error that ended the command.
        action: Command name for the message ("push", "pull", ...).
    """
    if isinstance(exc, AuthExpiredError):
        console.print(f"[bold red]{escape(str(exc))}[/]")
        console.print("[yellow]Log in again, then rerun the command.[/]")
    elif isinstance(exc, NotFoundError):
        console.print(f"[red]{escape(str(exc))}[/]")
    elif isinstance(exc, UnsupportedTargetError):
        console.print(f"[yellow]{escape(str(exc))}[/]")
        console.print(f"\n  kbsync {action} origin\n")
    else:
        console.print(f"[red]Error during {action} operation:[/] {escape(str(exc))}")
    logger.debug("%s failed", action, exc_info=exc)
    sys.exit(1)
