"""
Per-file status reporting for sync runs.

The engine announces every transfer through a reporter it is given,
so the CLI can print coloured status lines while tests just record.
"""

from __future__ import annotations

import logging
from typing import Optional

from rich.console import Console
from rich.markup import escape

logger = logging.getLogger("kbsync.sync.reporter")


class SyncReporter:
    """Receives sync events. The base class ignores them all."""

    def uploading(self, display_name: str) -> None:
        """A file is about to be uploaded."""

    def downloading(self, display_name: str) -> None:
        """A file is about to be written locally."""

    def failed(self, display_name: str, error: Exception) -> None:
        """A single transfer failed."""


NullReporter = SyncReporter


class RichReporter(SyncReporter):
    """Prints one coloured line per event on a rich console.

    File names and error text are escaped; brackets in a name are
    printed as-is.
    """

    def __init__(self, console: Optional[Console] = None) -> None:
        self.console = console or Console()

    def uploading(self, display_name: str) -> None:
        logger.debug("Uploading %s", display_name)
        self.console.print(f"Uploading: [cyan]{escape(display_name)}[/]", highlight=False)

    def downloading(self, display_name: str) -> None:
        logger.debug("Downloading %s", display_name)
        self.console.print(f"Downloading: [cyan]{escape(display_name)}[/]", highlight=False)

    def failed(self, display_name: str, error: Exception) -> None:
        logger.error("Transfer of %s failed: %s", display_name, error)
        self.console.print(
            f"[red]Failed: {escape(display_name)}[/] [dim]({escape(str(error))})[/]",
            highlight=False,
        )
