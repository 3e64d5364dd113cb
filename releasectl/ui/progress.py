"""Progress display for long-running deployment steps."""

import logging
from contextlib import contextmanager
from typing import Iterator, Self

from rich.console import Console
from rich.logging import RichHandler
from rich.status import Status

console = Console(stderr=True)


class ProgressManager:
    """Spinners shown while deployments run."""

    def __init__(self: Self, enabled: bool = True) -> None:
        """Initialize the progress manager.

        Args:
            enabled: Show spinners. Disabled for ``--json`` output so stdout
                stays machine-readable.
        """
        self.console = console
        self.enabled = enabled

    @contextmanager
    def spinner(self: Self, message: str, spinner_style: str = "dots") -> Iterator[Status]:
        """Create a spinner for indeterminate progress.

        Args:
            message: The message to display with the spinner.
            spinner_style: The spinner style to use.

        Yields:
            Status object that can be updated.
        """
        status = self.console.status(message, spinner=spinner_style)
        if not self.enabled:
            yield status
            return
        with status:
            yield status


def configure_logging(verbose: bool = False) -> None:
    """Route releasectl's module loggers to the console through rich."""
    logger = logging.getLogger("releasectl")
    logger.handlers.clear()
    handler = RichHandler(console=console, show_path=False, rich_tracebacks=verbose)
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if verbose else logging.WARNING)
    logger.propagate = False
