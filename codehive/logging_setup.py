"""Logging configuration for the command line."""

import logging

from rich.console import Console
from rich.logging import RichHandler


def configure_logging(level: str = "INFO", console: Console | None = None) -> None:
    """Route library logging through rich at the given level."""
    logging.basicConfig(
        level=level.upper(),
        format="%(name)s: %(message)s",
        datefmt="%H:%M:%S",
        handlers=[
            RichHandler(console=console or Console(stderr=True), rich_tracebacks=True)
        ],
        force=True,
    )
    # SQL echo is controlled separately through the engine.
    logging.getLogger("sqlalchemy").setLevel(logging.WARNING)
