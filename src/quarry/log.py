"""Logging setup: one RichHandler on the ``quarry`` logger."""

from __future__ import annotations

import logging

from rich.console import Console
from rich.logging import RichHandler

_LOGGER_NAME = "quarry"


def configure(verbose: bool = False, console: Console | None = None) -> logging.Logger:
    """Attach a RichHandler to the package logger (idempotent).

    Args:
        verbose: Log at DEBUG instead of WARNING.
        console: Console to render to; defaults to stderr.
    """
    logger = logging.getLogger(_LOGGER_NAME)
    logger.setLevel(logging.DEBUG if verbose else logging.WARNING)

    if not any(isinstance(h, RichHandler) for h in logger.handlers):
        handler = RichHandler(
            console=console or Console(stderr=True),
            show_path=False,
            rich_tracebacks=False,
        )
        handler.setFormatter(logging.Formatter("%(message)s"))
        logger.addHandler(handler)

    return logger
