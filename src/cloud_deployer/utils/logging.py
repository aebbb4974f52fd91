"""Logging setup for the command-line entry points."""

from __future__ import annotations

import logging
from typing import Optional

from rich.logging import RichHandler

# HTTP and auth libraries log every connection and token fetch at DEBUG.
NOISY_LOGGERS = ("urllib3", "google.auth")

_HANDLER: Optional[RichHandler] = None


def configure_logging(verbose: bool = False) -> logging.Logger:
    """Route ``cloud_deployer`` logs through rich, once per process.

    ``verbose`` lowers the level to DEBUG so operation poll iterations show
    up. Calling again only adjusts the level.
    """
    global _HANDLER
    level = logging.DEBUG if verbose else logging.INFO
    root = logging.getLogger()
    if _HANDLER is None:
        _HANDLER = RichHandler(show_path=False, rich_tracebacks=True)
        _HANDLER.setFormatter(logging.Formatter("%(name)s - %(message)s"))
        root.addHandler(_HANDLER)
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
    root.setLevel(level)
    return logging.getLogger("cloud_deployer")
