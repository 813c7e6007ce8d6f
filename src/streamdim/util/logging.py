"""Logging setup for the streamdim command line."""
from __future__ import annotations

import logging
import os
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

LOG_LEVEL_ENV = "STREAMDIM_LOG_LEVEL"


def configure_logging(level: Optional[str] = None) -> None:
    """
    Route the ``streamdim`` loggers through a Rich handler on stderr.

    The level comes from ``level``, then ``STREAMDIM_LOG_LEVEL``, then WARNING.
    Calling this again only changes the level.
    """
    name = (level or os.environ.get(LOG_LEVEL_ENV) or "WARNING").upper()
    numeric = logging.getLevelName(name)
    if not isinstance(numeric, int):
        raise ValueError(f"Unknown log level '{name}'")

    logger = logging.getLogger("streamdim")
    logger.setLevel(numeric)
    if not any(isinstance(h, RichHandler) for h in logger.handlers):
        handler = RichHandler(console=Console(stderr=True), show_path=False)
        handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
        logger.addHandler(handler)
