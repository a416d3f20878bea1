from __future__ import annotations

import logging
from copy import deepcopy
from typing import Any

from rich.console import Console
from rich.logging import RichHandler
from uvicorn.config import LOGGING_CONFIG

PACKAGE_LOGGER = "novelkit"


def configure_logging(debug: bool = False, console: Console | None = None) -> logging.Logger:
    """Route ``novelkit.*`` loggers to a rich handler on stderr."""
    logger = logging.getLogger(PACKAGE_LOGGER)
    for handler in list(logger.handlers):
        if isinstance(handler, RichHandler):
            logger.removeHandler(handler)
    handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=debug,
        show_time=debug,
        markup=False,
        rich_tracebacks=debug,
    )
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if debug else logging.INFO)
    logger.propagate = False
    return logger


def build_uvicorn_log_config(debug: bool = False) -> dict[str, Any]:
    """Return uvicorn's logging config with novelkit loggers attached to its default handler."""
    config = deepcopy(LOGGING_CONFIG)
    config.setdefault("loggers", {})[PACKAGE_LOGGER] = {
        "handlers": ["default"],
        "level": "DEBUG" if debug else "INFO",
        "propagate": False,
    }
    return config
