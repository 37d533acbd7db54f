"""
Logging setup. Library modules only call logging.getLogger(__name__);
handlers are attached here by the CLI and the daemon.
"""

import logging
import os
from typing import Union

from rich.console import Console
from rich.logging import RichHandler

LOG_LEVEL_ENV = "POPCORN_LOG_LEVEL"
DEFAULT_LEVEL = "INFO"


def configure_logging(level: Union[str, int, None] = None) -> logging.Logger:
    """Attach a stderr RichHandler to the "popcorn" logger. Safe to call twice."""
    if level is None:
        level = os.environ.get(LOG_LEVEL_ENV, DEFAULT_LEVEL)
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    logger = logging.getLogger("popcorn")
    for handler in list(logger.handlers):
        if isinstance(handler, RichHandler):
            logger.removeHandler(handler)

    handler = RichHandler(console=Console(stderr=True), show_path=False, rich_tracebacks=True)
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = False
    return logger
