"""Logging setup for sessionhub.

Log records go to stderr so stdout stays free for JSON results that hook
scripts parse.
"""

import logging
import os

from rich.console import Console
from rich.logging import RichHandler

LOGGER_NAME = "sessionhub"


def setup_logging(debug: bool = False) -> logging.Logger:
    """Configure the ``sessionhub`` logger.

    Only errors are shown unless ``debug`` is set or SESSIONHUB_DEBUG=1.
    """
    if os.environ.get("SESSIONHUB_DEBUG") == "1":
        debug = True

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG if debug else logging.ERROR)
    logger.propagate = False

    if not any(isinstance(h, RichHandler) for h in logger.handlers):
        handler = RichHandler(
            console=Console(stderr=True),
            show_path=debug,
            rich_tracebacks=debug,
        )
        handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
        logger.addHandler(handler)

    return logger
