"""
Logging setup for the toolgate command line.

Library modules only create module-level loggers; handlers are installed
here, once, by the CLI.
"""

import logging

from rich.console import Console
from rich.logging import RichHandler

LOGGER_NAME = "toolgate"


def configure_logging(
    verbose: bool = False,
    debug: bool = False,
    console: Console | None = None,
) -> logging.Logger:
    """
    Attach a RichHandler to the toolgate logger.

    Args:
        verbose: Log at INFO instead of WARNING
        debug: Log at DEBUG with rich tracebacks and source paths
        console: Console to write to (defaults to stderr)

    Returns:
        The configured package logger
    """
    level = logging.DEBUG if debug else logging.INFO if verbose else logging.WARNING
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)

    for handler in logger.handlers[:]:
        if isinstance(handler, RichHandler):
            logger.removeHandler(handler)

    handler = RichHandler(
        console=console or Console(stderr=True),
        rich_tracebacks=debug,
        show_time=debug,
        show_path=debug,
    )
    handler.setLevel(level)
    logger.addHandler(handler)
    logger.propagate = False
    return logger
