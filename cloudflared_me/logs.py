"""Console and run-log output for cloudflared-me."""

import logging
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

LOGGER_NAME = "cloudflared_me"
RUN_LOG_FORMAT = "%(asctime)s - %(message)s"
RUN_LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


def setup_logging(
    log_file: Optional[Path] = None,
    debug: bool = False,
    console: Optional[Console] = None,
) -> logging.Logger:
    """Configure the cloudflared_me logger.

    Every record goes to the console through rich and, when ``log_file``
    is given, is appended to the run log as ``YYYY-MM-DD HH:MM:SS - message``.

    Args:
        log_file: Append-only run log path
        debug: Lower the level to DEBUG
        console: Rich console to render to (default: stderr console)

    Returns:
        The configured logger
    """
    level = logging.DEBUG if debug else logging.INFO

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    logger.propagate = False

    # Safe to call more than once (tests, repeated CLI invocations)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    console_handler = RichHandler(
        console=console or Console(stderr=True),
        level=level,
        markup=False,
        show_path=False,
        rich_tracebacks=True,
        log_time_format=f"[{RUN_LOG_DATEFMT}]",
    )
    logger.addHandler(console_handler)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(RUN_LOG_FORMAT, datefmt=RUN_LOG_DATEFMT))
        logger.addHandler(file_handler)

    return logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the cloudflared_me namespace.

    Args:
        name: Logger name (usually __name__)
    """
    if name == LOGGER_NAME or name.startswith(LOGGER_NAME + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{LOGGER_NAME}.{name}")
