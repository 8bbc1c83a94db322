"""
Logging configuration for the application.

``setup_logging`` attaches a console handler and, optionally, a file
handler to the root logger.  Modules obtain their own loggers with
``logging.getLogger(__name__)`` and never configure handlers
themselves.
"""

import logging
from pathlib import Path
from typing import Optional


LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(level: str = "INFO", logfile: Optional[str] = None) -> None:
    """Configure the root logger once.

    Parameters
    ----------
    level : str
        Logging level name (e.g. ``"DEBUG"``, ``"INFO"``).  Case
        insensitive; unknown names fall back to ``INFO``.
    logfile : Optional[str]
        Path to a file to log messages to.  If omitted, only the
        console handler is added.
    """
    logger = logging.getLogger()
    if logger.handlers:
        # Already configured (repeated create_app calls, pytest capture).
        return

    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if logfile:
        file_handler = logging.FileHandler(Path(logfile).resolve(), encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    # httpx logs every webhook and Stripe request at INFO.
    logging.getLogger("httpx").setLevel(logging.WARNING)
