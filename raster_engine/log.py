"""
Logging configuration for the raster engine.

Library modules only call ``get_logger``; the CLI calls ``setup_logging`` once.
"""

from __future__ import annotations

import logging
import sys
from typing import Optional

ROOT_LOGGER = "raster_engine"


def setup_logging(name: str = ROOT_LOGGER, verbose: bool = False, log_file: Optional[str] = None) -> logging.Logger:
    """
    Configure the main logger.

    Args:
        name: logger name
        verbose: DEBUG level when True, INFO otherwise
        log_file: optional path of a detailed log file
    """
    logger = logging.getLogger(name)

    # Called more than once (tests, batch runs): keep the existing handlers
    if logger.handlers:
        return logger

    level = logging.DEBUG if verbose else logging.INFO
    logger.setLevel(level)

    console_format = logging.Formatter("[%(levelname)s] %(message)s")
    file_format = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    ch = logging.StreamHandler(sys.stdout)
    ch.setLevel(level)
    ch.setFormatter(console_format)
    logger.addHandler(ch)

    if log_file:
        fh = logging.FileHandler(log_file, encoding="utf-8")
        fh.setLevel(logging.DEBUG)
        fh.setFormatter(file_format)
        logger.addHandler(fh)

    logging.captureWarnings(True)

    return logger


def get_logger(name: str) -> logging.Logger:
    """Child logger under the engine namespace (``raster_engine.<name>``)."""
    if name.startswith(ROOT_LOGGER + ".") or name == ROOT_LOGGER:
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")
