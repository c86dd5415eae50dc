"""Logging configuration for the cutout package."""

from __future__ import annotations

import logging
import sys
from typing import Optional

ROOT_LOGGER = "cutout"


def setup_logging(verbose: bool = False, log_file: Optional[str] = None) -> logging.Logger:
    """
    Configure the package logger once.

    Args:
        verbose: DEBUG level when True, INFO otherwise.
        log_file: optional path for a detailed log file.
    """
    logger = logging.getLogger(ROOT_LOGGER)

    # Repeated calls must not stack handlers.
    if logger.handlers:
        return logger

    level = logging.DEBUG if verbose else logging.INFO
    logger.setLevel(level)

    ch = logging.StreamHandler(sys.stderr)
    ch.setLevel(level)
    ch.setFormatter(logging.Formatter("[%(levelname)s] %(message)s"))
    logger.addHandler(ch)

    if log_file:
        fh = logging.FileHandler(log_file, encoding="utf-8")
        fh.setLevel(logging.DEBUG)
        fh.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
        logger.addHandler(fh)

    logging.captureWarnings(True)
    return logger


def get_logger(name: str) -> logging.Logger:
    """Child logger under the package namespace."""
    if name.startswith(ROOT_LOGGER):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")
