"""Logging setup shared by the service and its command line entrypoint."""
from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Union


def setup_logger(
    name: Optional[str] = "storeflow",
    log_level: Union[int, str] = logging.INFO,
    log_dir: Optional[Path] = None,
) -> logging.Logger:
    """Attach a console handler and, when ``log_dir`` is given, a rotating file handler."""

    logger = logging.getLogger(name)
    logger.setLevel(log_level)

    # Handlers are attached once per process
    if logger.handlers:
        return logger

    console_format = logging.Formatter("%(levelname)s %(name)s: %(message)s")
    file_format = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(console_format)
    logger.addHandler(console_handler)

    if log_dir is not None:
        log_dir = Path(log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_dir / "storeflow.log",
            maxBytes=5 * 1024 * 1024,
            backupCount=3,
            encoding="utf-8",
        )
        file_handler.setLevel(log_level)
        file_handler.setFormatter(file_format)
        logger.addHandler(file_handler)

    return logger


__all__ = ["setup_logger"]
