"""Centralized logging configuration for the Image Optimizer service."""

from __future__ import annotations

import logging
from logging import Logger
from pathlib import Path
from typing import Iterable


DEFAULT_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def configure_logging(level: int = logging.INFO, *, handlers: Iterable[logging.Handler] | None = None) -> Logger:
    """Configure the root logger, replacing handlers installed by an earlier call."""

    logger = logging.getLogger()
    logger.setLevel(level)

    for existing in list(logger.handlers):
        if getattr(existing, "_image_optimizer_handler", False):
            logger.removeHandler(existing)
            existing.close()

    if handlers is None:
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(logging.Formatter(DEFAULT_LOG_FORMAT))
        handlers = [stream_handler]

    for handler in handlers:
        setattr(handler, "_image_optimizer_handler", True)
        logger.addHandler(handler)

    return logger


def build_file_handler(storage_root: Path) -> logging.Handler:
    """Return a UTF-8 file handler writing to the default service log."""

    handler = logging.FileHandler(get_log_file_path(storage_root), encoding="utf-8")
    handler.setFormatter(logging.Formatter(DEFAULT_LOG_FORMAT))
    return handler


def get_log_file_path(storage_root: Path) -> Path:
    """Return the default path for the service log file."""

    return storage_root / "image_optimizer.log"


__all__ = ["DEFAULT_LOG_FORMAT", "build_file_handler", "configure_logging", "get_log_file_path"]
