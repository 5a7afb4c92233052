"""Centralized logging with rotation suitable for audit trails."""
from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler

from civic_intel.config import Settings, settings as default_settings


LOGGER_NAME = "civic_intel"


def init_logging(config: Settings | None = None, *, to_file: bool = True) -> logging.Logger:
    cfg = config or default_settings
    level = getattr(logging, cfg.log_level.upper(), logging.INFO)

    formatter = logging.Formatter(
        fmt="%(asctime)s | %(levelname)s | %(name)s | %(module)s:%(lineno)d | %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S%z",
    )

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    if logger.handlers:
        return logger

    stream_handler = logging.StreamHandler()
    stream_handler.setLevel(level)
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    if to_file:
        os.makedirs(cfg.log_dir, exist_ok=True)
        log_path = os.path.join(cfg.log_dir, "civic_intel.log")
        file_handler = RotatingFileHandler(log_path, maxBytes=5_000_000, backupCount=5, encoding="utf-8")
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
        logger.info("Logging initialized", extra={"path": log_path})

    logger.propagate = False
    return logger
