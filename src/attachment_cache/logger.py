# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Logging utilities for the attachment cache.

This module provides a centralized logging helper. The actual logging setup
(level, handlers, format) is configured via ``logging.basicConfig()`` in the
entry points (``server.py`` and ``cli.py``) to avoid duplicate handlers.

Example:
    Typical usage in a module::

        from attachment_cache.logger import get_logger

        logger = get_logger("eviction")
        logger.info("Cache cleanup completed")
"""

import logging

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


def get_logger(name: str = "AttachmentCache") -> logging.Logger:
    """Retrieve a logger instance for the attachment cache.

    Loggers are namespaced under ``attachment_cache`` so a single level
    setting controls every component. No handlers are attached here.

    Args:
        name: The logger name. Defaults to "AttachmentCache".

    Returns:
        A ``logging.Logger`` instance bound to the given name.
    """
    if name.startswith("attachment_cache"):
        return logging.getLogger(name)
    return logging.getLogger(f"attachment_cache.{name}")


def configure_logging(level: str | None = None) -> None:
    """Configure root logging for an entry point.

    Args:
        level: Level name such as "DEBUG" or "INFO". Unknown names fall
            back to INFO.
    """
    level_name = (level or "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
        force=True,
    )
