# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Logging utilities for the CRM submission sync service.

This module provides a centralized logging helper. The actual logging setup
(level, handlers, format) is configured via ``logging.basicConfig()`` in the
entry points (``server.py`` and ``cli.py``) to avoid duplicate handlers.

Example:
    Typical usage in a module::

        from async_crm_sync.logger import get_logger

        logger = get_logger("RetryScheduler")
        logger.info("Retry scheduled")
"""

import logging

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_logger(name: str = "AsyncCrmSync") -> logging.Logger:
    """Retrieve a logger instance bound to ``name``.

    The returned logger carries no handlers of its own; records propagate to
    the root logger configured by the application entry point.

    Args:
        name: The logger name. Defaults to "AsyncCrmSync".

    Returns:
        A ``logging.Logger`` instance bound to the given name.
    """
    return logging.getLogger(name)


def configure_logging(level: str | None = "INFO") -> None:
    """Configure root logging once for an entry point.

    Args:
        level: Level name such as "DEBUG" or "INFO". Unknown names fall back
            to INFO.
    """
    logging.basicConfig(
        level=getattr(logging, (level or "INFO").upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        force=True,
    )
