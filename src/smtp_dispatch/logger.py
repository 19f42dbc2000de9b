"""Logging utilities for smtp-dispatch.

This module provides a centralized logging helper. The actual logging setup
(level, handlers, format) is configured via ``logging.basicConfig()`` in the
CLI entry point to avoid duplicate handlers; library code only asks for
named loggers.

Example:
    Typical usage in a module::

        from smtp_dispatch.logger import get_logger

        logger = get_logger("Dispatcher")
        logger.debug("Message submitted")
"""

import logging

ROOT_LOGGER_NAME = "smtp_dispatch"


def get_logger(name: str | None = None) -> logging.Logger:
    """Retrieve a logger in the ``smtp_dispatch`` hierarchy.

    This function does not configure handlers or formatters; that
    responsibility lies with the application entry point.

    Args:
        name: Child logger name. ``None`` returns the package root logger.

    Returns:
        A ``logging.Logger`` named ``smtp_dispatch`` or ``smtp_dispatch.<name>``.

    Example:
        >>> logger = get_logger("hostname")
        >>> logger.name
        'smtp_dispatch.hostname'
    """
    if not name:
        return logging.getLogger(ROOT_LOGGER_NAME)
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")
