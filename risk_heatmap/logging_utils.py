"""
Logging setup for the pipeline scripts.

Library modules only call logging.getLogger(__name__) and never attach
handlers. A script calls get_logger(__name__) once: the script's logger and
the ``risk_heatmap`` package logger then share one stdout handler, so library
and script lines print in the same format.

Usage in a script:

    from risk_heatmap.logging_utils import get_logger
    logger = get_logger(__name__, level=cfg["logging"]["level"])
    logger.info("Buffered %d rows", n)
"""

from __future__ import annotations

import logging
import sys

PACKAGE_LOGGER = "risk_heatmap"
LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%H:%M:%S"

_handler: logging.Handler | None = None


def resolve_level(level: int | str) -> int:
    """``"debug"``, ``"INFO"`` or ``10`` -> level number. Unknown names mean INFO."""
    if isinstance(level, int):
        return level
    value = logging.getLevelName(str(level).strip().upper())
    return value if isinstance(value, int) else logging.INFO


def _shared_handler() -> logging.Handler:
    global _handler
    if _handler is None:
        _handler = logging.StreamHandler(sys.stdout)
        _handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT))
    return _handler


def _attach(logger: logging.Logger, level: int) -> logging.Logger:
    handler = _shared_handler()
    if handler not in logger.handlers:
        logger.addHandler(handler)
    logger.setLevel(level)
    return logger


def get_logger(name: str, level: int | str = logging.INFO) -> logging.Logger:
    """
    Return a named logger that prints through the shared stdout handler.

    The package logger always gets the handler. Loggers below it propagate
    to it and stay bare; any other name (a script's ``__main__``) gets the
    handler itself. Repeated calls never add a second handler.
    """
    level = resolve_level(level)
    package = _attach(logging.getLogger(PACKAGE_LOGGER), level)
    if name == PACKAGE_LOGGER:
        return package
    logger = logging.getLogger(name)
    if name.startswith(PACKAGE_LOGGER + "."):
        return logger
    return _attach(logger, level)
