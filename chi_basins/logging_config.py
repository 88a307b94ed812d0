"""Logging configuration for the chi-basins package.

All modules log through child loggers of the ``chi_basins`` package logger.
The package is silent until a caller (typically the CLI) attaches a console
or file handler with :func:`setup_logging`.

Environment Variables
---------------------
CHI_BASINS_LOG_LEVEL : str
    Name of the level for the package logger; unknown names fall back to INFO.
CHI_BASINS_LOG_FILE : str
    Optional file that receives a copy of every record.

Usage
-----
    from chi_basins.logging_config import get_logger, basin_logger

    logger = get_logger(__name__)
    logger.info("Processing %d outlets", len(outlets))

    log = basin_logger(logger, outlet.id)
    log.warning("threshold halved to %.1f m^2", threshold)   # "[basin 7] threshold ..."
"""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path
from typing import Any, MutableMapping, Optional

PACKAGE_NAME = "chi_basins"

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
SIMPLE_FORMAT = "%(levelname)s: %(message)s"


def get_log_level() -> int:
    """Level named by ``CHI_BASINS_LOG_LEVEL``, INFO when unset."""
    level_name = os.getenv("CHI_BASINS_LOG_LEVEL", "INFO").upper()
    return getattr(logging, level_name, logging.INFO)


def get_log_file() -> Optional[Path]:
    log_file = os.getenv("CHI_BASINS_LOG_FILE")
    return Path(log_file) if log_file else None


def setup_logging(
    level: Optional[int] = None,
    log_file: Optional[Path] = None,
    format_string: Optional[str] = None,
    console: bool = True,
    capture_warnings: bool = True,
) -> logging.Logger:
    """(Re)attach handlers to the ``chi_basins`` logger.

    Parameters
    ----------
    level : int, optional
        Numeric level; ``get_log_level()`` when omitted.
    log_file : Path, optional
        Extra file handler target; ``get_log_file()`` when omitted.
    format_string : str, optional
        Record format, ``DEFAULT_FORMAT`` when omitted.
    console : bool
        Attach a stderr handler.
    capture_warnings : bool
        Route :mod:`warnings` (e.g. ``RecursionLimitWarning``) through the
        package handlers as well. Only takes effect when a handler is attached.

    Returns
    -------
    logging.Logger
        The ``chi_basins`` logger with its handlers replaced.
    """
    if level is None:
        level = get_log_level()
    if log_file is None:
        log_file = get_log_file()
    if format_string is None:
        format_string = DEFAULT_FORMAT

    logger = logging.getLogger(PACKAGE_NAME)
    logger.setLevel(level)
    logger.handlers.clear()

    formatter = logging.Formatter(format_string)
    handlers: list[logging.Handler] = []

    if console:
        handlers.append(logging.StreamHandler(sys.stderr))
    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    logger.propagate = False

    if capture_warnings and handlers:
        logging.captureWarnings(True)
        py_warnings = logging.getLogger("py.warnings")
        py_warnings.handlers = list(handlers)
        py_warnings.propagate = False

    return logger


def get_logger(name: str) -> logging.Logger:
    """Get a child logger of the package logger.

    Parameters
    ----------
    name : str
        Logger name, typically ``__name__`` of the calling module. Names outside
        the package are prefixed with ``chi_basins.``.

    Returns
    -------
    logging.Logger
    """
    package_logger = logging.getLogger(PACKAGE_NAME)
    if not package_logger.handlers:
        package_logger.addHandler(logging.NullHandler())

    if name.startswith(PACKAGE_NAME):
        return logging.getLogger(name)
    return logging.getLogger(f"{PACKAGE_NAME}.{name}")


class BasinLoggerAdapter(logging.LoggerAdapter):
    """Prefix every message with the basin (outlet) ID it concerns."""

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        return f"[basin {self.extra['basin_id']}] {msg}", kwargs


def basin_logger(logger: logging.Logger, basin_id: int) -> BasinLoggerAdapter:
    """Wrap ``logger`` so its messages carry ``basin_id``."""
    return BasinLoggerAdapter(logger, {"basin_id": int(basin_id)})


def set_verbose(verbose: bool = True) -> None:
    """Switch the package logger between DEBUG (verbose) and INFO."""
    level = logging.DEBUG if verbose else logging.INFO
    logger = logging.getLogger(PACKAGE_NAME)
    logger.setLevel(level)
    for handler in logger.handlers:
        handler.setLevel(level)


# Start quiet; the CLI attaches console output
_default_logger = setup_logging(console=False)
