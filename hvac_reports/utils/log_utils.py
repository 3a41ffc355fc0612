"""
Logging for the report engine.

Every logger lives under the ``hvac_reports`` namespace and writes
pipe-separated lines to stdout. Components prefix their messages with a
bracketed tag such as ``[ReportExecutor]`` or ``[ResultCache]``.
"""

import logging
import sys
from typing import Optional, Union

from hvac_reports.core.constants import LOG_LEVEL

ROOT_LOGGER = "hvac_reports"

# Client libraries used by the backend adapters and the cache
_QUIET_LIBRARIES = ("httpx", "httpcore", "psycopg", "redis", "tenacity")

_initialized = False


def setup_logging(
    level: Optional[Union[int, str]] = None,
    format_string: Optional[str] = None
) -> logging.Logger:
    """
    Configure handlers once and return the engine's root logger.

    The level defaults to REPORT_LOG_LEVEL.
    """
    global _initialized

    if _initialized:
        return logging.getLogger(ROOT_LOGGER)

    logging.basicConfig(
        level=level if level is not None else LOG_LEVEL,
        format=format_string or "%(asctime)s | %(levelname)-8s | %(name)-32s | %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    for name in _QUIET_LIBRARIES:
        logging.getLogger(name).setLevel(logging.WARNING)

    _initialized = True
    return logging.getLogger(ROOT_LOGGER)


def get_logger(name: str) -> logging.Logger:
    """Logger for a module; both ``executor`` and ``hvac_reports.reports.executor`` work."""
    setup_logging()
    if name == ROOT_LOGGER or name.startswith(f"{ROOT_LOGGER}."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")
