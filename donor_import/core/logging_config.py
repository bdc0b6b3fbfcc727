"""
Logging setup for the donor import service.

Every log line goes to stdout through a single console handler on the root
logger. The ``donor_import`` namespace follows the configured level, while
the HTTP, database and SDK client libraries are held at a separate, quieter
level so a DEBUG run shows the import pipeline rather than wire traffic.
"""
from __future__ import annotations

import logging
from logging.config import dictConfig
from typing import Any, Dict, Optional, Tuple

APP_LOGGER = "donor_import"
DEFAULT_FORMAT = "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Client libraries that log every request, statement or retry at INFO/DEBUG.
THIRD_PARTY_LOGGERS = (
    "sqlalchemy.engine",
    "sqlalchemy.pool",
    "httpx",
    "httpcore",
    "anthropic",
    "multipart",
)

_applied: Optional[Tuple[str, str, str]] = None


def build_logging_config(
    level: str = "INFO",
    fmt: Optional[str] = None,
    third_party_level: str = "WARNING",
) -> Dict[str, Any]:
    """Return the ``dictConfig`` mapping for the given levels and line format."""
    level = level.upper()
    third_party_level = third_party_level.upper()
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "donor_import": {
                "format": fmt or DEFAULT_FORMAT,
                "datefmt": DATE_FORMAT,
            }
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "donor_import",
                "stream": "ext://sys.stdout",
                "level": level,
            }
        },
        "root": {"handlers": ["console"], "level": level},
        "loggers": {
            APP_LOGGER: {"level": level},
            **{name: {"level": third_party_level} for name in THIRD_PARTY_LOGGERS},
        },
    }


def configure_logging(
    level: Optional[str] = None,
    fmt: Optional[str] = None,
    third_party_level: Optional[str] = None,
    force: bool = False,
) -> bool:
    """
    Apply the logging configuration once per process.

    Calling again with the same arguments does nothing; different arguments
    (or ``force=True``) reconfigure. Returns True when a configuration was applied.
    """
    global _applied

    requested = (
        (level or "INFO").upper(),
        fmt or DEFAULT_FORMAT,
        (third_party_level or "WARNING").upper(),
    )
    if _applied == requested and not force:
        return False

    dictConfig(build_logging_config(*requested))
    _applied = requested
    logging.getLogger(APP_LOGGER).debug(
        "Logging configured: level=%s third_party_level=%s", requested[0], requested[2]
    )
    return True
