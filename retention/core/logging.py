"""
Process-wide logging setup for the retention worker.

The level comes from ``Settings.log_level`` only; ``worker.main`` passes it
in once at startup.  Later calls are no-ops so library code and tests can
call ``configure_logging`` without clobbering the worker's configuration.
"""

from __future__ import annotations

import logging
import sys
from typing import IO, Optional

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Chatty per-request loggers from the HTTP, database and broker clients.
_QUIET_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine", "redis")

_configured = False


def configure_logging(
    level: str = "INFO",
    fmt: str = LOG_FORMAT,
    datefmt: str = DATE_FORMAT,
    stream: Optional[IO[str]] = None,
) -> None:
    """Install the root handler at ``level`` (a name such as ``"DEBUG"``)."""
    global _configured
    if _configured:
        return

    name = (level or "INFO").strip().upper()
    resolved = logging.getLevelName(name)
    unknown = not isinstance(resolved, int)
    if unknown:
        resolved = logging.INFO

    root = logging.getLogger()
    root.setLevel(resolved)
    if not root.handlers:
        handler = logging.StreamHandler(stream or sys.stdout)
        handler.setFormatter(logging.Formatter(fmt=fmt, datefmt=datefmt))
        root.addHandler(handler)

    for noisy in _QUIET_LOGGERS:
        logging.getLogger(noisy).setLevel(max(resolved, logging.WARNING))

    _configured = True
    if unknown:
        logging.getLogger(__name__).warning("Unknown log level %r; using INFO", level)


def reset_logging_for_tests() -> None:
    global _configured
    _configured = False
