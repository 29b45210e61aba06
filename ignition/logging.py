"""
Ignition - Structured Logging

JSON log lines for lifecycle events. Modules log through named loggers
under the "ignition" namespace; `log_event` attaches structured fields
that JSONFormatter merges into each entry.

Usage:
    from ignition.logging import configure_logging, log_event, get_logger

    configure_logging(level="INFO")
    log_event(get_logger("app"), logging.INFO, "phase_transition",
              **{"phase.from": "stopped", "phase.to": "starting"})
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

ROOT_LOGGER = "ignition"
TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


# ═══════════════════════════════════════════════════════════════════
# JSON Formatter
# ═══════════════════════════════════════════════════════════════════

class JSONFormatter(logging.Formatter):
    """Formats log records as JSON lines."""

    def __init__(self, service_name: str = "ignition"):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service.name": self.service_name,
        }

        # Merge structured fields from extra
        if hasattr(record, "structured"):
            entry.update(record.structured)

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception.type"] = record.exc_info[0].__name__
            entry["exception.message"] = str(record.exc_info[1])

        return json.dumps(entry, default=str)


# ═══════════════════════════════════════════════════════════════════
# Log Configuration
# ═══════════════════════════════════════════════════════════════════

def configure_logging(
    level: str = "INFO",
    stream: Any = None,
    service_name: str = "ignition",
    fmt: str = "json",
) -> logging.Logger:
    """
    Configure the ignition logger.

    Args:
        level: DEBUG, INFO, WARNING, ERROR
        stream: Output stream (default: sys.stderr)
        service_name: Service name in JSON entries
        fmt: "json" or "text"

    Returns:
        The configured ignition logger
    """
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(getattr(logging, str(level).upper(), logging.INFO))

    # Avoid duplicate handlers on reconfigure
    logger.handlers.clear()

    for name in list(logging.Logger.manager.loggerDict.keys()):
        if name.startswith(ROOT_LOGGER + "."):
            child = logging.getLogger(name)
            child.handlers.clear()
            child.setLevel(logging.NOTSET)

    handler = logging.StreamHandler(stream or sys.stderr)
    if fmt == "text":
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))
    else:
        handler.setFormatter(JSONFormatter(service_name=service_name))
    logger.addHandler(handler)

    # Don't propagate to root logger
    logger.propagate = False
    return logger


def reset_logging() -> None:
    """Drop handlers installed by configure_logging and propagate to root again."""
    logger = logging.getLogger(ROOT_LOGGER)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.flush()
    logger.setLevel(logging.NOTSET)
    logger.propagate = True


def get_logger(name: str = "") -> logging.Logger:
    """Get a child logger under the ignition namespace."""
    if name:
        return logging.getLogger(f"{ROOT_LOGGER}.{name}")
    return logging.getLogger(ROOT_LOGGER)


def log_event(logger: logging.Logger, level: int, action: str, **fields: Any) -> None:
    """Emit `action` as the message with `fields` as structured extras."""
    if not logger.isEnabledFor(level):
        return
    logger.log(level, action, extra={"structured": {"action": action, **fields}})
