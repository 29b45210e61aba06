"""
Ignition - Built-in Components

Component kinds most applications need, configured like any other key:

    ignition.components:properties:
      name: billing
      profile: prod

    ignition.components:timezone: Europe/Warsaw

    ignition.components:logger:
      level: INFO
      format: json

    ignition.components:init:
      after: !ref ignition.components:logger
"""

from __future__ import annotations

import logging
import os
import time
from datetime import datetime
from typing import Any
from zoneinfo import ZoneInfo

from ignition import registry
from ignition.logging import configure_logging, reset_logging
from ignition.system import NIL, PROPERTIES

logger = logging.getLogger("ignition.components")

PROPERTIES_KEY = "ignition.components:properties"
TIMEZONE_KEY = "ignition.components:timezone"
LOGGER_KEY = "ignition.components:logger"
INIT_KEY = "ignition.components:init"

_PROPERTY_DEFAULTS = {
    "name": "unnamed system",
    "title": "unnamed system",
    "author": "unknown author",
    "version": "1.0.0",
    "license": "Copyright",
    "description": "",
}


def _normalize_name(value: Any, default: str) -> str:
    if value is None:
        return default
    s = str(value).strip()
    return s or default


def _some_keyword(value: Any) -> str | None:
    if value is None:
        return None
    s = str(value).strip().lower()
    return s or None


# ── Properties ───────────────────────────────────────────────

registry.derive(PROPERTIES_KEY, PROPERTIES)


@registry.init(PROPERTIES_KEY)
def init_properties(tag: str, config: dict[str, Any] | None) -> dict[str, Any]:
    props = dict(config or {})
    for field_name, default in _PROPERTY_DEFAULTS.items():
        props[field_name] = _normalize_name(props.get(field_name), default)
    props["profile"] = _some_keyword(props.get("profile"))
    props["node"] = _some_keyword(props.get("node"))
    return props


# ── Time zone ────────────────────────────────────────────────

@registry.init(TIMEZONE_KEY)
def init_timezone(tag: str, config: Any) -> dict[str, Any] | None:
    """
    Set the process time zone. Accepts a zone name, {"timezone_id": name}
    or true for the current local zone. None/false leaves it untouched.
    """
    tz = config.get("timezone_id") if isinstance(config, dict) else config
    if tz is None or tz is False or tz == "":
        return None
    if tz is True:
        local = datetime.now().astimezone().tzinfo
        tz_id = local.tzname(None) if local else "UTC"
        logger.info("Using local time zone %s", tz_id)
        return {"timezone": local, "timezone_id": tz_id}

    zone = ZoneInfo(str(tz))
    os.environ["TZ"] = zone.key
    if hasattr(time, "tzset"):
        time.tzset()
    logger.info("Setting default time zone to %s", zone.key)
    return {"timezone": zone, "timezone_id": zone.key}


# ── Logger ───────────────────────────────────────────────────

@registry.init(LOGGER_KEY)
def init_logger(tag: str, config: dict[str, Any] | None) -> logging.Logger:
    config = config or {}
    configured = configure_logging(
        level=config.get("level", "INFO"),
        stream=config.get("stream"),
        service_name=config.get("service_name", "ignition"),
        fmt=config.get("format", "json"),
    )
    configured.info("Logging configured at %s", logging.getLevelName(configured.level))
    return configured


@registry.halt(LOGGER_KEY)
def halt_logger(tag: str, instance: logging.Logger) -> None:
    reset_logging()


# ── Init anchor ──────────────────────────────────────────────

registry.derive(INIT_KEY, NIL)
