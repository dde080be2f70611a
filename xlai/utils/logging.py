from __future__ import annotations

import logging
import os
from typing import Any, Dict

import structlog

SERVICE_NAME = "xlai"

_configured_level: int | None = None


def _log_level() -> int:
    name = (os.getenv("LOG_LEVEL") or "INFO").strip().upper()
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO


def _add_log_level(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    event_dict["level"] = method_name
    return event_dict


def _add_service(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    event_dict.setdefault("service", SERVICE_NAME)
    return event_dict


def configure_logging(force: bool = False) -> None:
    """Configure JSON logging; repeated calls are no-ops unless LOG_LEVEL changed."""

    global _configured_level
    level = _log_level()
    if not force and _configured_level == level:
        return
    logging.basicConfig(format="%(message)s", level=level)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso", key="ts"),
            _add_log_level,
            _add_service,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )
    _configured_level = level


def get_logger(name: str):
    configure_logging()
    return structlog.get_logger(name).bind(logger=name)
