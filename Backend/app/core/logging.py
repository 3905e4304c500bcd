# Backend/app/core/logging.py
from __future__ import annotations

import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Union
from urllib.parse import urlsplit

import structlog

from app.core.request_id import get_request_id, get_run_id


# -------- Processors ---------------------------------------------------------

def _add_ts(_: Any, __: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    event_dict.setdefault("ts", datetime.now(timezone.utc).isoformat(timespec="milliseconds"))
    return event_dict

def _add_level(_: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    event_dict["level"] = str(event_dict.get("level") or method_name or "info").lower()
    return event_dict

def _add_service(service_name: str):
    def _inner(_: Any, __: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
        event_dict.setdefault("service", service_name)
        return event_dict
    return _inner

def _add_correlation_ids(_: Any, __: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    rid = get_request_id()
    if rid:
        event_dict.setdefault("request_id", rid)
    run = get_run_id()
    if run:
        event_dict.setdefault("run_id", run)
    return event_dict

_SERVER_KEYS = ("server", "url")

def _shorten_servers(_: Any, __: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Overpass/Nominatim endpoints are logged by host only (`overpass-api.de`)."""
    for key in _SERVER_KEYS:
        value = event_dict.get(key)
        if isinstance(value, str) and "://" in value:
            event_dict[key] = urlsplit(value).hostname or value
    return event_dict

# Connection strings carry credentials
_REDACTED_KEYS = {"redis_url", "password", "authorization"}

def _redact(_: Any, __: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    for k in list(event_dict.keys()):
        if str(k).lower() in _REDACTED_KEYS:
            event_dict[k] = "***redacted***"
    return event_dict


# -------- Public API ---------------------------------------------------------

_logger: structlog.BoundLogger | None = None

def _resolve_level(level: Union[int, str]) -> int:
    if isinstance(level, int):
        return level
    resolved = getattr(logging, str(level).upper(), None)
    return resolved if isinstance(resolved, int) else logging.INFO

def configure_logging(service_name: str = "poi-api", *, level: Union[int, str] = logging.INFO) -> None:
    """
    One JSON-lines structlog stack for the API and the warming worker.
    Every event carries ts, level, service and, when set, request_id / run_id.
    """
    global _logger
    level_no = _resolve_level(level)

    logging.basicConfig(level=level_no, format="%(message)s", stream=sys.stderr, force=True)

    structlog.configure(
        processors=[
            _add_ts,
            _add_level,
            _add_service(service_name),
            _add_correlation_ids,
            _shorten_servers,
            _redact,
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level_no),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    _logger = structlog.get_logger()

def get_logger() -> structlog.BoundLogger:
    if _logger is None:
        configure_logging()
    return _logger

logger = get_logger()
