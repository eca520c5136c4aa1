# telemetry/logger.py
from __future__ import annotations

import logging
from typing import Any, Dict

import structlog
import structlog.typing

from settings import Settings

_SENSITIVE_KEYS = ("token", "secret", "password", "authorization", "email", "otp_code")


def _redact(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """
    Mask values whose key looks sensitive. Keeps the first/last 2 chars
    so operators can still correlate entries.
    """
    for key, value in list(event_dict.items()):
        lower = key.lower()
        if any(s in lower for s in _SENSITIVE_KEYS) and isinstance(value, str) and len(value) > 4:
            event_dict[key] = value[:2] + "***" + value[-2:]
    return event_dict


def configure_logging(settings: Settings) -> None:
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _redact,
        structlog.processors.StackInfoRenderer(),
    ]
    if settings.json_logs:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, settings.log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )


def get_logger(name: str) -> structlog.typing.FilteringBoundLogger:
    return structlog.get_logger(name)
