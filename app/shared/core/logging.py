import logging
import re
import sys
from typing import Any, cast

import structlog

from app.shared.core.config import get_settings

_EMAIL_RE = re.compile(r"[a-zA-Z0-9_.+-]+@[a-zA-Z0-9-]+\.[a-zA-Z0-9-.]+")
_SENSITIVE_KEYS = {
    "authorization",
    "access_token",
    "refresh_token",
    "client_secret",
    "password",
    "secret",
    "token",
}
_SENSITIVE_SUFFIXES = ("_token", "_secret", "_key", "_password")


def _is_sensitive_key(key: Any) -> bool:
    normalized = str(key).strip().lower().replace("-", "_")
    if normalized in _SENSITIVE_KEYS:
        return True
    return normalized.endswith(_SENSITIVE_SUFFIXES)


def _redact(data: Any) -> Any:
    if isinstance(data, dict):
        return {
            k: ("[REDACTED]" if _is_sensitive_key(k) else _redact(v))
            for k, v in data.items()
        }
    if isinstance(data, (list, tuple)):
        return [_redact(item) for item in data]
    if isinstance(data, str):
        return _EMAIL_RE.sub("[EMAIL_REDACTED]", data)
    return data


def pii_redactor(
    _logger: Any, _method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """
    Redact OAuth tokens, provider secrets and payer e-mails from every log event.

    The event name itself is left untouched so dashboards keep grouping by it.
    """
    event_name = event_dict.get("event")
    redacted = _redact(event_dict)
    if not isinstance(redacted, dict):
        return {}
    if event_name is not None:
        redacted["event"] = event_name
    return cast(dict[str, Any], redacted)


def setup_logging() -> None:
    settings = get_settings()

    base_processors = [
        structlog.contextvars.merge_contextvars,  # request_id, tenant_id
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        pii_redactor,
    ]

    if settings.DEBUG:
        renderer: Any = structlog.dev.ConsoleRenderer()
        processors = base_processors + [renderer]
        min_level = logging.DEBUG
    else:
        renderer = structlog.processors.JSONRenderer()
        processors = base_processors + [structlog.processors.dict_tracebacks, renderer]
        min_level = logging.INFO

    structlog.configure(
        processors=cast(Any, processors),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    # Route uvicorn / celery stdlib logs through the same stream.
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=min_level)

