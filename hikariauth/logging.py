from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# X-Request-ID of the request being served; stamped on every log line
request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

_SECRET_KEYS = ("password", "secret", "token", "authorization", "cookie")
_REDACTED = "[redacted]"


def current_request_id() -> Optional[str]:
    return request_id_var.get()


def bind_request_id(request_id: Optional[str] = None) -> str:
    """Adopt the caller's request id (or mint one) for the current context."""
    rid = (request_id or "").strip()[:128] or uuid.uuid4().hex
    request_id_var.set(rid)
    return rid


def redact_email(email: Optional[str]) -> Optional[str]:
    """Mask an email address for logs and audit snapshots.

    ``alice@example.com`` becomes ``a***e@example.com``.
    """
    if not email or "@" not in email:
        return email
    local, domain = email.rsplit("@", 1)
    if len(local) <= 2:
        masked = local[:1] + "***"
    else:
        masked = local[0] + "***" + local[-1]
    return f"{masked}@{domain}"


def _stamp_request_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    rid = current_request_id()
    if rid:
        event_dict.setdefault("request_id", rid)
    return event_dict


def _scrub_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Drop credential values entirely and mask email addresses."""
    for key, value in list(event_dict.items()):
        lowered = key.lower()
        if any(marker in lowered for marker in _SECRET_KEYS):
            if value is not None:
                event_dict[key] = _REDACTED
        elif "email" in lowered and isinstance(value, str) and "***" not in value:
            event_dict[key] = redact_email(value)
    return event_dict


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def configure_logging(level: Optional[str] = None, *, json_output: Optional[bool] = None) -> None:
    """Route structlog output through the processors above.

    ``LOG_LEVEL`` and ``LOG_JSON`` supply the defaults; console rendering
    is used when JSON is off.
    """
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    use_json = _env_flag("LOG_JSON", "true") if json_output is None else json_output

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _stamp_request_id,
        _scrub_credentials,
        structlog.processors.StackInfoRenderer(),
    ]
    if use_json:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level_name, logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )


configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
