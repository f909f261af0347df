from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Per-request correlation id, echoed back as X-Request-ID
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh uuid4) to the current request context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


# Credentials and learner identifiers never reach log sinks in clear text
_MASKED_KEYS = ("password", "secret", "token", "authorization", "email", "enrollment_code")
_EMAIL_IN_TEXT = re.compile(r"([A-Za-z0-9._%+-]{1,2})[A-Za-z0-9._%+-]*@([A-Za-z0-9.-]+\.[A-Za-z]{2,})")


def _mask(value: str) -> str:
    if len(value) <= 4:
        return "***"
    return value[:2] + "***" + value[-2:]


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    for key, value in list(event_dict.items()):
        if key == "event" or not isinstance(value, str):
            continue
        lower_key = key.lower()
        if lower_key.endswith("_hash"):
            continue
        if any(marker in lower_key for marker in _MASKED_KEYS):
            event_dict[key] = _mask(value)
        elif "@" in value:
            event_dict[key] = _EMAIL_IN_TEXT.sub(r"\1***@\2", value)
    return event_dict


def configure_logging(level: str = "INFO", *, json_output: bool = True) -> None:
    """Route structlog through correlation-id and redaction processors.

    JSON lines go to stdout in deployments; ``json_output=False`` switches to
    the colored console renderer for local work.
    """
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if json_output:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


# Logging must work before Settings can be built, so it reads the environment directly
configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true") and not _env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


_INTERNAL_DETAIL_PATTERNS = [
    re.compile(p)
    for p in (
        r"(?i)\b(select|insert|update|delete)\b.{0,80}",
        r"(?i)/(?:home|var|etc|usr|opt|tmp)/\S+",
        r"(?i)(password|secret|token|key)\s*[:=]\s*\S+",
    )
]


def sanitize_error_message(message: str, *, replacement: str = "[redacted]") -> str:
    """Strip SQL fragments, filesystem paths and credentials before echoing text to a client."""
    if not message:
        return "invalid input"
    for pattern in _INTERNAL_DETAIL_PATTERNS:
        message = pattern.sub(replacement, message)
    return message if len(message) <= 500 else message[:497] + "..."
