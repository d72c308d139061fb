from __future__ import annotations

import hashlib
import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Mapping, Optional

import structlog

# Per-request correlation id, set by the HTTP middleware
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Client-supplied request ids end up in every log line; anything else is replaced
_REQUEST_ID_PATTERN = re.compile(r"^[A-Za-z0-9._:\-]{1,128}$")

# Field names whose values are credentials and never logged, even partially
_CREDENTIAL_MARKERS = ("password", "secret", "token", "authorization", "cookie")
_EMAIL_MARKER = "email"
_MASK = "[redacted]"


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind the request id for this context, generating one when the caller's is unusable."""
    if correlation_id and _REQUEST_ID_PATTERN.match(correlation_id):
        cid = correlation_id
    else:
        cid = str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def redact_email(email: Optional[str]) -> str:
    """Mask an address for logs: ``a***@example.com``."""
    if not email or "@" not in email:
        return "***"
    local, domain = email.rsplit("@", 1)
    return f"{local[:1]}***@{domain}"


def email_fingerprint(email: str) -> str:
    """Stable, non-reversible identifier for correlating log lines about one address."""
    return hashlib.sha256(email.strip().lower().encode()).hexdigest()[:16]


def _scrub(key: str, value: Any) -> Any:
    lower_key = key.lower()
    if isinstance(value, Mapping):
        return {k: _scrub(str(k), v) for k, v in value.items()}
    # Digests of one-time tokens are safe and needed to trace a grant
    if lower_key.endswith(("_hash", "_fingerprint")):
        return value
    if any(marker in lower_key for marker in _CREDENTIAL_MARKERS):
        return _MASK if value is not None else None
    if _EMAIL_MARKER in lower_key and isinstance(value, str):
        return redact_email(value)
    return value


def _redact_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credentials and addresses, including inside nested metadata."""
    for key in list(event_dict.keys()):
        if key == "event":
            continue
        event_dict[key] = _scrub(key, event_dict[key])
    return event_dict


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Configure structlog processors and rendering.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: If True, output JSON; if False, output human-readable
        development_mode: If True, use pretty console output
    """
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_correlation_id,
        _redact_credentials,
        structlog.processors.StackInfoRenderer(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=development_mode))
    else:
        processors.extend(
            [
                structlog.processors.dict_tracebacks,
                structlog.processors.JSONRenderer(sort_keys=True),
            ]
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


configure_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
