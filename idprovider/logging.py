from __future__ import annotations

import hashlib
import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

_MAX_REQUEST_ID_LEN = 128


def get_request_id() -> Optional[str]:
    return request_id_var.get()


def bind_request_id(request_id: Optional[str] = None) -> str:
    """Adopt a caller-supplied request id, or mint one, for this execution unit."""
    rid = (request_id or "").strip()[:_MAX_REQUEST_ID_LEN] or str(uuid.uuid4())
    request_id_var.set(rid)
    return rid


def _add_request_scope(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Stamp entries with the request id and the ambient tenant."""
    # tenant_context logs through this module
    from idprovider.service.tenant_context import get_current_tenant

    rid = request_id_var.get()
    if rid:
        event_dict.setdefault("request_id", rid)
    tenant = get_current_tenant()
    if tenant:
        event_dict.setdefault("tenant_id", tenant)
    return event_dict


_CREDENTIAL_KEYS = ("password", "secret", "token", "authorization", "hash", "email")


def token_fingerprint(value: str) -> str:
    """Short stable digest so a credential can be correlated across entries."""
    return "sha256:" + hashlib.sha256(value.encode()).hexdigest()[:12]


def _mask_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    for key, value in list(event_dict.items()):
        if not isinstance(value, str) or not value:
            continue
        if any(marker in key.lower() for marker in _CREDENTIAL_KEYS):
            event_dict[key] = token_fingerprint(value)
    return event_dict


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def configure_logging(level: Optional[str] = None, *, json_output: Optional[bool] = None) -> None:
    """Install the structlog pipeline.

    Runs once at import with ``LOG_LEVEL`` and ``LOG_JSON``; callers may run it
    again to switch level or renderer.
    """
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if json_output is None:
        json_output = _env_flag("LOG_JSON", True)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_request_scope,
        _mask_credentials,
        structlog.processors.StackInfoRenderer(),
    ]
    if json_output:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))

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


_ERROR_SCRUBBERS = [
    re.compile(r"(?i)bearer\s+[A-Za-z0-9._~+/=-]+"),
    re.compile(r"(?i)(password|secret|token|credential)\s*[:=]\s*\S+"),
    re.compile(r"(?i)postgres(?:ql)?://\S+"),
    re.compile(r"(?i)rediss?://\S+"),
]


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Scrub bearer tokens, inline credentials and connection URLs from an error."""
    if not error or not isinstance(error, str):
        return "An error occurred"
    for pattern in _ERROR_SCRUBBERS:
        error = pattern.sub(replacement, error)
    return error if len(error) <= 500 else error[:497] + "..."
