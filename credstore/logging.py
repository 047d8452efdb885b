from __future__ import annotations

import hashlib
import logging
import os
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

import structlog

# Substrings that mark a field as carrying credential material
_PII_KEYS = frozenset({"password", "secret", "token", "code", "email", "authorization", "auth_key"})
# Identifiers that are safe to log verbatim even though they match a PII key
_PII_ALLOWED = frozenset({"token_kind", "error_code", "email_hash", "code_length"})
# Account key material; never partially shown
_SECRET_FIELDS = frozenset({"ka", "wrap_wrap_kb", "verify_hash", "auth_salt", "key_bundle"})


@contextmanager
def credential_context(
    uid: Optional[str] = None, token_kind: Optional[str] = None, **extra: Any
) -> Iterator[None]:
    """Bind the account and token kind an operation acts on to every log line it emits.

    Nested contexts add to the outer binding and restore it on exit.
    """
    bindings = {k: v for k, v in {"uid": uid, "token_kind": token_kind, **extra}.items() if v is not None}
    with structlog.contextvars.bound_contextvars(**bindings):
        yield


def current_credential_context() -> Dict[str, Any]:
    return structlog.contextvars.get_contextvars()


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor to redact credentials and email addresses from log entries."""
    for key in list(event_dict.keys()):
        lower_key = key.lower()
        if lower_key in _PII_ALLOWED:
            continue
        value = event_dict[key]
        if lower_key in _SECRET_FIELDS:
            event_dict[key] = "***"
        elif any(pii in lower_key for pii in _PII_KEYS):
            if isinstance(value, str) and len(value) > 4:
                # Keep first/last 2 chars so ids can still be told apart
                event_dict[key] = value[:2] + "***" + value[-2:]
    return event_dict


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Configure structlog for credstore.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: If True, output JSON; if False, output human-readable
        development_mode: If True, use pretty console output
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
    ]

    if development_mode or not json_output:
        renderer: Any = structlog.dev.ConsoleRenderer(colors=development_mode)
        processors = shared_processors + [renderer]
    else:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(sort_keys=True),
        ]

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


def hash_for_log(value: str) -> str:
    """Stable short digest so emails and codes can be correlated across log lines."""
    return hashlib.sha256(value.encode()).hexdigest()[:16]
