"""Structured logging configuration with correlation IDs and secret redaction."""

import logging
import re
import sys
from contextvars import ContextVar
from typing import Any
from uuid import uuid4

import orjson
import structlog
from structlog.processors import CallsiteParameter

# Context variables for request tracking
request_id_var: ContextVar[str] = ContextVar("request_id", default="")
provider_var: ContextVar[str] = ContextVar("provider", default="")


class SecretRedactor:
    """Redact credentials from log values."""

    OPENAI_KEY_PATTERN = re.compile(r"\bsk-(?:proj-|ant-)?[A-Za-z0-9_-]{10,}\b")
    GOOGLE_KEY_PATTERN = re.compile(r"\bAIza[0-9A-Za-z_-]{20,}\b")
    BEARER_PATTERN = re.compile(r"Bearer\s+[A-Za-z0-9._-]+", re.IGNORECASE)
    API_KEY_PARAM_PATTERN = re.compile(r"(api[_-]?key[=:]\s*)[A-Za-z0-9._-]+", re.IGNORECASE)

    @classmethod
    def redact(cls, value: Any) -> Any:
        """Redact secrets from value."""
        if not isinstance(value, str):
            return value

        value = cls.OPENAI_KEY_PATTERN.sub("sk-***", value)
        value = cls.GOOGLE_KEY_PATTERN.sub("AIza***", value)
        value = cls.BEARER_PATTERN.sub("Bearer ***", value)
        value = cls.API_KEY_PARAM_PATTERN.sub(r"\1***", value)

        return value


def add_context_vars(logger, method_name, event_dict):
    """Add context variables to log events."""
    if request_id := request_id_var.get():
        event_dict.setdefault("request_id", request_id)
    if provider := provider_var.get():
        event_dict.setdefault("provider", provider)
    return event_dict


def redact_sensitive_data(logger, method_name, event_dict):
    """Redact sensitive data from logs."""
    for key, value in event_dict.items():
        if key in ("timestamp", "level", "logger", "request_id"):
            continue
        if isinstance(value, str):
            event_dict[key] = SecretRedactor.redact(value)
        elif isinstance(value, dict):
            event_dict[key] = {k: SecretRedactor.redact(v) for k, v in value.items()}

    return event_dict


def _orjson_dumps(event_dict, **kwargs) -> str:
    return orjson.dumps(event_dict, default=str).decode()


def setup_logging(
    level: str | None = None,
    format: str | None = None,
) -> None:
    """Configure structured logging for the library and its CLI."""
    if level is None or format is None:
        from ragchat_core.config import get_settings

        settings = get_settings()
        level = level or settings.log_level
        format = format or settings.log_format

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        add_context_vars,
        redact_sensitive_data,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.CallsiteParameterAdder(
            parameters=[
                CallsiteParameter.FILENAME,
                CallsiteParameter.FUNC_NAME,
                CallsiteParameter.LINENO,
            ]
        ),
        structlog.processors.format_exc_info,
    ]

    if format == "json":
        processors.append(structlog.processors.JSONRenderer(serializer=_orjson_dumps))
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, level.upper()),
        force=True,
    )

    # Suppress noisy loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)
    logging.getLogger("anthropic").setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


class RequestContext:
    """Context manager for request-scoped logging."""

    def __init__(self, request_id: str | None = None, provider: str | None = None):
        """Initialize request context."""
        self.request_id = request_id or str(uuid4())
        self.provider = provider
        self._tokens = []

    def __enter__(self):
        """Enter context."""
        self._tokens.append((request_id_var, request_id_var.set(self.request_id)))
        if self.provider:
            self._tokens.append((provider_var, provider_var.set(self.provider)))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Exit context."""
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens.clear()
        return False
