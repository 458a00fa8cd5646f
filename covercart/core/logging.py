# covercart/core/logging.py
"""
Logging for CoverCart.

- structlog on top of stdlib logging: JSON in production (or LOG_FORMAT=json),
  console renderer in development.
- Optional file output: rotating covercart.log plus a separate errors.log.
- Request context (request_id, client_ip, user_agent, user_id) and business
  context (order, webhook, ...) live in structlog contextvars, so every log
  line emitted while handling a request or an event carries them.
- Redaction: provider credentials and signatures are masked, customer phone
  numbers and emails are partially masked.
- Audit events: data changes, money movements, security events.
"""

from __future__ import annotations

import logging
import logging.config
import os
import sys
import time
import uuid
from contextlib import contextmanager
from typing import Any, Optional

import structlog

from covercart.core.config import settings

_CONFIGURED = False

# health probes are polled constantly; keep them out of the access log
_QUIET_PATHS = frozenset({"/livez", "/readyz"})

# ---------- Redaction ----------
_SECRET_MARKERS = ("secret", "password", "token", "signature", "authorization", "api_key")
_PII_MARKERS = ("phone", "email")


def _mask(value: Any, keep: int = 3) -> str:
    s = str(value)
    if len(s) <= keep * 2:
        return "***"
    return f"{s[:keep]}***{s[-keep:]}"


def _mask_pii(value: Any) -> str:
    s = str(value)
    if "@" in s:
        user, _, domain = s.partition("@")
        return f"{user[:1]}***@{domain}"
    return _mask(s, keep=2)


def redact_secrets(data: Any) -> Any:
    if isinstance(data, dict):
        out: dict[str, Any] = {}
        for key, value in data.items():
            lk = str(key).lower()
            if value is None:
                out[key] = None
            elif any(m in lk for m in _SECRET_MARKERS) and "public" not in lk:
                out[key] = _mask(value)
            elif any(m in lk for m in _PII_MARKERS):
                out[key] = _mask_pii(value)
            else:
                out[key] = redact_secrets(value)
        return out
    if isinstance(data, (list, tuple)):
        return type(data)(redact_secrets(v) for v in data)
    return data


def _redact_processor(_, __, event_dict):
    return redact_secrets(event_dict)


def _add_service(_, __, event_dict):
    event_dict.setdefault("service", settings.PROJECT_NAME)
    event_dict.setdefault("version", settings.VERSION)
    return event_dict


# ---------- Setup ----------
def _file_handler(path: str, level: str, **rotation: Any) -> dict:
    return {
        "level": level,
        "class": "logging.handlers.RotatingFileHandler",
        "filename": path,
        "encoding": "utf8",
        "formatter": "plain",
        **rotation,
    }


def _dict_config(logs_dir: str, level: str) -> dict:
    os.makedirs(logs_dir, exist_ok=True)
    handlers = {
        "console": {"level": level, "class": "logging.StreamHandler", "formatter": "plain", "stream": "ext://sys.stdout"},
        "file": _file_handler(os.path.join(logs_dir, "covercart.log"), "DEBUG", maxBytes=20 * 1024 * 1024, backupCount=5),
        "errors": _file_handler(os.path.join(logs_dir, "errors.log"), "ERROR", maxBytes=10 * 1024 * 1024, backupCount=5),
    }
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {"plain": {"format": "%(message)s"}},
        "handlers": handlers,
        "loggers": {
            "": {"handlers": list(handlers), "level": level},
            "uvicorn.access": {"handlers": ["console", "file"], "level": "WARNING", "propagate": False},
        },
    }


def _renderer():
    if settings.is_production or (settings.LOG_FORMAT == "json" and not settings.DEBUG):
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer()


def setup_logging(*, to_files: bool = True) -> None:
    """Configure stdlib handlers and structlog once per process."""
    global _CONFIGURED
    if _CONFIGURED:
        return

    level = (settings.LOG_LEVEL or "INFO").upper()
    logs_dir = os.path.dirname(settings.LOG_PATH or "logs/app.log") or "logs"
    if to_files:
        logging.config.dictConfig(_dict_config(logs_dir, level))
    else:
        logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            _add_service,
            _redact_processor,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            _renderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    _CONFIGURED = True

    lg = get_logger(__name__)
    lg.info("logging_initialized", level=level, logs_dir=os.path.abspath(logs_dir) if to_files else None)
    lg.debug("settings", settings=settings.dump_settings_safe())


def get_logger(name: str):
    return structlog.get_logger(name)


# ---------- Context ----------
def bind_context(**values: Any) -> None:
    """Bind values for the rest of the current task (None values are skipped)."""
    structlog.contextvars.bind_contextvars(**{k: str(v) for k, v in values.items() if v is not None})


@contextmanager
def bound_context(**values: Any):
    """Bind values for the duration of the block."""
    with structlog.contextvars.bound_contextvars(**{k: v for k, v in values.items() if v is not None}):
        yield


# ---------- Audit ----------
class AuditLogger:
    def __init__(self):
        self.logger = get_logger("audit")

    def log_data_change(
        self,
        user_id: Optional[str],
        action: str,
        resource_type: str,
        resource_id: str,
        changes: dict[str, Any],
    ) -> None:
        self.logger.info(
            "data_change",
            actor=user_id,
            action=action,
            resource_type=resource_type,
            resource_id=str(resource_id),
            changes=redact_secrets(changes),
        )

    def log_money_movement(self, kind: str, order: str, amount_minor: Optional[int], **details: Any) -> None:
        """Payments captured and refunds issued, one line per movement."""
        self.logger.info("money_movement", kind=kind, order=order, amount_minor=amount_minor, **redact_secrets(details))

    def log_security_event(self, event: str, details: dict[str, Any]) -> None:
        self.logger.warning("security_event", security_event=event, **redact_secrets(details))

    def log_permission_denied(self, user_id: str, reason: str, resource: str) -> None:
        self.logger.warning("permission_denied", actor=user_id, reason=reason, resource=resource)


audit_logger = AuditLogger()


# ---------- ASGI middleware ----------
class LoggingContextMiddleware:
    """Request id (read or generated, echoed as X-Request-ID), request context and access log."""

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            return await self.app(scope, receive, send)

        headers = {k.decode("latin-1").lower(): v.decode("latin-1") for k, v in scope.get("headers", [])}
        request_id = headers.get("x-request-id") or headers.get("x-correlation-id") or uuid.uuid4().hex
        client = scope.get("client")
        path = scope.get("path", "")
        method = scope.get("method", "")
        status = {"code": 500}
        started = time.perf_counter()

        async def send_with_request_id(message):
            if message["type"] == "http.response.start":
                status["code"] = message.get("status", 200)
                message["headers"] = [*message.get("headers", []), (b"x-request-id", request_id.encode("latin-1"))]
            await send(message)

        with bound_context(
            request_id=request_id,
            client_ip=client[0] if client else None,
            user_agent=headers.get("user-agent"),
        ):
            try:
                await self.app(scope, receive, send_with_request_id)
            finally:
                if path not in _QUIET_PATHS:
                    get_logger("http").info(
                        "request",
                        method=method,
                        path=path,
                        status=status["code"],
                        duration_ms=round((time.perf_counter() - started) * 1000.0, 2),
                    )


__all__ = [
    "setup_logging",
    "get_logger",
    "bind_context",
    "bound_context",
    "AuditLogger",
    "audit_logger",
    "LoggingContextMiddleware",
    "redact_secrets",
]
