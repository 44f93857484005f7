"""
Structured JSON logging.

Every record leaving the ``ledger_recon`` logger tree is one JSON line. Events
are logged with ``log_event(logger, "dotted.name", **fields)``; the request id,
organization id and Celery task id currently in scope are stamped onto each
record by ``ContextFilter`` so call sites never pass them explicitly.
"""

from __future__ import annotations

import contextvars
import json
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from ledger_recon.core.config import settings

ROOT_LOGGER = "ledger_recon"

_CONTEXT: dict[str, contextvars.ContextVar[str | None]] = {
    name: contextvars.ContextVar(name, default=None)
    for name in ("request_id", "organization_id", "celery_task_id")
}


def _current_context() -> dict[str, str]:
    return {name: var.get() for name, var in _CONTEXT.items() if var.get()}


class ContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.context = _current_context()
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created, tz=timezone.utc)
        payload: dict[str, Any] = {
            "ts": ts.strftime("%Y-%m-%dT%H:%M:%S.") + f"{ts.microsecond // 1000:03d}Z",
            "level": record.levelname,
            "logger": record.name,
            "event": getattr(record, "event", None) or record.getMessage(),
            "env": settings.environment,
        }
        payload.update(getattr(record, "context", None) or {})
        fields = getattr(record, "fields", None) or {}
        payload.update((k, v) for k, v in fields.items() if v is not None)
        if record.exc_info:
            payload["error_type"] = record.exc_info[0].__name__ if record.exc_info[0] else None
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str, ensure_ascii=True)


def _resolve_level(name: str | None) -> int:
    level = logging.getLevelName((name or "INFO").upper())
    return level if isinstance(level, int) else logging.INFO


def configure_logging(*, force: bool = False) -> None:
    root = logging.getLogger(ROOT_LOGGER)
    if root.handlers and not force:
        return
    handler = logging.StreamHandler()
    handler.addFilter(ContextFilter())
    handler.setFormatter(JsonFormatter())
    root.handlers = [handler]
    root.setLevel(_resolve_level(settings.log_level))
    root.propagate = False


def get_logger(name: str) -> logging.Logger:
    configure_logging()
    return logging.getLogger(name)


def _bind(name: str, value: str | None) -> contextvars.Token:
    return _CONTEXT[name].set(value)


def _unbind(name: str, token: contextvars.Token) -> None:
    _CONTEXT[name].reset(token)


def set_request_context(*, request_id: str | None) -> contextvars.Token:
    return _bind("request_id", request_id)


def reset_request_context(token: contextvars.Token) -> None:
    _unbind("request_id", token)


def set_organization_context(organization_id: str | None) -> contextvars.Token:
    return _bind("organization_id", organization_id)


def reset_organization_context(token: contextvars.Token) -> None:
    _unbind("organization_id", token)


def set_task_context(task_id: str | None) -> contextvars.Token:
    return _bind("celery_task_id", task_id)


def reset_task_context(token: contextvars.Token) -> None:
    _unbind("celery_task_id", token)


def log_event(
    logger: logging.Logger, event: str, *, level: int = logging.INFO, **fields: Any
) -> None:
    if logger.isEnabledFor(level):
        logger.log(level, event, extra={"event": event, "fields": fields})


def log_exception(logger: logging.Logger, event: str, **fields: Any) -> None:
    logger.exception(event, extra={"event": event, "fields": fields})


def monotonic_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Tags each request with an ``x-request-id`` and logs its outcome."""

    slow_request_ms = 2000

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        token = set_request_context(request_id=request_id)
        logger = get_logger(__name__)
        start = time.monotonic()
        try:
            response = await call_next(request)
        except Exception:
            log_exception(
                logger,
                "http.request.error",
                method=request.method,
                path=request.url.path,
                duration_ms=monotonic_ms(start),
            )
            reset_request_context(token)
            raise

        duration_ms = monotonic_ms(start)
        response.headers["x-request-id"] = request_id
        if response.status_code >= 500:
            level = logging.ERROR
        elif duration_ms >= self.slow_request_ms:
            level = logging.WARNING
        else:
            level = logging.DEBUG
        log_event(
            logger,
            "http.request.finish",
            level=level,
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=duration_ms,
        )
        reset_request_context(token)
        return response
