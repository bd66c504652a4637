from __future__ import annotations

import logging
import os
import time
import uuid
from typing import Any, Dict

import orjson
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

Json = Dict[str, Any]


def _now_ms() -> int:
    return int(time.time() * 1000)


def _flag(name: str, default: str = "1") -> bool:
    raw = (os.environ.get(name) or default).strip().lower()
    return raw not in {"0", "false", "no", "n", "off"}


def configure_structured_logging() -> None:
    """JSON-lines в stdout. Уровень из LEDGER_LOG_LEVEL (INFO по умолчанию), повторный вызов безопасен."""
    level_name = (os.environ.get("LEDGER_LOG_LEVEL") or "INFO").strip().upper()
    level = getattr(logging, level_name, logging.INFO)

    root = logging.getLogger("ledger")
    if getattr(root, "_ledger_configured", False):
        root.setLevel(level)
        return

    handler = logging.StreamHandler()
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("%(message)s"))

    root.handlers = [handler]
    root.setLevel(level)
    root.propagate = False
    setattr(root, "_ledger_configured", True)


def log_event(logger: logging.Logger, event: str, **fields: Any) -> None:
    payload: Json = {"ts_ms": _now_ms(), "event": event}
    payload.update(fields)
    try:
        line = orjson.dumps(payload, option=orjson.OPT_SORT_KEYS).decode()
    except orjson.JSONEncodeError:
        # поле не сериализуется в JSON: пишем key=value
        parts = [f"event={event}"] + [f"{k}={fields.get(k)!r}" for k in sorted(fields.keys())]
        line = " ".join(parts)
    logger.info(line)


class RequestLogMiddleware(BaseHTTPMiddleware):
    """Логирует каждый запрос одной строкой; LEDGER_LOG_REQUESTS=0 выключает."""

    def __init__(self, app) -> None:
        super().__init__(app)
        self._enabled = _flag("LEDGER_LOG_REQUESTS")
        self._logger = logging.getLogger("ledger.http")

    async def dispatch(self, request: Request, call_next):
        if not self._enabled:
            return await call_next(request)

        started = time.monotonic()
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
            response.headers.setdefault("x-request-id", request_id)
            return response
        finally:
            log_event(
                self._logger,
                "http_request",
                request_id=request_id,
                method=request.method,
                path=request.url.path,
                status=status,
                duration_ms=int((time.monotonic() - started) * 1000),
            )
