"""Correlation IDs and request/response logging for the Flask app."""

from __future__ import annotations

import os
import random
import time
import uuid
from typing import Any, Dict, Optional

from flask import Flask, Response, g, request

from app_logging import (
    clear_request_context,
    clear_request_id,
    get_logger,
    merge_request_context,
    redact_sensitive_data,
    set_request_id,
)

HEADER_NAME = "X-Request-ID"
_DEFAULT_SAMPLE_RATE = 1.0

_request_logger = get_logger("app.request")


def _sample_rate() -> float:
    try:
        return max(0.0, min(1.0, float(os.environ.get("REQUEST_LOG_SAMPLE_RATE", _DEFAULT_SAMPLE_RATE))))
    except ValueError:
        return _DEFAULT_SAMPLE_RATE


def _incoming_request_id() -> Optional[str]:
    return request.headers.get(HEADER_NAME, "").strip() or None


def _client_ip() -> str:
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.remote_addr or "unknown"


def _should_log(path: str) -> bool:
    if path == "/health":
        return False
    rate = _sample_rate()
    return rate >= 1.0 or random.random() <= rate


def _request_payload() -> Dict[str, Any]:
    payload: Dict[str, Any] = {}
    if request.args:
        payload["query"] = redact_sensitive_data(request.args.to_dict(flat=False))
    if request.method in {"POST", "PUT", "PATCH", "DELETE"}:
        body = request.get_json(silent=True)
        if body is not None:
            payload["json"] = redact_sensitive_data(body)
    return payload


def init_request_logging(app: Flask) -> None:
    """Assign a correlation ID to each request and log its start and end."""

    @app.before_request
    def _log_request_start() -> None:
        request_id = _incoming_request_id() or str(uuid.uuid4())
        set_request_id(request_id)
        g.request_id = request_id
        g._request_start = time.perf_counter()
        g._log_request = _should_log(request.path)
        merge_request_context(
            method=request.method,
            path=request.path,
            client_ip=_client_ip(),
            route=request.url_rule.rule if request.url_rule else None,
        )
        if g._log_request:
            _request_logger.info(
                "request_start",
                extra={"event": "request_start", "request_payload": _request_payload()},
            )

    @app.after_request
    def _log_request_end(response: Response) -> Response:
        duration_ms = round((time.perf_counter() - g._request_start) * 1000, 2) \
            if hasattr(g, "_request_start") else None
        merge_request_context(status=response.status_code, duration_ms=duration_ms)
        if getattr(g, "_log_request", False):
            _request_logger.info("request_end", extra={"event": "request_end"})
        request_id = getattr(g, "request_id", None) or _incoming_request_id()
        if request_id:
            response.headers[HEADER_NAME] = request_id
        return response

    @app.teardown_request
    def _teardown_request(_exc) -> None:
        clear_request_id()
        clear_request_context()


__all__ = ["HEADER_NAME", "init_request_logging"]
