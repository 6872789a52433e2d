"""Request/response logging middleware for Flask.

Emits one ``request_start`` and one ``request_end`` record per API call.
Request bodies go through :func:`app_logging.redact_sensitive_data` first, so
the login password never reaches the logs. Response bodies are logged only
for JSON responses and truncated to ``RESPONSE_BODY_MAX_BYTES``.
"""

from __future__ import annotations

import json
import os
import random
import time
from typing import Any, Dict, Optional

from flask import Flask, Response, g, request

from app_logging import get_logger, merge_request_context, redact_sensitive_data

_DEFAULT_SAMPLE_RATE = 1.0
_DEFAULT_MAX_BYTES = 2048
_SKIPPED_PREFIXES = ("/static", "/health", "/client-logs")

_request_logger = get_logger("app.request")


def _sample_rate() -> float:
    try:
        return max(0.0, min(1.0, float(os.environ.get("REQUEST_LOG_SAMPLE_RATE", _DEFAULT_SAMPLE_RATE))))
    except ValueError:
        return _DEFAULT_SAMPLE_RATE


def _max_response_bytes() -> int:
    try:
        return max(0, int(os.environ.get("RESPONSE_BODY_MAX_BYTES", _DEFAULT_MAX_BYTES)))
    except ValueError:
        return _DEFAULT_MAX_BYTES


def client_ip() -> str:
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.remote_addr or "unknown"


def _should_log_request(path: str) -> bool:
    if path.startswith(_SKIPPED_PREFIXES):
        return False
    rate = _sample_rate()
    return rate >= 1.0 or random.random() < rate


def _request_payload() -> Dict[str, Any]:
    payload: Dict[str, Any] = {}
    if request.args:
        payload["query"] = redact_sensitive_data(request.args.to_dict(flat=False))
    if request.method in {"POST", "PUT", "PATCH"}:
        body = request.get_json(silent=True)
        if body is not None:
            payload["json"] = redact_sensitive_data(body)
    return payload


def _response_body(resp: Response) -> Optional[str]:
    limit = _max_response_bytes()
    if limit == 0 or resp.direct_passthrough or not resp.is_json:
        return None
    body = resp.get_data(as_text=True)
    try:
        body = json.dumps(redact_sensitive_data(json.loads(body)))
    except ValueError:
        pass
    if len(body) > limit:
        return body[:limit] + f"... truncated {len(body) - limit} bytes"
    return body


def init_request_logging(app: Flask) -> None:
    """Register Flask hooks that emit structured request/response logs."""

    @app.before_request
    def _log_request_start() -> None:
        g._request_start = time.perf_counter()
        g._log_request = _should_log_request(request.path)
        route = request.url_rule.rule if request.url_rule else None
        merge_request_context(method=request.method, path=request.path, client_ip=client_ip(), route=route)
        if g._log_request:
            _request_logger.info(
                "request_start",
                extra={
                    "event": "request_start",
                    "user_agent": request.headers.get("User-Agent"),
                    "request_payload": _request_payload(),
                },
            )

    @app.after_request
    def _log_request_end(response: Response) -> Response:
        duration_ms = round((time.perf_counter() - g.get("_request_start", time.perf_counter())) * 1000, 2)
        merge_request_context(status=response.status_code, duration_ms=duration_ms)
        if g.get("_log_request", False):
            _request_logger.info(
                "request_end",
                extra={
                    "event": "request_end",
                    "status": response.status_code,
                    "duration_ms": duration_ms,
                    "response_body": _response_body(response),
                },
            )
        return response


__all__ = ["client_ip", "init_request_logging"]
