"""Ingestion of browser-side error reports.

The attendance page posts failures it sees (for example a fetch that never
reached the server) to ``POST /client-logs``. Each report is re-emitted as a
server log record under ``app.client``. Reports are rate limited per client
address with a sliding window of ``CLIENT_LOG_WINDOW_SECONDS`` seconds allowing
``CLIENT_LOG_RATE_LIMIT`` reports.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from collections import deque
from typing import Deque, Dict

from flask import Flask, jsonify, request
from werkzeug.exceptions import BadRequest, TooManyRequests

from app_logging import get_logger, redact_sensitive_data
from request_logging_middleware import client_ip

_client_logger = get_logger("app.client")

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}
_MAX_MESSAGE_LENGTH = 2000


class SlidingWindowLimiter:
    """Allow at most ``limit`` hits per key within ``window`` seconds."""

    def __init__(self, limit: int, window: float):
        self.limit = limit
        self.window = window
        self._hits: Dict[str, Deque[float]] = {}
        self._last_sweep = time.monotonic()
        self._lock = threading.Lock()

    def _sweep(self, now: float) -> None:
        # Caller holds the lock. Drops keys with no hit inside the window.
        idle = [key for key, hits in self._hits.items() if now - hits[-1] >= self.window]
        for key in idle:
            del self._hits[key]
        self._last_sweep = now

    def allow(self, key: str) -> bool:
        now = time.monotonic()
        with self._lock:
            if now - self._last_sweep >= self.window:
                self._sweep(now)
            hits = self._hits.get(key, deque())
            while hits and now - hits[0] >= self.window:
                hits.popleft()
            allowed = len(hits) < self.limit
            if allowed:
                hits.append(now)
            if hits:
                self._hits[key] = hits
            else:
                self._hits.pop(key, None)
            return allowed


def _env_number(name: str, default: float) -> float:
    try:
        return float(os.environ.get(name, default))
    except ValueError:
        return default


def init_client_log_ingestion(app: Flask) -> None:
    """Register ``POST /client-logs`` on ``app``."""

    limiter = SlidingWindowLimiter(
        limit=int(_env_number("CLIENT_LOG_RATE_LIMIT", 30)),
        window=_env_number("CLIENT_LOG_WINDOW_SECONDS", 60),
    )

    @app.route("/client-logs", methods=["POST"])
    def ingest_client_log():
        if not limiter.allow(client_ip()):
            raise TooManyRequests("Too many client log reports")
        data = request.get_json(silent=True)
        if not isinstance(data, dict) or not data.get("message"):
            raise BadRequest("A JSON object with a message is required")
        level = _LEVELS.get(str(data.get("level", "error")).lower(), logging.ERROR)
        context = redact_sensitive_data(data.get("context") or {})
        _client_logger.log(
            level,
            str(data["message"])[:_MAX_MESSAGE_LENGTH],
            extra={"event": "client_log", "client_context": context},
        )
        return jsonify({"status": "accepted"}), 202


__all__ = ["SlidingWindowLimiter", "init_client_log_ingestion"]
