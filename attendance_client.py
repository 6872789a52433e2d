"""HTTP client for the remote attendance service.

The service is a single URL that dispatches on an ``action`` parameter:

* ``GET ?action=login&username=..&password=..`` – authenticate a teacher.
* ``GET ?action=fetchData&class=..&date=..`` – fetch a record, if any.
* ``POST action=saveData, payload=<json>`` – create or update a record.

Transport problems (connection errors, timeouts, non-2xx responses, bodies
that are not JSON objects) raise :class:`ServiceUnavailable`. A response that
arrives but reports ``success: false`` is returned as data; deciding what to
tell the user is the caller's job.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, Mapping, Optional

import requests

from app_logging import ServiceTimer, get_logger, get_request_id
from correlation_id_middleware import HEADER_NAME
from models import AuthenticatedTeacher

_logger = get_logger("app.service")


class ServiceUnavailable(Exception):
    """The attendance service could not be reached or answered garbage."""


@dataclass
class LoginResult:
    success: bool
    teacher: Optional[AuthenticatedTeacher] = None
    message: Optional[str] = None


@dataclass
class FetchResult:
    found: bool
    data: Optional[Dict[str, Any]] = None


@dataclass
class SaveResult:
    success: bool
    error: Optional[str] = None


class AttendanceServiceClient:
    def __init__(self, base_url: str, timeout: float = 10, session: Optional[requests.Session] = None):
        self.base_url = base_url
        self.timeout = timeout
        self.session = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        request_id = get_request_id()
        return {HEADER_NAME: request_id} if request_id else {}

    def _call(self, action: str, method: str, **kwargs: Any) -> Dict[str, Any]:
        if not self.base_url:
            raise ServiceUnavailable("ATTENDANCE_SERVICE_URL is not configured")
        timer = ServiceTimer()
        try:
            with timer:
                response = self.session.request(
                    method, self.base_url, headers=self._headers(), timeout=self.timeout, **kwargs
                )
                response.raise_for_status()
                body = response.json()
        except (requests.RequestException, ValueError) as exc:
            _logger.warning(
                "service call failed",
                extra={"event": "service_error", "action": action, "service_time_ms": timer.elapsed_ms,
                       "error_type": type(exc).__name__, "error": str(exc)},
            )
            raise ServiceUnavailable(str(exc)) from exc
        if not isinstance(body, dict):
            raise ServiceUnavailable(f"unexpected {action} response: {type(body).__name__}")
        _logger.info(
            "service call",
            extra={"event": "service_call", "action": action, "service_time_ms": timer.elapsed_ms},
        )
        return body

    def authenticate(self, username: str, password: str) -> LoginResult:
        body = self._call(
            "login", "GET", params={"action": "login", "username": username, "password": password}
        )
        teacher = body.get("teacher")
        if body.get("success") and isinstance(teacher, Mapping) and teacher.get("assignedClass"):
            return LoginResult(success=True, teacher=AuthenticatedTeacher.from_payload(teacher))
        return LoginResult(success=False, message=body.get("message"))

    def fetch_record(self, class_name: str, on: date) -> FetchResult:
        body = self._call(
            "fetchData", "GET", params={"action": "fetchData", "class": class_name, "date": on.isoformat()}
        )
        data = body.get("data")
        if body.get("found") and isinstance(data, Mapping):
            return FetchResult(found=True, data=dict(data))
        return FetchResult(found=False)

    def save_record(self, payload: Mapping[str, Any]) -> SaveResult:
        body = self._call(
            "saveData", "POST", data={"action": "saveData", "payload": json.dumps(payload)}
        )
        if body.get("success"):
            return SaveResult(success=True)
        error = body.get("error")
        return SaveResult(success=False, error=str(error) if error else None)


__all__ = [
    "AttendanceServiceClient",
    "FetchResult",
    "LoginResult",
    "SaveResult",
    "ServiceUnavailable",
]
