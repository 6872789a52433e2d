import sys
from datetime import date
from pathlib import Path
from typing import Dict, Generator, List, Optional, Tuple

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from app import SESSION_KEY, create_app
from app_logging import get_request_id
from attendance_client import FetchResult, LoginResult, SaveResult, ServiceUnavailable
from models import AuthenticatedTeacher

TODAY = date(2024, 3, 1)


class FakeAttendanceService:
    """In-memory stand-in for the remote attendance service."""

    def __init__(self) -> None:
        self.teachers: Dict[Tuple[str, str], AuthenticatedTeacher] = {
            ("teacher6a", "secret"): AuthenticatedTeacher(name="Asha", assigned_class="6A"),
        }
        self.records: Dict[Tuple[str, str], dict] = {}
        self.calls: List[tuple] = []
        self.request_ids: List[Optional[str]] = []
        self.unavailable: set = set()
        self.save_error: Optional[str] = None
        self.login_message: Optional[str] = "Invalid username or password."

    def _record_call(self, *call) -> None:
        self.calls.append(call)
        self.request_ids.append(get_request_id())
        if call[0] in self.unavailable:
            raise ServiceUnavailable(f"{call[0]} unavailable")

    def authenticate(self, username: str, password: str) -> LoginResult:
        self._record_call("login", username)
        teacher = self.teachers.get((username, password))
        if teacher is None:
            return LoginResult(success=False, message=self.login_message)
        return LoginResult(success=True, teacher=teacher)

    def fetch_record(self, class_name: str, on: date) -> FetchResult:
        self._record_call("fetchData", class_name, on)
        data = self.records.get((class_name, on.isoformat()))
        if data is None:
            return FetchResult(found=False)
        return FetchResult(found=True, data=data)

    def save_record(self, payload: dict) -> SaveResult:
        self._record_call("saveData", payload)
        if self.save_error is not None:
            return SaveResult(success=False, error=self.save_error)
        self.records[(payload["className"], payload["date"])] = payload["attendanceData"]
        return SaveResult(success=True)


@pytest.fixture
def service() -> FakeAttendanceService:
    return FakeAttendanceService()


@pytest.fixture
def teacher() -> AuthenticatedTeacher:
    return AuthenticatedTeacher(name="Asha", assigned_class="6A")


@pytest.fixture
def app(monkeypatch: pytest.MonkeyPatch, service: FakeAttendanceService) -> Generator:
    monkeypatch.setenv('CLIENT_LOG_RATE_LIMIT', '2')
    monkeypatch.setenv('CLIENT_LOG_WINDOW_SECONDS', '60')
    monkeypatch.setenv('REQUEST_LOG_SAMPLE_RATE', '1')
    application = create_app(service_client=service, today=lambda: TODAY)
    application.config.update(TESTING=True, SECRET_KEY='test-secret')
    yield application


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def logged_in(client):
    response = client.post('/api/login', json={'username': 'teacher6a', 'password': 'secret'})
    assert response.status_code == 200
    return client


@pytest.fixture
def form_of(app):
    """Return the server-side form session behind a test client."""

    def _form_of(test_client):
        with test_client.session_transaction() as sess:
            session_id = sess[SESSION_KEY]
        return app.extensions['form_sessions'].get(session_id)

    return _form_of
