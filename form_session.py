"""Form session: the attendance entry workflow for one logged-in teacher.

A :class:`FormSession` owns the single record being edited together with the
"existing entry" hint, the selected date, the focus position in
:data:`models.FIELD_ORDER` and the ``busy`` marker for in-flight service calls.

Network calls never run under the session lock. A fetch is split into
:meth:`FormSession.begin_fetch` (captures a :class:`FetchTicket` with the
selection key) and :meth:`FormSession.finish_fetch` / :meth:`FormSession.fail_fetch`
(apply the outcome only if the ticket's key still matches the current
selection). A fetch for an older date that completes late therefore never
overwrites the state of a newer selection.
"""

from __future__ import annotations

import threading
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from datetime import date
from typing import Any, Callable, Dict, Optional, Tuple

from app_logging import get_logger
from attendance_client import AttendanceServiceClient, FetchResult, SaveResult, ServiceUnavailable
from models import (
    EMPTY,
    FIELD_ORDER,
    AttendanceRecord,
    AuthenticatedTeacher,
    Count,
    FieldRef,
    field_index,
    sanitize_count,
)

_logger = get_logger("app.session")

SelectionKey = Tuple[str, date]

SUBMIT_NEW_LABEL = "Submit New Entry"
SUBMIT_UPDATE_LABEL = "Update Entry"


class LoginError(Exception):
    """Login did not produce a teacher. ``input_error`` means nothing was sent."""

    def __init__(self, message: str, input_error: bool = False):
        super().__init__(message)
        self.message = message
        self.input_error = input_error


class SessionBusy(Exception):
    """Another service call is in flight for this form session."""

    def __init__(self, operation: str):
        super().__init__(f"{operation} in progress")
        self.operation = operation


@dataclass(frozen=True)
class Notification:
    kind: str  # success | error | info
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {"type": self.kind, "message": self.message}


@dataclass(frozen=True)
class FetchTicket:
    key: SelectionKey
    serial: int


@dataclass(frozen=True)
class FieldUpdate:
    field: FieldRef
    value: Count
    focus: FieldRef
    advanced: bool
    seq: Optional[int] = None
    stale: bool = False


def login_teacher(client: AttendanceServiceClient, username: str, password: str) -> AuthenticatedTeacher:
    """Authenticate once against the service.

    Missing credentials are rejected locally without a network call. Any
    transport failure is reported as a failed login with a generic message.
    """
    if not username or not password:
        raise LoginError("Username and password are required.", input_error=True)
    try:
        result = client.authenticate(username, password)
    except ServiceUnavailable:
        _logger.exception("login request failed", extra={"event": "login_failed"})
        raise LoginError("Login failed. Check connection or URL.") from None
    if not result.success or result.teacher is None:
        _logger.info("login rejected", extra={"event": "login_failed"})
        raise LoginError(result.message or "Invalid credentials.")
    return result.teacher


class FormSession:
    def __init__(self, teacher: AuthenticatedTeacher, client: AttendanceServiceClient, selected_date: date):
        self.teacher = teacher
        self.client = client
        self.selected_date = selected_date
        self.record = AttendanceRecord.blank(teacher.assigned_class, selected_date)
        self.is_existing_entry = False
        self.focus_index = 0
        self.busy: Optional[str] = None
        self.notification: Optional[Notification] = None
        self._pending: Optional[FetchTicket] = None
        self._serial = 0
        self._field_seq: Dict[str, int] = {}
        self._lock = threading.Lock()

    @property
    def selection_key(self) -> SelectionKey:
        return (self.teacher.assigned_class, self.selected_date)

    @property
    def submit_label(self) -> str:
        return SUBMIT_UPDATE_LABEL if self.is_existing_entry else SUBMIT_NEW_LABEL

    @property
    def totals(self):
        return self.record.totals()

    @property
    def focus(self) -> FieldRef:
        return FIELD_ORDER[self.focus_index]

    def _reset(self) -> None:
        self.record = AttendanceRecord.blank(self.teacher.assigned_class, self.selected_date)
        self.is_existing_entry = False
        self.focus_index = 0

    def _ensure_idle(self) -> None:
        if self.busy is not None:
            raise SessionBusy(self.busy)

    # -- reconciliation -------------------------------------------------

    def begin_fetch(self, selected_date: date) -> FetchTicket:
        """Select ``selected_date`` and start a fetch for it.

        Allowed while an older fetch is pending (the newer selection wins),
        refused while a submit is in flight.
        """
        with self._lock:
            if self.busy == "submit":
                raise SessionBusy(self.busy)
            self.selected_date = selected_date
            self._serial += 1
            ticket = FetchTicket(self.selection_key, self._serial)
            self._pending = ticket
            self.busy = "fetch"
            return ticket

    def _settle(self, ticket: FetchTicket) -> bool:
        # Caller holds the lock. Returns True when the outcome may be applied.
        if self._pending is not None and ticket.serial == self._pending.serial:
            self._pending = None
            self.busy = None
        if ticket.key != self.selection_key:
            _logger.info(
                "stale fetch discarded",
                extra={"event": "fetch_stale", "class_name": ticket.key[0], "date": ticket.key[1]},
            )
            return False
        return True

    def finish_fetch(self, ticket: FetchTicket, result: FetchResult) -> bool:
        class_name, on = ticket.key
        record = None
        if result.found and result.data is not None:
            # Parse first; a payload that fails to parse changes nothing.
            try:
                record = AttendanceRecord.from_service(class_name, on, result.data)
            except (TypeError, ValueError, AttributeError) as exc:
                return self.fail_fetch(ticket, exc)
        with self._lock:
            if not self._settle(ticket):
                return False
            if record is not None:
                self.record = record
                self.is_existing_entry = True
                self.focus_index = 0
                self.notification = Notification("success", "Existing data loaded.")
            else:
                self._reset()
                self.notification = Notification("info", "Ready for new entry.")
            _logger.info(
                "fetch applied",
                extra={"event": "fetch_applied", "class_name": class_name, "date": on, "found": result.found},
            )
            return True

    def fail_fetch(self, ticket: FetchTicket, error: Exception) -> bool:
        # Whether a record exists is unknown after a failure; start from blank.
        with self._lock:
            if not self._settle(ticket):
                return False
            self._reset()
            self.notification = Notification("error", "Could not fetch data.")
            _logger.warning(
                "fetch failed",
                extra={"event": "fetch_failed", "class_name": ticket.key[0], "date": ticket.key[1],
                       "error": str(error)},
            )
            return True

    def load(self, selected_date: date) -> bool:
        """Fetch and reconcile the record for ``selected_date``.

        Returns False when a newer selection superseded this one.
        """
        ticket = self.begin_fetch(selected_date)
        try:
            result = self.client.fetch_record(*ticket.key)
        except ServiceUnavailable as exc:
            return self.fail_fetch(ticket, exc)
        return self.finish_fetch(ticket, result)

    # -- editing --------------------------------------------------------

    def update_field(self, field_id: str, raw: Any, seq: Optional[int] = None) -> FieldUpdate:
        """Apply one keystroke to ``field_id`` and advance focus when due.

        ``seq`` is the browser's keystroke counter. A keystroke whose ``seq``
        is not newer than the last one applied to the same field arrived out
        of order; it is not stored and the update comes back ``stale``.

        Raises ``KeyError`` for an unknown field and
        :class:`models.InvalidCount` for non-numeric input.
        """
        index = field_index(field_id)
        value = sanitize_count(raw)
        with self._lock:
            self._ensure_idle()
            ref = FIELD_ORDER[index]
            if seq is not None:
                last = self._field_seq.get(field_id)
                if last is not None and seq <= last:
                    _logger.info("stale keystroke ignored",
                                 extra={"event": "field_stale", "field": field_id, "seq": seq})
                    return FieldUpdate(ref, self.record.get(ref), self.focus, False, seq, stale=True)
                self._field_seq[field_id] = seq
            self.record.set(ref, value)
            self.focus_index = index
            advanced = False
            if _completes_field(raw, value) and index < len(FIELD_ORDER) - 1:
                self.focus_index = index + 1
                advanced = True
            return FieldUpdate(ref, value, self.focus, advanced, seq)

    def clear(self) -> None:
        with self._lock:
            self._ensure_idle()
            self._reset()
            self.notification = Notification("success", "Fields cleared.")
        _logger.info("form cleared", extra={"event": "form_cleared"})

    # -- submission -----------------------------------------------------

    def submit(self) -> SaveResult:
        """Send the full record as an upsert.

        The record is left untouched on failure. Raises
        :class:`attendance_client.ServiceUnavailable` after recording the
        notification when the service cannot be reached.
        """
        with self._lock:
            self._ensure_idle()
            self.busy = "submit"
            payload = self.record.to_payload()
        try:
            result = self.client.save_record(payload)
        except ServiceUnavailable as exc:
            with self._lock:
                self.notification = Notification("error", "Error sending data. Check network connection.")
            _logger.warning("submit failed", extra={"event": "submit_failed", "error": str(exc)})
            raise
        finally:
            with self._lock:
                self.busy = None
        with self._lock:
            if result.success:
                self.is_existing_entry = True
                self.notification = Notification("success", "Data saved successfully!")
            else:
                self.notification = Notification("error", f"Error saving: {result.error or 'Unknown error'}")
        _logger.info(
            "submit finished",
            extra={"event": "submit_succeeded" if result.success else "submit_rejected",
                   "date": payload["date"], "error": result.error},
        )
        return result

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "teacher": self.teacher.to_dict(),
                "className": self.teacher.assigned_class,
                "date": self.selected_date.isoformat(),
                "attendanceData": self.record.attendance_data(),
                "totals": {name: totals.to_dict() for name, totals in self.totals.items()},
                "isExistingEntry": self.is_existing_entry,
                "submitLabel": self.submit_label,
                "busy": self.busy,
                "focus": self.focus.id,
                "fieldSeq": dict(self._field_seq),
                "notification": self.notification.to_dict() if self.notification else None,
            }


def _completes_field(raw: Any, value: Count) -> bool:
    # Two digits typed, or a value that needs two digits.
    if value is EMPTY:
        return False
    digits = sum(ch.isdigit() for ch in str(raw))
    return value >= 10 or digits >= 2


class FormSessionStore:
    """Bounded in-process registry of form sessions keyed by an opaque id."""

    def __init__(self, capacity: int = 500):
        self.capacity = max(1, capacity)
        self._sessions: "OrderedDict[str, FormSession]" = OrderedDict()
        self._lock = threading.Lock()

    def add(self, session: FormSession) -> str:
        session_id = uuid.uuid4().hex
        with self._lock:
            self._sessions[session_id] = session
            while len(self._sessions) > self.capacity:
                self._sessions.popitem(last=False)
        return session_id

    def get(self, session_id: Optional[str]) -> Optional[FormSession]:
        if not session_id:
            return None
        with self._lock:
            session = self._sessions.get(session_id)
            if session is not None:
                self._sessions.move_to_end(session_id)
            return session


def open_form_session(
    client: AttendanceServiceClient,
    teacher: AuthenticatedTeacher,
    today: Callable[[], date] = date.today,
) -> FormSession:
    """Create the session for a fresh login and load today's record."""
    session = FormSession(teacher, client, today())
    session.load(session.selected_date)
    return session


__all__ = [
    "FetchTicket",
    "FieldUpdate",
    "FormSession",
    "FormSessionStore",
    "LoginError",
    "Notification",
    "SUBMIT_NEW_LABEL",
    "SUBMIT_UPDATE_LABEL",
    "SessionBusy",
    "login_teacher",
    "open_form_session",
]
