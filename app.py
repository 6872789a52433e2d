"""Flask application for recording daily class and MDM attendance counts.

A teacher logs in once; the remote attendance service tells us their name and
the class they are assigned to. From then on the browser edits a single
attendance record for that class through a :class:`form_session.FormSession`
held server-side. The pages are rendered from ``templates/`` and drive the
JSON API below with a small script.

Endpoints:

* ``GET /`` – the login page, or the attendance page once logged in.
* ``GET /health`` – liveness check.
* ``POST /api/login`` – ``{username, password}``; opens a form session for
  today's date.
* ``GET /api/attendance`` – current form state.
* ``POST /api/attendance/date`` – ``{date: YYYY-MM-DD}``; loads the record
  for that date (or a blank one).
* ``POST /api/attendance/field`` – ``{field, value, seq}``; one keystroke in a
  count field. The response says which field should have focus next, and
  ``stale`` when an older keystroke arrived after a newer one.
* ``POST /api/attendance/submit`` – create or update the record remotely.
* ``POST /api/attendance/clear`` – reset the form locally.
* ``POST /client-logs`` – browser-side error reports.

Errors are returned as problem-details JSON with the request id attached.

"""

from __future__ import annotations

import os
from datetime import date, datetime
from typing import Any, Callable, Dict, Optional

from flask import Flask, g, jsonify, render_template, request, session
from werkzeug.exceptions import BadRequest, HTTPException, Unauthorized

from app_logging import configure_logging, get_logger, merge_request_context
from attendance_client import AttendanceServiceClient, ServiceUnavailable
from client_log_middleware import init_client_log_ingestion
from config import Config
from correlation_id_middleware import init_correlation_id
from form_session import (
    FormSession,
    FormSessionStore,
    LoginError,
    SessionBusy,
    login_teacher,
    open_form_session,
)
from models import BLOCKS, CATEGORIES, GENDERS, InvalidCount, count_to_wire
from request_logging_middleware import init_request_logging

SESSION_KEY = 'form_session_id'
BLOCK_LABELS = {'classAttendance': 'Class Attendance', 'mdmAttendance': 'MDM Attendance'}

_logger = get_logger('app')


def _problem(status: int, title: str, detail: str, **extra: Any):
    body: Dict[str, Any] = {
        'type': 'about:blank',
        'title': title,
        'status': status,
        'detail': detail,
        'request_id': g.get('request_id'),
    }
    body.update(extra)
    response = jsonify(body)
    response.status_code = status
    response.mimetype = 'application/problem+json'
    return response


def _json_body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise BadRequest('Missing JSON payload')
    return data


def _parse_date(value: Any) -> date:
    try:
        return datetime.strptime(str(value), '%Y-%m-%d').date()
    except ValueError:
        raise BadRequest('Invalid date format, must be YYYY-MM-DD')


def create_app(
    service_client: Optional[AttendanceServiceClient] = None,
    today: Callable[[], date] = date.today,
) -> Flask:
    """Application factory used by both the server and tests.

    ``service_client`` replaces the HTTP client for the remote attendance
    service; tests pass an in-memory fake. ``today`` supplies the date a new
    form session starts on.
    """
    configure_logging()
    app = Flask(__name__, template_folder='templates', static_folder='static')
    app.config.from_object(Config)

    init_correlation_id(app)
    init_request_logging(app)
    init_client_log_ingestion(app)

    if service_client is None:
        service_client = AttendanceServiceClient(
            app.config['ATTENDANCE_SERVICE_URL'],
            timeout=app.config['ATTENDANCE_SERVICE_TIMEOUT'],
        )
    store = FormSessionStore(app.config['FORM_SESSION_CAPACITY'])
    app.extensions['attendance_service'] = service_client
    app.extensions['form_sessions'] = store

    def current_form() -> FormSession:
        form = store.get(session.get(SESSION_KEY))
        if form is None:
            raise Unauthorized('Log in to record attendance')
        merge_request_context(class_name=form.teacher.assigned_class)
        return form

    @app.route('/')
    def index() -> str:
        form = store.get(session.get(SESSION_KEY))
        if form is None:
            return render_template('login.html', dismiss_ms=app.config['NOTIFICATION_DISMISS_MS'])
        return render_template(
            'attendance.html',
            state=form.snapshot(),
            blocks=BLOCKS,
            block_labels=BLOCK_LABELS,
            categories=CATEGORIES,
            genders=GENDERS,
            dismiss_ms=app.config['NOTIFICATION_DISMISS_MS'],
        )

    @app.route('/health')
    def healthcheck():
        return jsonify({'status': 'ok'}), 200

    @app.route('/api/login', methods=['POST'])
    def api_login():
        data = request.get_json(silent=True) or {}
        try:
            teacher = login_teacher(
                service_client, str(data.get('username') or ''), str(data.get('password') or '')
            )
        except LoginError as exc:
            if exc.input_error:
                raise BadRequest(exc.message)
            raise Unauthorized(exc.message)
        form = open_form_session(service_client, teacher, today)
        session.clear()
        session[SESSION_KEY] = store.add(form)
        merge_request_context(class_name=teacher.assigned_class)
        _logger.info('teacher logged in', extra={'event': 'login_succeeded'})
        return jsonify(form.snapshot())

    @app.route('/api/attendance', methods=['GET'])
    def api_get_attendance():
        return jsonify(current_form().snapshot())

    @app.route('/api/attendance/date', methods=['POST'])
    def api_select_date():
        form = current_form()
        selected = _parse_date(_json_body().get('date'))
        applied = form.load(selected)
        state = form.snapshot()
        state['applied'] = applied
        return jsonify(state)

    @app.route('/api/attendance/field', methods=['POST'])
    def api_update_field():
        form = current_form()
        data = _json_body()
        field_id = data.get('field')
        seq = data.get('seq')
        if seq is not None and (isinstance(seq, bool) or not isinstance(seq, int)):
            raise BadRequest('seq must be an integer')
        try:
            update = form.update_field(str(field_id), data.get('value'), seq)
        except KeyError:
            raise BadRequest(f'Unknown field: {field_id}')
        except InvalidCount:
            raise BadRequest('Counts must be whole numbers between 0 and 99')
        state = form.snapshot()
        state.update(field=update.field.id, value=count_to_wire(update.value), advanced=update.advanced,
                     seq=update.seq, stale=update.stale)
        return jsonify(state)

    @app.route('/api/attendance/submit', methods=['POST'])
    def api_submit():
        form = current_form()
        try:
            result = form.submit()
        except ServiceUnavailable:
            return _problem(502, 'Bad Gateway', form.notification.message, state=form.snapshot())
        if not result.success:
            return _problem(422, 'Unprocessable Entity', form.notification.message, state=form.snapshot())
        return jsonify(form.snapshot())

    @app.route('/api/attendance/clear', methods=['POST'])
    def api_clear():
        form = current_form()
        form.clear()
        return jsonify(form.snapshot())

    @app.errorhandler(SessionBusy)
    def handle_busy(error: SessionBusy):
        return _problem(409, 'Conflict', f'Please wait: {error.operation} in progress')

    @app.errorhandler(HTTPException)
    def handle_http_error(error: HTTPException):
        return _problem(error.code or 500, error.name, error.description or error.name)

    return app


app = create_app()

if __name__ == '__main__':
    port = int(os.environ.get('PORT', 8000))
    app.run(host='0.0.0.0', port=port, debug=True)
