"""Application configuration module.

This module reads environment variables to configure the Flask application and
the connection to the remote attendance service. The service is a spreadsheet
backed web app (for example a Google Apps Script deployment) exposed under a
single URL; paste the deployment URL into ``ATTENDANCE_SERVICE_URL``. Any
variables defined in a local ``.env`` file are loaded when running locally.

"""

import os
from dotenv import load_dotenv


def _int_env(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, default))
    except ValueError:
        return default


class Config:
    """Base configuration class.

    Flask reads its own settings (``SECRET_KEY``) from this class, and
    :func:`app.create_app` reads the service and form-session settings from
    ``app.config`` so tests can override them per application.
    """

    # Load environment variables from a .env file if present.
    load_dotenv()

    # Signs the session cookie that links a browser to its form session.
    SECRET_KEY = os.environ.get('SECRET_KEY', 'change-this-secret-in-prod')

    # Remote attendance service: login, fetchData and saveData actions.
    ATTENDANCE_SERVICE_URL = os.environ.get('ATTENDANCE_SERVICE_URL', '')
    ATTENDANCE_SERVICE_TIMEOUT = _int_env('ATTENDANCE_SERVICE_TIMEOUT', 10)

    # Upper bound on concurrently held form sessions (least recently used go first).
    FORM_SESSION_CAPACITY = _int_env('FORM_SESSION_CAPACITY', 500)

    # How long the browser keeps a notification on screen.
    NOTIFICATION_DISMISS_MS = _int_env('NOTIFICATION_DISMISS_MS', 4000)
