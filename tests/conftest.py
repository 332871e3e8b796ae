"""
Shared pytest fixtures for the Customer Request Pipeline test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - sales / design / costing / admin: principals with header helpers
    - ManualTicker / ManualTimer: deterministic schedulers for the sync layer
"""

import pytest

from quote_pipeline import create_app
from quote_pipeline.auth import Principal
from quote_pipeline.models import db as _db


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Principals ───────────────────────────────────────────────────────────


ALICE = Principal(id="u-alice", name="Alice", role="sales")
BOB = Principal(id="u-bob", name="Bob", role="design")
CAROL = Principal(id="u-carol", name="Carol", role="costing")
GINA = Principal(id="u-gina", name="Gina", role="admin")


@pytest.fixture()
def sales():
    return ALICE


@pytest.fixture()
def design():
    return BOB


@pytest.fixture()
def costing():
    return CAROL


@pytest.fixture()
def admin():
    return GINA


def headers(principal):
    """Request headers identifying ``principal``."""
    return principal.to_headers()


# ── Deterministic schedulers ─────────────────────────────────────────────


class ManualTicker:
    """Ticker driven by ``tick()`` instead of a thread."""

    def __init__(self):
        self.interval = None
        self._callback = None

    @property
    def running(self):
        return self._callback is not None

    def start(self, interval, callback):
        if self._callback is None:
            self.interval = interval
            self._callback = callback

    def stop(self):
        self._callback = None

    def tick(self, times=1):
        for _ in range(times):
            if self._callback is not None:
                self._callback()


class ManualTimer:
    """``threading.Timer`` stand-in; ``fire()`` runs the function inline."""

    created = []

    def __init__(self, interval, function, args=None, kwargs=None):
        self.interval = interval
        self.function = function
        self.args = args or ()
        self.kwargs = kwargs or {}
        self.daemon = False
        self.started = False
        self.cancelled = False
        ManualTimer.created.append(self)

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        if self.started and not self.cancelled:
            self.function(*self.args, **self.kwargs)


@pytest.fixture()
def ticker():
    return ManualTicker()


@pytest.fixture()
def timers():
    """Fresh ManualTimer registry for one test."""
    ManualTimer.created = []
    yield ManualTimer
    ManualTimer.created = []
