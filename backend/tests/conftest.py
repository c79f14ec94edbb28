"""
Pytest fixtures for reportflow backend tests.

Provides the application on in-memory SQLite, a per-test table wipe, a fresh
notification dispatcher per test, and an organization hierarchy:

    admin
    manager
      tl1 (team leader)
        tech1, tech2 (technicians), exec1 (technical executive)
      tl2 (team leader)
        tech3
    manager2
      tl3
        tech4
"""

from types import SimpleNamespace

import pytest
from reportflow import create_app
from reportflow.extensions import db
from reportflow.models import ServiceReport, User
from reportflow.services.notification_dispatcher import InMemoryRetryQueue, NotificationDispatcher
from reportflow.services.notification_service import CHANNEL_EXTENSION_KEY, DISPATCHER_EXTENSION_KEY
from reportflow.services.realtime import LiveChannel


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SECRET_KEY': 'test-secret',
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'NOTIFY_RETRY_WORKER_ENABLED': False,
        'NOTIFY_PUBLISH_TIMEOUT_SECONDS': 1,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema (Core deletes bypass the audit ORM guards)
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function', autouse=True)
def dispatcher(app):
    """Fresh live channel + dispatcher so retry queues never leak between tests."""
    previous = (app.extensions[CHANNEL_EXTENSION_KEY], app.extensions[DISPATCHER_EXTENSION_KEY])
    channel = LiveChannel()
    fresh = NotificationDispatcher(channel, retry_queue=InMemoryRetryQueue(), max_attempts=3, publish_timeout=1)
    app.extensions[CHANNEL_EXTENSION_KEY] = channel
    app.extensions[DISPATCHER_EXTENSION_KEY] = fresh

    yield fresh

    fresh.shutdown()
    app.extensions[CHANNEL_EXTENSION_KEY], app.extensions[DISPATCHER_EXTENSION_KEY] = previous


def _user(username: str, role: str, **owner) -> User:
    user = User(
        username=username,
        email=f"{username}@reportflow.test",
        full_name=username.replace("_", " ").title(),
        role=role,
        is_active=True,
        **owner,
    )
    db.session.add(user)
    db.session.flush()
    return user


@pytest.fixture(scope='function')
def org(db_session):
    """Create the organization hierarchy described in the module docstring."""
    admin = _user("admin", "admin")
    manager = _user("manager", "manager")
    manager2 = _user("manager2", "manager")
    tl1 = _user("tl1", "team_leader", manager_id=manager.id)
    tl2 = _user("tl2", "team_leader", manager_id=manager.id)
    tl3 = _user("tl3", "team_leader", manager_id=manager2.id)
    tech1 = _user("tech1", "technician", team_leader_id=tl1.id)
    tech2 = _user("tech2", "technician", team_leader_id=tl1.id)
    exec1 = _user("exec1", "technical_executive", team_leader_id=tl1.id)
    tech3 = _user("tech3", "technician", team_leader_id=tl2.id)
    tech4 = _user("tech4", "technician", team_leader_id=tl3.id)
    db_session.commit()

    return SimpleNamespace(
        admin=admin, manager=manager, manager2=manager2,
        tl1=tl1, tl2=tl2, tl3=tl3,
        tech1=tech1, tech2=tech2, exec1=exec1, tech3=tech3, tech4=tech4,
    )


@pytest.fixture(scope='function')
def report_details(app):
    """Domain fields covering REPORT_REQUIRED_FIELDS."""
    details = {field: f"value-{field}" for field in app.config["REPORT_REQUIRED_FIELDS"]}
    details.update({"complaint_no": "C-1001", "date": "2026-10-18"})
    return details


@pytest.fixture(scope='function')
def make_report(db_session, report_details):
    """Insert a report directly in the given status (bypasses the services)."""
    def _make(technician: User, status: str = "draft", **fields) -> ServiceReport:
        report = ServiceReport(
            technician_id=technician.id,
            status=status,
            details=dict(report_details),
            technician_signature=fields.pop("technician_signature", "sig-tech"),
            **fields,
        )
        db_session.add(report)
        db_session.commit()
        return report
    return _make


@pytest.fixture(scope='function')
def headers_for():
    """Upstream identity header for a user."""
    def _headers(user: User) -> dict:
        return {'X-Actor-Id': str(user.id)}
    return _headers
