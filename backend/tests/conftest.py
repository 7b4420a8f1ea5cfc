"""
Pytest fixtures for the APOS override engine.

Every test gets a fresh application on an in-memory database with the
default threshold rules seeded. Background workers are off in TestConfig:
tests drive the timeout sweeper and the notification dispatcher directly.
"""

import json
from decimal import Decimal

import bcrypt
import pytest

from apos_overrides import create_app
from apos_overrides.config import TestConfig
from apos_overrides.extensions import db
from apos_overrides.models import ApprovalRequest, User
from apos_overrides.services import approval_service, credential_service, rule_service, session_service
from apos_overrides.services.runtime import get_runtime
from apos_overrides.time_utils import utcnow


PASSWORD = "Password123!"
PIN = "4821"

# Low bcrypt cost keeps fixture setup fast; verification is cost-agnostic
_PASSWORD_HASH = bcrypt.hashpw(PASSWORD.encode("utf-8"), bcrypt.gensalt(rounds=4)).decode("utf-8")


def _fast_hash_pin(pin: str) -> str:
    return bcrypt.hashpw(pin.encode("utf-8"), bcrypt.gensalt(rounds=4)).decode("utf-8")


@pytest.fixture(autouse=True)
def fast_pin_hashing(monkeypatch):
    monkeypatch.setattr(credential_service, "hash_pin", _fast_hash_pin)


@pytest.fixture(scope='function')
def app():
    """Create application for testing."""
    app = create_app(TestConfig)

    with app.app_context():
        db.create_all()
        rule_service.seed_default_rules()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def runtime(app):
    return get_runtime()


# =============================================================================
# USERS
# =============================================================================


@pytest.fixture(scope='function')
def make_user(app):
    """Factory: make_user("lead2", "shift_lead")."""
    def _make(username, role="salesperson", display_name=None):
        user = User(
            username=username,
            display_name=display_name or username.replace("_", " ").title(),
            password_hash=_PASSWORD_HASH,
            role=role,
            created_at=utcnow(),
        )
        db.session.add(user)
        db.session.commit()
        return user
    return _make


@pytest.fixture(scope='function')
def salesperson(make_user):
    return make_user("sales1", "salesperson", "Sam Sales")


@pytest.fixture(scope='function')
def other_salesperson(make_user):
    return make_user("sales2", "salesperson", "Sky Sales")


@pytest.fixture(scope='function')
def shift_lead(make_user):
    return make_user("lead1", "shift_lead", "Lee Lead")


@pytest.fixture(scope='function')
def manager(make_user):
    return make_user("manager1", "manager", "Morgan Manager")


@pytest.fixture(scope='function')
def area_manager(make_user):
    return make_user("area1", "area_manager", "Avery Area")


@pytest.fixture(scope='function')
def admin(make_user):
    return make_user("admin1", "admin", "Ada Admin")


@pytest.fixture(scope='function')
def staff(salesperson, shift_lead, manager, area_manager, admin):
    """One user per role."""
    return {
        "salesperson": salesperson,
        "shift_lead": shift_lead,
        "manager": manager,
        "area_manager": area_manager,
        "admin": admin,
    }


# =============================================================================
# AUTH HELPERS
# =============================================================================


def auth_headers(token):
    """Build authorization headers."""
    return {"Authorization": f"Bearer {token}"}


def get_auth_token(client, username, password=PASSWORD):
    """Login and return session token."""
    resp = client.post("/api/auth/login", json={
        "username": username,
        "password": password,
    })
    assert resp.status_code == 200, resp.get_json()
    return resp.get_json()["token"]


@pytest.fixture(scope='function')
def headers_for(app):
    """headers_for(user) -> Authorization headers for a fresh session."""
    def _headers(user):
        _, token = session_service.create_session(user.id)
        return auth_headers(token)
    return _headers


@pytest.fixture(scope='function')
def issue_pin(app):
    """issue_pin(user, level=None, pin=PIN, **kwargs) -> ManagerCredential."""
    def _issue(user, level=None, pin=PIN, **kwargs):
        return credential_service.set_pin(user.id, pin, level or user.role, **kwargs)
    return _issue


# =============================================================================
# REQUEST HELPERS
# =============================================================================


@pytest.fixture(scope='function')
def price_override(app):
    """
    price_override(requester, requested, original=100, cost=60, **context)

    Defaults model a $100 item that cost $60.
    """
    def _create(requester, requested, original="100", cost="60", **kwargs):
        return approval_service.create_price_override(
            requester.id,
            Decimal(str(original)),
            Decimal(str(requested)),
            None if cost is None else Decimal(str(cost)),
            **kwargs,
        ).request
    return _create


@pytest.fixture(scope='function')
def pending_request(price_override, salesperson, manager):
    """$85 on a $100 item: a 15% discount that needs a manager."""
    return price_override(salesperson, "85")


def set_columns(request, **values):
    """Write columns on a request row behind the ORM's back (clock simulation)."""
    db.session.query(ApprovalRequest).filter(ApprovalRequest.id == request.id).update(
        values, synchronize_session=False
    )
    db.session.commit()


@pytest.fixture(scope='function')
def backdate(app):
    return set_columns


# =============================================================================
# EVENTS
# =============================================================================


def parse_frame(frame):
    """Split one SSE frame into (event name, payload)."""
    name, data = None, None
    for line in frame.strip().splitlines():
        if line.startswith("event: "):
            name = line[len("event: "):]
        elif line.startswith("data: "):
            data = json.loads(line[len("data: "):])
    return name, data


@pytest.fixture(scope='function')
def subscribe(runtime):
    """subscribe(user) -> Subscriber registered with the connection manager."""
    def _subscribe(user):
        return runtime.connections.connect(user.id, user.role)
    return _subscribe


@pytest.fixture(scope='function')
def received(runtime):
    """received(subscriber) -> [(event, payload), ...] delivered so far."""
    def _received(subscriber):
        runtime.dispatcher.drain()
        events = []
        while True:
            frame = subscriber.next_frame(timeout=0)
            if frame is None:
                return events
            events.append(parse_frame(frame))
    return _received
