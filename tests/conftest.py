"""
Shared pytest fixtures for the Request Lifecycle Platform test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - program: Pre-created Program entity
    - principals: one Principal per global role
    - make_member: factory adding an active membership
    - auth_headers: factory building a Bearer header for a Principal
    - make_request: factory inserting a Request in a given status
    - FakeHTTPSession: stand-in for requests.Session in gateway tests
"""

import pytest

from reqflow import create_app
from reqflow.core.identifiers import new_id
from reqflow.core.roles import GlobalRole
from reqflow.middleware.principal import Principal, issue_token
from reqflow.models import db as _db
from reqflow.models.program import Program, ProgramMembership
from reqflow.models.request import Request


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    return create_app("testing")


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


# ── Domain fixtures ──────────────────────────────────────────────────────


@pytest.fixture()
def program() -> Program:
    p = Program(name="Vendor Onboarding", description="Test program", created_by=new_id())
    _db.session.add(p)
    _db.session.commit()
    return p


@pytest.fixture()
def principals() -> dict:
    """One principal per global role, keyed by role value."""
    return {
        role.value: Principal(id=new_id(), global_role=role, name=f"{role.value} user")
        for role in GlobalRole
    }


@pytest.fixture()
def make_member():
    """Factory: make_member(program, principal_or_user_id, role) → ProgramMembership."""

    def _make(program, who, role):
        user_id = who.id if isinstance(who, Principal) else who
        membership = ProgramMembership(
            user_id=user_id,
            program_id=program.id,
            role=role,
            is_active=True,
        )
        _db.session.add(membership)
        _db.session.commit()
        return membership

    return _make


@pytest.fixture()
def member_principals(program, principals, make_member) -> dict:
    """
    Principals with a matching program membership (manager, team_member,
    client). The admin has no membership.
    """
    for role in ("manager", "team_member", "client"):
        make_member(program, principals[role], role)
    return principals


@pytest.fixture()
def make_request():
    """Factory: make_request(program, created_by, status="draft", **kw) → Request."""

    def _make(program, created_by, status="draft", **kwargs):
        creator = created_by.id if isinstance(created_by, Principal) else created_by
        req = Request(
            program_id=program.id,
            title=kwargs.pop("title", "Access to reporting database"),
            description=kwargs.pop("description", ""),
            status=status,
            priority=kwargs.pop("priority", "medium"),
            fields=kwargs.pop("fields", {}),
            created_by=creator,
            **kwargs,
        )
        _db.session.add(req)
        _db.session.commit()
        return req

    return _make


@pytest.fixture()
def auth_headers(app):
    """Factory: auth_headers(principal) → {"Authorization": "Bearer ..."}."""

    def _headers(principal):
        token = issue_token(principal.id, principal.global_role.value, name=principal.name)
        return {"Authorization": f"Bearer {token}"}

    return _headers


# ── HTTP fakes ───────────────────────────────────────────────────────────


class FakeResponse:
    def __init__(self, status_code=200, text=""):
        self.status_code = status_code
        self.text = text


class FakeHTTPSession:
    """
    Minimal requests.Session replacement.

    ``outcomes`` is consumed one per call; each entry is a status code or an
    exception instance to raise. When exhausted, the last entry repeats.
    """

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes) or [200]
        self.calls = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.calls.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return FakeResponse(outcome, text="" if 200 <= outcome < 300 else "consumer error")


@pytest.fixture()
def fake_http():
    """Factory: fake_http(200, 500, requests.Timeout()) → FakeHTTPSession."""
    return FakeHTTPSession
