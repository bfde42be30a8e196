"""
Shared pytest fixtures for the TestMaster AI test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate, fresh in-memory state (autouse)
    - client: Flask test client (function-scoped)
    - fake_llm: scripted completion provider standing in for Gemini
    - make_user / auth_headers: provisioned users and their request headers
"""

import json

import pytest

from testmaster import create_app
from testmaster.ai.gateway import LLMProvider
from testmaster.ai.review import ReviewSessionStore
from testmaster.core.exceptions import ProviderError
from testmaster.models import db as _db
from testmaster.services.delete_confirmation import DeleteConfirmationService


class FakeProvider(LLMProvider):
    """Completion provider that replays queued responses and records prompts."""

    name = "fake"

    def __init__(self):
        self.responses = []
        self.prompts = []

    def queue(self, *responses):
        """Queue raw strings, dicts (sent as JSON) or exceptions (raised)."""
        for response in responses:
            self.responses.append(json.dumps(response) if isinstance(response, dict) else response)

    @property
    def calls(self) -> int:
        return len(self.prompts)

    def complete(self, prompt, model_name, *, api_key="", settings=None, timeout=60.0):
        self.prompts.append(prompt)
        if not self.responses:
            raise ProviderError("No scripted response left", provider=self.name)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


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
    """Per-test: app context, built-in registry config, empty review/confirmation state."""
    with app.app_context():
        app.extensions["testmaster.registry"].reset()
        app.extensions["testmaster.reviews"] = ReviewSessionStore(ttl_seconds=3600)
        app.extensions["testmaster.delete_confirmation"] = DeleteConfirmationService(ttl_seconds=120)
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture()
def fake_llm(app):
    """Route the default Gemini model to a scripted provider for one test."""
    gateway = app.extensions["testmaster.gateway"]
    original = gateway.get_provider("gemini")
    provider = FakeProvider()
    gateway.register_provider("gemini", provider)
    yield provider
    gateway.register_provider("gemini", original)


# ── Users ────────────────────────────────────────────────────────────────


@pytest.fixture()
def make_user(app):
    """Provision a user with a role and optional permission overrides."""
    storage = app.extensions["testmaster.storage"]

    def _make(user_id="tester-1", role="tester", **flags):
        storage.provision_user(user_id, email=f"{user_id}@example.com")
        storage.set_user_role(user_id, role)
        if flags:
            storage.set_user_permissions(user_id, flags)
        return user_id

    return _make


def auth_headers(user_id="tester-1"):
    return {"X-User-Id": user_id}


@pytest.fixture()
def tester(make_user):
    return make_user("tester-1")


@pytest.fixture()
def admin(make_user):
    return make_user("admin-1", role="admin")


@pytest.fixture()
def master(make_user):
    return make_user("master-1", role="master")


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def plan(client, tester):
    """Create and return a test plan owned by tester-1 via the API."""
    res = client.post(
        "/api/v1/plans",
        json={"title": "Checkout plan", "objective": "Verify checkout"},
        headers=auth_headers(tester),
    )
    assert res.status_code == 201
    return res.get_json()


@pytest.fixture()
def case(client, tester, plan):
    """Create and return a test case in ``plan``."""
    res = client.post(
        "/api/v1/cases",
        json={
            "title": "Pay with card",
            "plan_id": plan["id"],
            "priority": "high",
            "steps": [
                {"order": 1, "action": "Add item to cart", "expected_result": "Cart shows 1 item"},
                {"order": 2, "action": "Pay with a valid card", "expected_result": "Order confirmed"},
            ],
        },
        headers=auth_headers(tester),
    )
    assert res.status_code == 201
    return res.get_json()
