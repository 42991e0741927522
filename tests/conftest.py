import datetime as dt
import os
import sys
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlmodel import SQLModel, Session, create_engine
from sqlalchemy.pool import StaticPool

ROOT_DIR = os.path.dirname(os.path.dirname(__file__))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

# Keep app start-up off the developer's database file.
os.environ.setdefault("DATABASE_URL", "sqlite://")

from budget import BudgetEvaluator  # noqa: E402
from categories import seed_default_categories  # noqa: E402
from clock import ManualClock  # noqa: E402
from main import app, get_budget_evaluator, get_clock, get_session  # noqa: E402
from models import Transaction  # noqa: E402


test_engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
DBSession = Session

NOW = dt.datetime(2024, 12, 15, 12, 0, 0)


def make_tx(amount, type_="expense", category_id="food", date=None, source="manual",
            description=None, merchant=None, tags=None, id=None):
    """Build an unsaved Transaction for pure-function tests."""
    kwargs = {}
    if id is not None:
        kwargs["id"] = id
    return Transaction(
        type=type_,
        amount=Decimal(str(amount)),
        category_id=category_id,
        description=description,
        merchant=merchant,
        date=date or dt.datetime(2024, 12, 2, 10, 0),
        source=source,
        tags=tags or [],
        **kwargs,
    )


@pytest.fixture
def clock():
    return ManualClock(NOW)


@pytest.fixture
def evaluator(clock):
    return BudgetEvaluator(clock, cooldown_seconds=3600)


OWNER = {"username": "ledger_owner", "password": "OwnerPass123!"}


def login_headers(test_client, username, password):
    """Register (if needed) and log in; return the bearer header."""
    test_client.post("/auth/register", json={"username": username, "password": password})
    resp = test_client.post("/auth/login", json={"username": username, "password": password})
    assert resp.status_code == 200, resp.text
    return {"Authorization": f"Bearer {resp.json()['access_token']}"}


@pytest.fixture(scope="function")
def client(clock, evaluator):
    """Return a TestClient wired to a fresh in-memory database for each test.

    The client is logged in as OWNER, so /api routes see that user.
    """
    SQLModel.metadata.drop_all(test_engine)
    SQLModel.metadata.create_all(test_engine)
    with DBSession(test_engine) as session:
        seed_default_categories(session)

    def override_get_session():
        with DBSession(test_engine) as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_budget_evaluator] = lambda: evaluator

    with TestClient(app) as test_client:
        test_client.headers.update(login_headers(test_client, **OWNER))
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture
def auth_helpers(client):
    """
    Common auth utilities shared across test modules.
    Provides register/login helpers and a token helper.
    """

    def session_factory():
        with DBSession(test_engine) as session:
            yield session

    def register_user(username: str, password: str):
        return client.post("/auth/register", json={"username": username, "password": password})

    def login_user(username: str, password: str):
        return client.post("/auth/login", json={"username": username, "password": password})

    def get_token(username: str, password: str) -> str:
        res_reg = register_user(username, password)
        assert res_reg.status_code in (200, 201, 400)
        res_login = login_user(username, password)
        assert res_login.status_code == 200
        data = res_login.json()
        assert "access_token" in data
        return data["access_token"]

    def auth_headers(token: str) -> dict:
        return {"Authorization": f"Bearer {token}"}

    return {
        "register_user": register_user,
        "login_user": login_user,
        "get_token": get_token,
        "auth_headers": auth_headers,
        "session_factory": session_factory,
    }
