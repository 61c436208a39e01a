"""Pytest configuration and fixtures."""

import os
import secrets
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path

import pytest
from dotenv import load_dotenv

# Generate a unique test secret for this test run to prevent token forgery
_TEST_JWT_SECRET = f"test-only-{secrets.token_urlsafe(32)}"

# Local overrides (e.g. LOG_LEVEL) without touching the real .env
load_dotenv(Path(__file__).parent / ".env.test")
os.environ.setdefault("JWT_SECRET_KEY", _TEST_JWT_SECRET)
os.environ.setdefault("DEBUG", "true")

from app.auth import create_access_token  # noqa: E402
from app.config import get_settings  # noqa: E402
from app.dependencies import build_services, get_services  # noqa: E402
from app.main import app  # noqa: E402
from app.rate_limit import limiter  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from checkpay.config import CommerceConfig  # noqa: E402
from checkpay.ledger import InMemoryLedger  # noqa: E402
from checkpay.orchestrator import InMemoryApprovalLog  # noqa: E402
from checkpay.pricing import StaticPriceOracle  # noqa: E402
from checkpay.store import InMemoryContentStore  # noqa: E402

CLIENT = "0xc11e000000000000000000000000000000000001"
FREELANCER = "0xf4ee000000000000000000000000000000000002"
STRANGER = "0x5742000000000000000000000000000000000004"
ONE_TOKEN = 10**18


class MutableClock:
    """Clock starting at real time that tests move forward by hand."""

    def __init__(self):
        self.now = datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def no_rate_limits(monkeypatch):
    """Route limits are per client IP; every test request shares one."""
    monkeypatch.setattr(limiter, "enabled", False)


@pytest.fixture
def clock():
    return MutableClock()


@pytest.fixture
def oracle(clock):
    oracle = StaticPriceOracle(clock=clock)
    oracle.set_rate("FXRP", Decimal("2.50"))
    return oracle


@pytest.fixture
def services(clock, oracle):
    """Fresh core services over an in-memory ledger, with a funded client."""
    config = CommerceConfig()
    ledger = InMemoryLedger(config, clock=clock)
    ledger.mint(CLIENT, "testUSDT", 1_000_000 * ONE_TOKEN)
    ledger.mint(CLIENT, "FXRP", 1_000_000 * 10**6)
    return build_services(
        config=config,
        ledger=ledger,
        oracle=oracle,
        content_store=InMemoryContentStore(),
        approval_log=InMemoryApprovalLog(),
        clock=clock,
    )


@pytest.fixture
def client(services):
    """Create a test client."""
    app.dependency_overrides[get_services] = lambda: services
    yield TestClient(app)
    app.dependency_overrides.pop(get_services, None)


def _headers(party_id: str) -> dict:
    token = create_access_token(party_id, get_settings())
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def client_headers():
    """Auth headers for the listing's client."""
    return _headers(CLIENT)


@pytest.fixture
def freelancer_headers():
    return _headers(FREELANCER)


@pytest.fixture
def stranger_headers():
    return _headers(STRANGER)


@pytest.fixture
def parties():
    return {"client": CLIENT, "freelancer": FREELANCER, "stranger": STRANGER}


@pytest.fixture
def create_job(client, client_headers, clock):
    """Post a listing through the API; returns the response body."""

    def _create(settlement_asset="testUSDT", **overrides):
        body = {
            "title": "Landing page",
            "description": "One page, responsive",
            "deadline": (clock() + timedelta(days=14)).isoformat(),
            "min_price_usd": "100",
            "max_price_usd": "500",
            "settlement_asset": settlement_asset,
        }
        body.update(overrides)
        response = client.post("/jobs", json=body, headers=client_headers)
        assert response.status_code == 201, response.text
        return response.json()

    return _create


@pytest.fixture
def apply(client, freelancer_headers):
    def _apply(job_id, headers=None, **overrides):
        body = {
            "proposed_price_usd": "300",
            "cancellation_window": 7,
            "estimated_delivery": "2 weeks",
        }
        body.update(overrides)
        return client.post(
            f"/jobs/{job_id}/applications", json=body, headers=headers or freelancer_headers
        )

    return _apply


@pytest.fixture
def approved_job(create_job, apply, client, client_headers):
    """Listing with an approved $300 testUSDT application; returns the approval body."""
    job = create_job()
    assert apply(job["job_id"]).status_code == 201
    response = client.post(f"/jobs/{job['job_id']}/applications/0/approve", headers=client_headers)
    assert response.status_code == 200, response.text
    return response.json()
