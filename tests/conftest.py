"""
Pytest fixtures and test configuration for Checkpay tests.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from checkpay.config import CommerceConfig
from checkpay.escrow import CheckpointWorkflow
from checkpay.ledger import InMemoryLedger
from checkpay.listings import ListingProjection, ListingService
from checkpay.orchestrator import ApprovalOrchestrator, InMemoryApprovalLog
from checkpay.pricing import PriceNormalizer, StaticPriceOracle

CLIENT = "0xc11e000000000000000000000000000000000001"
FREELANCER = "0xf4ee000000000000000000000000000000000002"
OTHER_FREELANCER = "0xf4ee000000000000000000000000000000000003"
STRANGER = "0x5742000000000000000000000000000000000004"

START = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
ONE_TOKEN = 10**18


class MutableClock:
    """Clock the tests move forward by hand."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def client_id():
    return CLIENT


@pytest.fixture
def freelancer_id():
    return FREELANCER


@pytest.fixture
def other_freelancer_id():
    return OTHER_FREELANCER


@pytest.fixture
def stranger_id():
    return STRANGER


@pytest.fixture
def clock():
    """Clock starting at a fixed instant."""
    return MutableClock(START)


@pytest.fixture
def config():
    """Default configuration: testUSDT (stable), FXRP (token), FLR (native)."""
    return CommerceConfig(max_rate_age_seconds=300)


@pytest.fixture
def oracle(clock):
    """Oracle with FXRP at $2.50 and FLR at $0.02."""
    oracle = StaticPriceOracle(clock=clock)
    oracle.set_rate("FXRP", Decimal("2.50"))
    oracle.set_rate("FLR", Decimal("0.02"))
    return oracle


@pytest.fixture
def normalizer(oracle, config, clock):
    return PriceNormalizer(oracle, config, clock=clock)


@pytest.fixture
def ledger(config, clock):
    """Ledger with the client holding plenty of every asset."""
    ledger = InMemoryLedger(config=config, clock=clock)
    for symbol in ("testUSDT", "FXRP", "FLR"):
        ledger.mint(CLIENT, symbol, 1_000_000 * ONE_TOKEN)
    return ledger


@pytest.fixture
def listing_service(ledger, config, clock):
    return ListingService(ledger, config=config, clock=clock)


@pytest.fixture
def projection(ledger):
    return ListingProjection(ledger)


@pytest.fixture
def approval_log():
    return InMemoryApprovalLog()


@pytest.fixture
def orchestrator(ledger, normalizer, config, approval_log, clock):
    return ApprovalOrchestrator(ledger, normalizer, config, approval_log=approval_log, clock=clock)


@pytest.fixture
def workflow(ledger, config, clock):
    return CheckpointWorkflow(ledger, config=config, clock=clock)


@pytest.fixture
def make_listing(listing_service, clock):
    """Factory posting a listing as CLIENT."""

    def _make(settlement_asset="testUSDT", **overrides):
        kwargs = dict(
            client_id=CLIENT,
            title="Logo design",
            description="Vector logo in three iterations",
            job_type="fixed",
            deadline=clock() + timedelta(days=14),
            min_price_usd="100",
            max_price_usd="500",
            settlement_asset=settlement_asset,
        )
        kwargs.update(overrides)
        return listing_service.create_listing(**kwargs)

    return _make


@pytest.fixture
def make_application(listing_service):
    """Factory applying to a listing."""

    def _apply(job_id, freelancer_id=FREELANCER, price="300", window=7, delivery="3 weeks"):
        return listing_service.apply(
            job_id=job_id,
            freelancer_id=freelancer_id,
            proposed_price_usd=price,
            cancellation_window_days=window,
            estimated_delivery=delivery,
        )

    return _apply


@pytest.fixture
def funded_escrow(make_listing, make_application, orchestrator):
    """Factory running the full approval saga; returns the approval result."""

    def _fund(settlement_asset="testUSDT", price="300", window=7):
        listing = make_listing(settlement_asset=settlement_asset)
        make_application(listing.job_id, price=price, window=window)
        return orchestrator.approve_application(listing.job_id, 0, CLIENT)

    return _fund
