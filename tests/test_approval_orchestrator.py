"""Tests for the resumable approval saga.

Failures between steps are simulated with ``InMemoryLedger.fail_next``,
which raises before the ledger mutates anything.
"""

from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from decimal import Decimal

import pytest

from checkpay.errors import (
    AlreadyApprovedError,
    ApplicationNotFoundError,
    ApprovalStepError,
    CollaboratorFailure,
    DuplicateEscrowError,
    ListingClosedError,
    ListingNotFoundError,
    RateUnavailableError,
    UnauthorizedError,
)
from checkpay.ledger.events import RECEIPT_REVERTED, TransactionReceipt
from checkpay.orchestrator import ApprovalStep

ONE_TOKEN = 10**18
ALL_STEPS = [
    ApprovalStep.AUTHORIZE_SPEND,
    ApprovalStep.CREATE_AND_FUND,
    ApprovalStep.MARK_APPROVED,
    ApprovalStep.BIND,
]


@pytest.fixture
def job(make_listing, make_application):
    """Stablecoin listing with one $300 application."""

    def _job(settlement_asset="testUSDT", price="300"):
        listing = make_listing(settlement_asset=settlement_asset)
        make_application(listing.job_id, price=price)
        return listing.job_id

    return _job


class TestHappyPath:
    """A clean run executes all four steps in order."""

    def test_stablecoin_approval(self, job, orchestrator, ledger, client_id, freelancer_id):
        job_id = job()

        result = orchestrator.approve_application(job_id, 0, client_id)

        assert result.executed_steps == ALL_STEPS
        assert result.skipped_steps == []
        assert result.deposited_amount == 300 * ONE_TOKEN

        listing = ledger.get_listing(job_id)
        assert listing.escrow_ref == result.escrow_id
        assert listing.approved_application_index == 0

        escrow = ledger.get_escrow(result.escrow_id)
        assert escrow.freelancer_id == freelancer_id
        assert escrow.final_price_usd == Decimal("300")
        assert escrow.payout_schedule == (30 * ONE_TOKEN, 105 * ONE_TOKEN, 165 * ONE_TOKEN)
        assert ledger.get_balance(result.escrow_id, "testUSDT") == 300 * ONE_TOKEN

    def test_stablecoin_never_consults_oracle(self, job, orchestrator, oracle, client_id):
        orchestrator.approve_application(job(), 0, client_id)
        assert sum(oracle.calls.values()) == 0

    def test_token_deposit_uses_oracle_rate(self, job, orchestrator, ledger, client_id):
        result = orchestrator.approve_application(job("FXRP"), 0, client_id)

        assert result.deposited_amount == 120_000_000
        assert ledger.get_balance(result.escrow_id, "FXRP") == 120_000_000

    def test_allowance_consumed_by_deposit(self, job, orchestrator, ledger, config, client_id):
        orchestrator.approve_application(job(), 0, client_id)
        spender = config.escrow_factory_address
        assert ledger.get_allowance(client_id, spender, "testUSDT") == 0

    def test_escrow_terms_come_from_application(self, job, orchestrator, ledger, clock, client_id):
        result = orchestrator.approve_application(job(), 0, client_id)
        escrow = ledger.get_escrow(result.escrow_id)

        assert escrow.cancellation_window_days == 7
        assert escrow.funded_at == clock()
        assert escrow.estimated_delivery_at == clock() + timedelta(weeks=3)

    def test_result_to_dict(self, job, orchestrator, client_id):
        data = orchestrator.approve_application(job(), 0, client_id).to_dict()

        assert data["deposited_amount"] == str(300 * ONE_TOKEN)
        assert data["executed_steps"] == ["authorize_spend", "create_and_fund", "mark_approved", "bind"]
        assert set(data["transactions"]) == set(data["executed_steps"])
        assert all(tx.startswith("0x") for tx in data["transactions"].values())


class TestSkippedSteps:
    """Step 1 is skipped when no allowance is needed."""

    def test_native_asset_skips_authorization(self, job, orchestrator, ledger, client_id):
        result = orchestrator.approve_application(job("FLR"), 0, client_id)

        assert result.skipped_steps == [ApprovalStep.AUTHORIZE_SPEND]
        assert result.executed_steps == ALL_STEPS[1:]
        assert ledger.calls["authorize_spend"] == 0
        assert result.deposited_amount == 15_000 * ONE_TOKEN

    def test_existing_allowance_skips_authorization(self, job, orchestrator, ledger, config, client_id):
        job_id = job()
        ledger.authorize_spend(client_id, config.escrow_factory_address, "testUSDT", 10**30)

        result = orchestrator.approve_application(job_id, 0, client_id)

        assert result.skipped_steps == [ApprovalStep.AUTHORIZE_SPEND]
        assert ledger.calls["authorize_spend"] == 1

    def test_repeat_call_on_complete_saga_is_noop(self, job, orchestrator, ledger, client_id):
        job_id = job()
        first = orchestrator.approve_application(job_id, 0, client_id)

        second = orchestrator.approve_application(job_id, 0, client_id)

        assert second.executed_steps == []
        assert second.skipped_steps == ALL_STEPS
        assert second.escrow_id == first.escrow_id
        assert second.deposited_amount == first.deposited_amount
        assert ledger.calls["create_and_fund_escrow"] == 1


class TestResume:
    """A failed step leaves earlier steps applied; a retry continues from there."""

    def test_crash_after_funding_resumes_at_mark_approved(
        self, job, orchestrator, ledger, oracle, client_id
    ):
        job_id = job("FXRP")
        ledger.fail_next("mark_approved", CollaboratorFailure("node went away"))

        with pytest.raises(ApprovalStepError) as exc_info:
            orchestrator.approve_application(job_id, 0, client_id)

        error = exc_info.value
        assert error.step == 3
        assert error.job_id == job_id
        assert isinstance(error.cause, CollaboratorFailure)
        assert "mark_approved" in str(error)

        progress = orchestrator.describe_progress(job_id, 0)
        assert progress.escrow_created
        assert progress.next_step == ApprovalStep.MARK_APPROVED
        assert progress.is_degraded

        # A price move after funding must not rescale the deposit
        oracle.set_rate("FXRP", Decimal("5"))
        result = orchestrator.approve_application(job_id, 0, client_id)

        assert result.executed_steps == [ApprovalStep.MARK_APPROVED, ApprovalStep.BIND]
        assert result.skipped_steps == [ApprovalStep.AUTHORIZE_SPEND, ApprovalStep.CREATE_AND_FUND]
        assert result.escrow_id == progress.escrow_id
        assert result.deposited_amount == 120_000_000
        assert ledger.calls["create_and_fund_escrow"] == 1
        assert orchestrator.describe_progress(job_id, 0).is_complete

    def test_crash_before_bind_resumes_at_bind(self, job, orchestrator, ledger, client_id):
        job_id = job()
        ledger.fail_next("bind_escrow", CollaboratorFailure("timeout"))

        with pytest.raises(ApprovalStepError) as exc_info:
            orchestrator.approve_application(job_id, 0, client_id)
        assert exc_info.value.step == 4

        listing = ledger.get_listing(job_id)
        assert listing.approved_application_index == 0
        assert listing.escrow_ref is None

        result = orchestrator.approve_application(job_id, 0, client_id)
        assert result.executed_steps == [ApprovalStep.BIND]
        assert ledger.get_listing(job_id).escrow_ref == result.escrow_id

    def test_failed_funding_reuses_allowance(self, job, orchestrator, ledger, client_id):
        job_id = job()
        ledger.fail_next("create_and_fund_escrow", CollaboratorFailure("reverted"))

        with pytest.raises(ApprovalStepError) as exc_info:
            orchestrator.approve_application(job_id, 0, client_id)
        assert exc_info.value.step == 2
        assert orchestrator.describe_progress(job_id, 0).escrow_id is None

        result = orchestrator.approve_application(job_id, 0, client_id)

        assert result.skipped_steps == [ApprovalStep.AUTHORIZE_SPEND]
        assert result.executed_steps == ALL_STEPS[1:]
        assert ledger.calls["authorize_spend"] == 1

    def test_unexpected_error_is_wrapped(self, job, orchestrator, ledger, client_id):
        job_id = job()
        ledger.fail_next("bind_escrow", RuntimeError("boom"))

        with pytest.raises(ApprovalStepError) as exc_info:
            orchestrator.approve_application(job_id, 0, client_id)

        assert isinstance(exc_info.value.cause, RuntimeError)
        assert exc_info.value.to_dict()["cause"] == "RuntimeError"

    def test_reverted_transaction_fails_step(self, job, orchestrator, ledger, client_id, monkeypatch):
        job_id = job()
        reverted = TransactionReceipt(tx_hash="0xrev", block_number=1, status=RECEIPT_REVERTED)
        monkeypatch.setattr(ledger, "mark_approved", lambda *args: reverted)

        with pytest.raises(ApprovalStepError) as exc_info:
            orchestrator.approve_application(job_id, 0, client_id)

        assert exc_info.value.step == 3
        assert isinstance(exc_info.value.cause, CollaboratorFailure)
        assert "0xrev" in str(exc_info.value.cause)
        assert ledger.get_listing(job_id).escrow_ref is None

        monkeypatch.undo()
        result = orchestrator.approve_application(job_id, 0, client_id)
        assert result.executed_steps == [ApprovalStep.MARK_APPROVED, ApprovalStep.BIND]

    def test_guard_error_reports_step(self, job, orchestrator, ledger, client_id):
        job_id = job()
        ledger.fail_next("mark_approved", AlreadyApprovedError("approved concurrently", job_id=job_id))

        with pytest.raises(AlreadyApprovedError) as exc_info:
            orchestrator.approve_application(job_id, 0, client_id)

        assert exc_info.value.step == 3
        assert exc_info.value.to_dict()["step"] == 3

    def test_failed_steps_are_logged(self, job, orchestrator, ledger, approval_log, client_id):
        job_id = job()
        ledger.fail_next("mark_approved", CollaboratorFailure("node went away"))
        with pytest.raises(ApprovalStepError):
            orchestrator.approve_application(job_id, 0, client_id)

        entries = approval_log.entries(job_id)
        assert [(e.step, e.outcome) for e in entries] == [
            (1, "completed"),
            (2, "completed"),
            (3, "failed"),
        ]
        assert "node went away" in entries[-1].detail
        assert entries[1].tx_hash is not None


class TestPricingFailures:
    """A missing or stale rate stops the saga before any transaction."""

    def test_missing_rate(self, job, orchestrator, ledger, oracle, client_id):
        job_id = job("FXRP")
        oracle.clear("FXRP")

        with pytest.raises(ApprovalStepError) as exc_info:
            orchestrator.approve_application(job_id, 0, client_id)

        assert exc_info.value.step == 1
        assert isinstance(exc_info.value.cause, RateUnavailableError)
        assert ledger.calls["authorize_spend"] == 0
        assert ledger.calls["create_and_fund_escrow"] == 0

    def test_stale_rate(self, job, orchestrator, ledger, clock, client_id):
        job_id = job("FXRP")
        clock.advance(minutes=10)

        with pytest.raises(ApprovalStepError) as exc_info:
            orchestrator.approve_application(job_id, 0, client_id)

        assert isinstance(exc_info.value.cause, RateUnavailableError)
        assert ledger.find_escrow_for_job(job_id) is None


class TestGuards:
    def test_only_client_may_approve(self, job, orchestrator, freelancer_id):
        with pytest.raises(UnauthorizedError):
            orchestrator.approve_application(job(), 0, freelancer_id)

    def test_unknown_listing(self, orchestrator, client_id):
        with pytest.raises(ListingNotFoundError):
            orchestrator.approve_application(999, 0, client_id)

    def test_unknown_application(self, job, orchestrator, client_id):
        with pytest.raises(ApplicationNotFoundError):
            orchestrator.approve_application(job(), 5, client_id)

    def test_deactivated_listing(self, job, orchestrator, listing_service, client_id):
        job_id = job()
        listing_service.deactivate(job_id, client_id)

        with pytest.raises(ListingClosedError):
            orchestrator.approve_application(job_id, 0, client_id)

    def test_second_application_after_approval(
        self, job, make_application, orchestrator, client_id, other_freelancer_id
    ):
        job_id = job()
        make_application(job_id, freelancer_id=other_freelancer_id)
        orchestrator.approve_application(job_id, 0, client_id)

        with pytest.raises(DuplicateEscrowError):
            orchestrator.approve_application(job_id, 1, client_id)

    def test_conflict_after_partial_approval(
        self, job, make_application, orchestrator, ledger, client_id, other_freelancer_id
    ):
        """Escrow exists for application 0 even though it was never marked approved."""
        job_id = job()
        make_application(job_id, freelancer_id=other_freelancer_id)
        ledger.fail_next("mark_approved", CollaboratorFailure("node went away"))
        with pytest.raises(ApprovalStepError):
            orchestrator.approve_application(job_id, 0, client_id)

        with pytest.raises(DuplicateEscrowError):
            orchestrator.approve_application(job_id, 1, client_id)

    def test_derive_progress_fresh_application(self, job, orchestrator):
        progress = orchestrator.derive_progress(job(), 0)

        assert progress.completed_steps == []
        assert progress.to_dict()["next_step"] == "authorize_spend"
        assert not progress.is_degraded


class TestConcurrentApprovals:
    """Racing approvals on one listing leave exactly one approved application."""

    def test_at_most_one_approval(self, make_listing, make_application, orchestrator, ledger, client_id):
        listing = make_listing()
        freelancers = [f"0xf4ee00000000000000000000000000000000001{i}" for i in range(6)]
        for freelancer in freelancers:
            make_application(listing.job_id, freelancer_id=freelancer, price="300")

        def attempt(index):
            try:
                return orchestrator.approve_application(listing.job_id, index, client_id)
            except (DuplicateEscrowError, AlreadyApprovedError) as e:
                return e

        with ThreadPoolExecutor(max_workers=len(freelancers)) as pool:
            outcomes = list(pool.map(attempt, range(len(freelancers))))

        succeeded = [o for o in outcomes if not isinstance(o, Exception)]
        assert len(succeeded) == 1

        final = ledger.get_listing(listing.job_id)
        approved = [app for app in final.applications if app.is_approved]
        assert len(approved) == 1
        assert approved[0].index == succeeded[0].application_index
        assert final.escrow_ref == succeeded[0].escrow_id
        assert ledger.calls["create_and_fund_escrow"] >= 1
        assert ledger.get_balance(client_id, "testUSDT") == 1_000_000 * ONE_TOKEN - 300 * ONE_TOKEN
