"""
Approval orchestrator.

Approving an application takes four ledger transactions that cannot be made
atomic:

1. authorize the escrow factory to pull the deposit (token assets only)
2. create the escrow and fund it with the converted price
3. mark the application approved on the listing
4. bind the escrow id to the listing

A crash or failed transaction between steps leaves the earlier ones applied.
Every call re-derives how far the saga got from ledger reads and continues
from there. Nothing is rolled back and nothing is retried automatically.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple

from checkpay.config import CommerceConfig
from checkpay.errors import (
    AlreadyApprovedError,
    ApplicationNotFoundError,
    ApprovalStepError,
    CollaboratorFailure,
    CommerceError,
    DuplicateEscrowError,
    EscrowNotFoundError,
    ListingClosedError,
    ListingNotFoundError,
    RateUnavailableError,
    UnauthorizedError,
)
from checkpay.ledger.base import EscrowParams, Ledger
from checkpay.ledger.events import LedgerEventType, TransactionReceipt
from checkpay.listings.models import Application, JobListing, parse_delivery_time
from checkpay.logging_config import log_approval_step
from checkpay.orchestrator.log import ApprovalLog, ApprovalLogEntry, InMemoryApprovalLog
from checkpay.orchestrator.steps import STEP_COMPLETED, STEP_FAILED, STEP_SKIPPED, ApprovalStep
from checkpay.parties import same_party
from checkpay.pricing.normalizer import PriceNormalizer

logger = logging.getLogger(__name__)

# Errors a step wraps in ApprovalStepError; state and guard errors propagate as-is.
_WRAPPED_ERRORS = (CollaboratorFailure, RateUnavailableError)


@dataclass
class ApprovalProgress:
    """How far the saga got for one application, as read from the ledger."""

    job_id: int
    application_index: int
    escrow_id: Optional[str] = None
    escrow_application_index: Optional[int] = None
    approved_application_index: Optional[int] = None
    bound_escrow_id: Optional[str] = None

    @property
    def escrow_created(self) -> bool:
        return self.escrow_id is not None and self.escrow_application_index == self.application_index

    @property
    def application_approved(self) -> bool:
        return self.approved_application_index == self.application_index

    @property
    def escrow_bound(self) -> bool:
        return self.escrow_created and self.bound_escrow_id == self.escrow_id

    @property
    def completed_steps(self) -> List[ApprovalStep]:
        steps = []
        if self.escrow_created:
            steps += [ApprovalStep.AUTHORIZE_SPEND, ApprovalStep.CREATE_AND_FUND]
        if self.application_approved:
            steps.append(ApprovalStep.MARK_APPROVED)
        if self.escrow_bound:
            steps.append(ApprovalStep.BIND)
        return steps

    @property
    def next_step(self) -> Optional[ApprovalStep]:
        done = set(self.completed_steps)
        for step in ApprovalStep:
            if step not in done:
                return step
        return None

    @property
    def is_complete(self) -> bool:
        return self.next_step is None

    @property
    def is_degraded(self) -> bool:
        """Funds are escrowed but the listing doesn't point at them yet."""
        return self.escrow_created and not self.escrow_bound

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "application_index": self.application_index,
            "escrow_id": self.escrow_id,
            "completed_steps": [s.label for s in self.completed_steps],
            "next_step": self.next_step.label if self.next_step else None,
            "is_complete": self.is_complete,
            "is_degraded": self.is_degraded,
        }


@dataclass
class ApprovalResult:
    """Outcome of a successful ``approve_application`` call."""

    job_id: int
    application_index: int
    escrow_id: str
    settlement_asset: str
    deposited_amount: int
    executed_steps: List[ApprovalStep] = field(default_factory=list)
    skipped_steps: List[ApprovalStep] = field(default_factory=list)
    receipts: Dict[ApprovalStep, TransactionReceipt] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "application_index": self.application_index,
            "escrow_id": self.escrow_id,
            "settlement_asset": self.settlement_asset,
            "deposited_amount": str(self.deposited_amount),
            "executed_steps": [s.label for s in self.executed_steps],
            "skipped_steps": [s.label for s in self.skipped_steps],
            "transactions": {s.label: r.tx_hash for s, r in self.receipts.items()},
        }


class _StepTracker:
    """Collects step outcomes for one ``approve_application`` call."""

    def __init__(self, orchestrator: "ApprovalOrchestrator", job_id: int, application_index: int):
        self.orchestrator = orchestrator
        self.job_id = job_id
        self.application_index = application_index
        self.executed: List[ApprovalStep] = []
        self.skipped: List[ApprovalStep] = []
        self.receipts: Dict[ApprovalStep, TransactionReceipt] = {}

    def skip(self, step: ApprovalStep, detail: str) -> None:
        self.skipped.append(step)
        self.orchestrator._record(self.job_id, self.application_index, step, STEP_SKIPPED, detail)

    def done(self, step: ApprovalStep, receipt: TransactionReceipt, detail: Optional[str] = None) -> None:
        self.executed.append(step)
        self.receipts[step] = receipt
        self.orchestrator._record(
            self.job_id, self.application_index, step, STEP_COMPLETED, detail, receipt.tx_hash
        )

    def run(self, step: ApprovalStep, action: Callable[[], Any]) -> Any:
        """Run one collaborator call inside ``step``, wrapping its failures.

        A reverted receipt counts as a collaborator failure. Guard errors
        are re-raised as they are, tagged with the step they stopped.
        """
        try:
            result = action()
            if isinstance(result, TransactionReceipt):
                result.require_success(job_id=self.job_id, step=int(step))
            return result
        except _WRAPPED_ERRORS as e:
            self._failed(step, e)
            raise ApprovalStepError(self.job_id, int(step), e) from e
        except CommerceError as e:
            if e.step is None:
                e.step = int(step)
            self._failed(step, e)
            raise
        except Exception as e:
            self._failed(step, e)
            raise ApprovalStepError(self.job_id, int(step), e) from e

    def _failed(self, step: ApprovalStep, error: BaseException) -> None:
        self.orchestrator._record(
            self.job_id,
            self.application_index,
            step,
            STEP_FAILED,
            f"{type(error).__name__}: {error}",
        )


class ApprovalOrchestrator:
    """Runs the four-step approval saga against the ledger."""

    def __init__(
        self,
        ledger: Ledger,
        normalizer: PriceNormalizer,
        config: CommerceConfig,
        approval_log: Optional[ApprovalLog] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.ledger = ledger
        self.normalizer = normalizer
        self.config = config
        self.approval_log = approval_log if approval_log is not None else InMemoryApprovalLog()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # === Progress ===

    def _load(self, job_id: int, application_index: int) -> Tuple[JobListing, Application]:
        listing = self.ledger.get_listing(job_id)
        if listing is None:
            raise ListingNotFoundError(f"Listing {job_id} not found", job_id=job_id)
        if not 0 <= application_index < len(listing.applications):
            raise ApplicationNotFoundError(
                f"Application {application_index} not found for listing {job_id}",
                job_id=job_id,
            )
        return listing, listing.applications[application_index]

    def _read_progress(self, listing: JobListing, application_index: int) -> ApprovalProgress:
        progress = ApprovalProgress(
            job_id=listing.job_id,
            application_index=application_index,
            approved_application_index=listing.approved_application_index,
            bound_escrow_id=listing.escrow_ref,
        )
        escrow_id = self.ledger.find_escrow_for_job(listing.job_id)
        if escrow_id is not None:
            escrow = self.ledger.get_escrow(escrow_id)
            if escrow is None:
                raise EscrowNotFoundError(
                    f"Escrow {escrow_id} recorded for job {listing.job_id} is missing",
                    job_id=listing.job_id,
                    escrow_id=escrow_id,
                )
            progress.escrow_id = escrow_id
            progress.escrow_application_index = escrow.application_index
        return progress

    def derive_progress(self, job_id: int, application_index: int) -> ApprovalProgress:
        """Read saga progress from the ledger, rejecting conflicting state.

        Raises:
            DuplicateEscrowError: An escrow exists for a different application,
                or the listing is bound to a different escrow
            AlreadyApprovedError: A different application is approved
        """
        listing, _ = self._load(job_id, application_index)
        progress = self._read_progress(listing, application_index)

        if progress.escrow_id is not None and not progress.escrow_created:
            raise DuplicateEscrowError(
                f"Escrow {progress.escrow_id} already exists for job {job_id} "
                f"(application {progress.escrow_application_index})",
                job_id=job_id,
                escrow_id=progress.escrow_id,
            )
        if progress.bound_escrow_id is not None and progress.bound_escrow_id != progress.escrow_id:
            raise DuplicateEscrowError(
                f"Listing {job_id} is bound to escrow {progress.bound_escrow_id}",
                job_id=job_id,
                escrow_id=progress.bound_escrow_id,
            )
        if (
            progress.approved_application_index is not None
            and progress.approved_application_index != application_index
        ):
            raise AlreadyApprovedError(
                f"Application {progress.approved_application_index} is already approved "
                f"for listing {job_id}",
                job_id=job_id,
            )
        return progress

    def describe_progress(self, job_id: int, application_index: int) -> ApprovalProgress:
        """Read saga progress without judging it, for status displays."""
        listing, _ = self._load(job_id, application_index)
        return self._read_progress(listing, application_index)

    # === Saga ===

    def approve_application(self, job_id: int, application_index: int, actor_id: str) -> ApprovalResult:
        """Approve an application, resuming from wherever a previous call stopped.

        Args:
            job_id: Listing id
            application_index: Application to approve
            actor_id: Must be the listing's client

        Raises:
            UnauthorizedError: Actor is not the listing's client
            ListingClosedError: Listing is inactive and no escrow exists yet
            DuplicateEscrowError: Escrow already exists for another application
            AlreadyApprovedError: Another application is approved
            ApprovalStepError: A step failed; ``step`` says which
        """
        listing, application = self._load(job_id, application_index)
        if not same_party(actor_id, listing.client_id):
            raise UnauthorizedError(
                f"Only the client may approve applications for listing {job_id}",
                job_id=job_id,
            )

        progress = self.derive_progress(job_id, application_index)
        if not progress.escrow_created and not listing.is_active:
            raise ListingClosedError(f"Listing {job_id} is not active", job_id=job_id)

        tracker = _StepTracker(self, job_id, application_index)

        if progress.escrow_created:
            escrow_id = progress.escrow_id
            deposited_amount = self.ledger.get_escrow(escrow_id).deposited_amount
            tracker.skip(ApprovalStep.AUTHORIZE_SPEND, "escrow already funded")
            tracker.skip(ApprovalStep.CREATE_AND_FUND, f"escrow {escrow_id} already exists")
        else:
            deposited_amount = tracker.run(
                ApprovalStep.AUTHORIZE_SPEND,
                lambda: self.normalizer.convert(
                    Decimal(application.proposed_price_usd), listing.settlement_asset
                ),
            )
            self._authorize_spend(tracker, listing, deposited_amount)
            escrow_id = self._create_and_fund(tracker, listing, application, deposited_amount)

        if progress.application_approved:
            tracker.skip(ApprovalStep.MARK_APPROVED, "application already approved")
        else:
            receipt = tracker.run(
                ApprovalStep.MARK_APPROVED,
                lambda: self.ledger.mark_approved(job_id, application_index),
            )
            tracker.done(ApprovalStep.MARK_APPROVED, receipt)

        if progress.escrow_bound:
            tracker.skip(ApprovalStep.BIND, "listing already bound")
        else:
            receipt = tracker.run(
                ApprovalStep.BIND,
                lambda: self.ledger.bind_escrow(job_id, escrow_id),
            )
            tracker.done(ApprovalStep.BIND, receipt, f"escrow={escrow_id}")

        logger.info(
            f"Approved application {application_index} for job {job_id} | escrow={escrow_id} "
            f"| executed={[s.label for s in tracker.executed]}"
        )
        return ApprovalResult(
            job_id=job_id,
            application_index=application_index,
            escrow_id=escrow_id,
            settlement_asset=listing.settlement_asset,
            deposited_amount=deposited_amount,
            executed_steps=tracker.executed,
            skipped_steps=tracker.skipped,
            receipts=tracker.receipts,
        )

    def _authorize_spend(self, tracker: _StepTracker, listing: JobListing, amount: int) -> None:
        step = ApprovalStep.AUTHORIZE_SPEND
        asset = listing.settlement_asset
        if self.config.asset_registry.get(asset).is_native:
            tracker.skip(step, "native asset needs no allowance")
            return

        spender = self.config.escrow_factory_address
        allowance = tracker.run(
            step, lambda: self.ledger.get_allowance(listing.client_id, spender, asset)
        )
        if allowance >= amount:
            tracker.skip(step, f"allowance {allowance} covers {amount}")
            return

        receipt = tracker.run(
            step, lambda: self.ledger.authorize_spend(listing.client_id, spender, asset, amount)
        )
        tracker.done(step, receipt, f"amount={amount}")

    def _create_and_fund(
        self, tracker: _StepTracker, listing: JobListing, application: Application, amount: int
    ) -> str:
        step = ApprovalStep.CREATE_AND_FUND
        job_id = listing.job_id

        def guard_and_create() -> Tuple[TransactionReceipt, str]:
            existing = self.ledger.find_escrow_for_job(job_id)
            if existing is not None:
                raise DuplicateEscrowError(
                    f"Escrow {existing} already exists for job {job_id}",
                    job_id=job_id,
                    escrow_id=existing,
                    step=int(step),
                )
            params = EscrowParams(
                job_id=job_id,
                application_index=application.index,
                client_id=listing.client_id,
                freelancer_id=application.freelancer_id,
                final_price_usd=Decimal(application.proposed_price_usd),
                settlement_asset=listing.settlement_asset,
                deposited_amount=amount,
                cancellation_window_days=application.cancellation_window_days,
                estimated_delivery_at=parse_delivery_time(
                    application.estimated_delivery,
                    self._clock(),
                    self.config.default_delivery_days,
                ),
            )
            receipt = self.ledger.create_and_fund_escrow(params).require_success(
                job_id=job_id, step=int(step)
            )
            return receipt, receipt.require_event(LedgerEventType.ESCROW_CREATED).args["escrow_id"]

        receipt, escrow_id = tracker.run(step, guard_and_create)
        tracker.done(step, receipt, f"escrow={escrow_id} amount={amount}")
        return escrow_id

    def _record(
        self,
        job_id: int,
        application_index: int,
        step: ApprovalStep,
        outcome: str,
        detail: Optional[str] = None,
        tx_hash: Optional[str] = None,
    ) -> None:
        log_approval_step(job_id, int(step), outcome, detail)
        entry = ApprovalLogEntry(
            job_id=job_id,
            application_index=application_index,
            step=int(step),
            outcome=outcome,
            at=self._clock(),
            detail=detail,
            tx_hash=tx_hash,
        )
        try:
            self.approval_log.record(entry)
        except (OSError, ValueError) as e:
            # Audit log failures never fail a step.
            logger.error(f"Could not record step {int(step)} for job {job_id}: {e}")
