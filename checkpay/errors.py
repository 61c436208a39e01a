"""Error taxonomy for Checkpay.

Every error carries whatever context is known at the point it is raised
(job id, escrow id, saga step, checkpoint index) so the caller can resume or
report. Nothing in the core retries on its own; each retry may cost a
transaction fee, so retries are the caller's decision.
"""

from typing import Any, Dict, Optional


class CommerceError(Exception):
    """Base exception for all Checkpay errors."""

    def __init__(
        self,
        message: str,
        *,
        job_id: Optional[int] = None,
        escrow_id: Optional[str] = None,
        step: Optional[int] = None,
        checkpoint_index: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.job_id = job_id
        self.escrow_id = escrow_id
        self.step = step
        self.checkpoint_index = checkpoint_index

    @property
    def context(self) -> Dict[str, Any]:
        """Known identifiers for this failure, omitting the unknown ones."""
        ctx = {
            "job_id": self.job_id,
            "escrow_id": self.escrow_id,
            "step": self.step,
            "checkpoint_index": self.checkpoint_index,
        }
        return {k: v for k, v in ctx.items() if v is not None}

    def to_dict(self) -> Dict[str, Any]:
        return {"error": type(self).__name__, "message": self.message, **self.context}


# === Ordering and terminal-state violations ===


class InvalidStateError(CommerceError):
    """Operation not permitted in the current state."""

    pass


class OutOfOrderError(InvalidStateError):
    """Checkpoint submitted before its predecessor was approved."""

    pass


class AlreadyCompletedError(InvalidStateError):
    """Checkpoint already submitted and awaiting review."""

    pass


class AlreadyApprovedError(InvalidStateError):
    """Checkpoint or application already approved."""

    pass


class NotSubmittedError(InvalidStateError):
    """Checkpoint has no pending submission to review."""

    pass


class JobCancelledError(InvalidStateError):
    """Escrow has been cancelled; no further checkpoint operations."""

    pass


class CancellationWindowOpenError(InvalidStateError):
    """Cancellation attempted before the agreed window elapsed."""

    pass


class ListingClosedError(InvalidStateError):
    """Listing is inactive, expired, or already has an approved application."""

    pass


class InvalidCheckpointIndexError(InvalidStateError):
    """Checkpoint index outside 0..2."""

    pass


class DuplicateApplicationError(InvalidStateError):
    """Freelancer already applied to this listing."""

    pass


# === Input ===


class InvalidInputError(CommerceError):
    """Request arguments rejected before touching the ledger."""

    pass


# === Identity ===


class UnauthorizedError(CommerceError):
    """Acting party does not hold the role the operation requires."""

    pass


# === Pricing ===


class RateUnavailableError(CommerceError):
    """Oracle has no fresh rate for the asset."""

    pass


class UnknownAssetError(RateUnavailableError):
    """Asset symbol is not registered as a settlement asset."""

    pass


# === Saga guard ===


class DuplicateEscrowError(CommerceError):
    """An escrow already exists for this job."""

    pass


# === Collaborators ===


class CollaboratorFailure(CommerceError):
    """Ledger, store, or oracle failure. Always retryable by the caller."""

    pass


class InsufficientFundsError(CollaboratorFailure):
    """Ledger rejected a transfer for lack of balance or allowance."""

    pass


# === Lookups ===


class NotFoundError(CommerceError):
    """Requested record does not exist."""

    pass


class ListingNotFoundError(NotFoundError):
    pass


class ApplicationNotFoundError(NotFoundError):
    pass


class EscrowNotFoundError(NotFoundError):
    pass


# === Orchestration ===


class ApprovalStepError(CommerceError):
    """A step of the approval saga failed.

    ``step`` is the 1-based step index and ``cause`` the underlying
    collaborator error. Steps before ``step`` have been applied and will be
    skipped on retry.
    """

    def __init__(self, job_id: int, step: int, cause: BaseException):
        step_name = _step_name(step)
        super().__init__(
            f"Approval step {step} ({step_name}) failed for job {job_id}: {cause}",
            job_id=job_id,
            step=step,
            escrow_id=getattr(cause, "escrow_id", None),
        )
        self.cause = cause

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["cause"] = type(self.cause).__name__
        return data


def _step_name(step: int) -> str:
    # Imported lazily; the orchestrator package imports this module.
    from checkpay.orchestrator.steps import ApprovalStep

    try:
        return ApprovalStep(step).label
    except ValueError:
        return "unknown"
