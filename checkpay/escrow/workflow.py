"""
Checkpoint workflow.

Drives one escrow unit through its three checkpoints. Each operation reads
the escrow fresh from the ledger, checks the caller's role and the state
machine locally (so most mistakes fail without costing a transaction fee),
then sends the transaction. The ledger re-applies the same rules when the
transaction lands, so a concurrent change between the read and the write
still fails cleanly.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Union

from checkpay.config import CommerceConfig
from checkpay.errors import (
    CollaboratorFailure,
    CommerceError,
    EscrowNotFoundError,
    InvalidInputError,
    ListingNotFoundError,
)
from checkpay.escrow.models import ROLE_CLIENT, ROLE_FREELANCER, CheckpointState, EscrowUnit
from checkpay.logging_config import log_checkpoint_event
from checkpay.store.deliverables import DeliverableRef

if TYPE_CHECKING:
    from checkpay.ledger.base import Ledger
    from checkpay.ledger.events import TransactionReceipt

logger = logging.getLogger(__name__)

ACTION_SUBMIT = "submit"
ACTION_APPROVE = "approve"
ACTION_REJECT = "reject"
ACTION_CANCEL = "cancel"
ACTION_REVIEW = "review"


@dataclass
class CheckpointOutcome:
    """Result of a confirmed checkpoint or cancel transaction.

    ``amount`` is the payout released on approve, the refund on cancel, and
    zero otherwise. ``escrow`` is the state read back after confirmation.
    """

    escrow_id: str
    action: str
    receipt: TransactionReceipt
    escrow: EscrowUnit
    index: Optional[int] = None
    amount: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "escrow_id": self.escrow_id,
            "action": self.action,
            "index": self.index,
            "amount": str(self.amount),
            "tx_hash": self.receipt.tx_hash,
            "block_number": self.receipt.block_number,
        }


@dataclass
class CheckpointView:
    """Read-only view of one checkpoint."""

    index: int
    state: CheckpointState
    share_percent: int
    payout: int
    deliverable: Optional[DeliverableRef] = None
    submitted_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "state": self.state.value,
            "share_percent": self.share_percent,
            "payout": str(self.payout),
            "deliverable": self.deliverable.encode() if self.deliverable else None,
            "original_id": self.deliverable.original_id if self.deliverable else None,
            "preview_id": self.deliverable.preview_id if self.deliverable else None,
            "submitted_at": self.submitted_at.isoformat() if self.submitted_at else None,
            "approved_at": self.approved_at.isoformat() if self.approved_at else None,
        }


@dataclass
class EscrowStatusView:
    """Summary of an escrow for display and polling.

    ``next_index`` is the checkpoint the next action applies to and
    ``next_action`` who acts on it: ``submit`` (freelancer) or ``review``
    (client). Both are None once the escrow is complete or cancelled.
    """

    escrow_id: str
    job_id: int
    settlement_asset: str
    deposited_amount: int
    total_released: int
    remaining_balance: int
    is_cancelled: bool
    is_complete: bool
    can_cancel: bool
    cancellation_opens_at: datetime
    next_index: Optional[int] = None
    next_action: Optional[str] = None
    checkpoints: List[CheckpointView] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "escrow_id": self.escrow_id,
            "job_id": self.job_id,
            "settlement_asset": self.settlement_asset,
            "deposited_amount": str(self.deposited_amount),
            "total_released": str(self.total_released),
            "remaining_balance": str(self.remaining_balance),
            "is_cancelled": self.is_cancelled,
            "is_complete": self.is_complete,
            "can_cancel": self.can_cancel,
            "cancellation_opens_at": self.cancellation_opens_at.isoformat(),
            "next_index": self.next_index,
            "next_action": self.next_action,
            "checkpoints": [cp.to_dict() for cp in self.checkpoints],
        }


class CheckpointWorkflow:
    """Submit, approve, reject and cancel against an escrow unit."""

    def __init__(
        self,
        ledger: Ledger,
        config: Optional[CommerceConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.ledger = ledger
        self.config = config or CommerceConfig()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # === Reads ===

    def _read(self, escrow_id: str) -> EscrowUnit:
        escrow = self.ledger.get_escrow(escrow_id)
        if escrow is None:
            raise EscrowNotFoundError(f"Escrow {escrow_id} not found", escrow_id=escrow_id)
        return escrow

    def get_escrow(self, escrow_id: str) -> EscrowUnit:
        return self._read(escrow_id)

    def escrow_for_job(self, job_id: int) -> EscrowUnit:
        """Escrow bound to a listing.

        Raises:
            ListingNotFoundError: No such listing
            EscrowNotFoundError: The listing has no bound escrow yet
        """
        listing = self.ledger.get_listing(job_id)
        if listing is None:
            raise ListingNotFoundError(f"Listing {job_id} not found", job_id=job_id)
        if not listing.escrow_ref:
            raise EscrowNotFoundError(f"Listing {job_id} has no escrow bound", job_id=job_id)
        return self._read(listing.escrow_ref)

    def status(self, escrow_id: str) -> EscrowStatusView:
        escrow = self._read(escrow_id)
        now = self._clock()

        next_index = None
        next_action = None
        if not escrow.is_cancelled and escrow.next_index is not None:
            next_index = escrow.next_index
            pending = escrow.checkpoints[next_index]
            next_action = ACTION_REVIEW if pending.is_completed else ACTION_SUBMIT

        return EscrowStatusView(
            escrow_id=escrow.escrow_id,
            job_id=escrow.job_id,
            settlement_asset=escrow.settlement_asset,
            deposited_amount=escrow.deposited_amount,
            total_released=escrow.total_released,
            remaining_balance=escrow.remaining_balance,
            is_cancelled=escrow.is_cancelled,
            is_complete=escrow.is_complete,
            can_cancel=escrow.can_cancel(now),
            cancellation_opens_at=escrow.cancellation_opens_at,
            next_index=next_index,
            next_action=next_action,
            checkpoints=[
                CheckpointView(
                    index=cp.index,
                    state=cp.state,
                    share_percent=cp.share,
                    payout=escrow.payout_schedule[cp.index],
                    deliverable=cp.deliverable,
                    submitted_at=cp.submitted_at,
                    approved_at=cp.approved_at,
                )
                for cp in escrow.checkpoints
            ],
        )

    # === Transitions ===

    def submit(
        self,
        escrow_id: str,
        index: int,
        deliverable: Union[DeliverableRef, str],
        actor_id: str,
    ) -> CheckpointOutcome:
        """Submit a deliverable for checkpoint ``index``.

        Raises:
            UnauthorizedError: Actor is not the freelancer
            JobCancelledError: Escrow is cancelled
            OutOfOrderError: Previous checkpoint not yet approved
            AlreadyCompletedError: Checkpoint already submitted or approved
            InvalidInputError: Deliverable reference is malformed
        """
        escrow = self._read(escrow_id)
        escrow.authorize(actor_id, ROLE_FREELANCER)
        escrow.check_submit(index)
        if isinstance(deliverable, DeliverableRef):
            ref = deliverable
        else:
            try:
                ref = DeliverableRef.parse(deliverable)
            except ValueError as e:
                raise InvalidInputError(str(e), escrow_id=escrow_id, checkpoint_index=index) from e

        receipt = self._send(
            ACTION_SUBMIT,
            escrow_id,
            lambda: self.ledger.submit_checkpoint(escrow_id, index, ref.encode(), actor_id),
        )
        log_checkpoint_event(escrow_id, ACTION_SUBMIT, index, actor_id)
        return CheckpointOutcome(escrow_id, ACTION_SUBMIT, receipt, self._read(escrow_id), index)

    def approve(self, escrow_id: str, index: int, actor_id: str) -> CheckpointOutcome:
        """Approve checkpoint ``index`` and release its payout to the freelancer.

        Raises:
            UnauthorizedError: Actor is not the client
            JobCancelledError: Escrow is cancelled
            AlreadyApprovedError: Checkpoint already approved
            NotSubmittedError: Nothing submitted to approve
        """
        escrow = self._read(escrow_id)
        escrow.authorize(actor_id, ROLE_CLIENT)
        escrow.check_approve(index)

        receipt = self._send(
            ACTION_APPROVE,
            escrow_id,
            lambda: self.ledger.approve_checkpoint(escrow_id, index, actor_id),
        )
        after = self._read(escrow_id)
        amount = after.checkpoints[index].released_amount
        log_checkpoint_event(escrow_id, ACTION_APPROVE, index, actor_id, amount)
        return CheckpointOutcome(escrow_id, ACTION_APPROVE, receipt, after, index, amount)

    def reject(self, escrow_id: str, index: int, actor_id: str) -> CheckpointOutcome:
        """Send checkpoint ``index`` back to pending, discarding its deliverable.

        Raises:
            UnauthorizedError: Actor is not the client
            JobCancelledError: Escrow is cancelled
            AlreadyApprovedError: Checkpoint already approved and paid
            NotSubmittedError: Nothing submitted to reject
        """
        escrow = self._read(escrow_id)
        escrow.authorize(actor_id, ROLE_CLIENT)
        escrow.check_reject(index)

        receipt = self._send(
            ACTION_REJECT,
            escrow_id,
            lambda: self.ledger.reject_checkpoint(escrow_id, index, actor_id),
        )
        log_checkpoint_event(escrow_id, ACTION_REJECT, index, actor_id)
        return CheckpointOutcome(escrow_id, ACTION_REJECT, receipt, self._read(escrow_id), index)

    def cancel(self, escrow_id: str, actor_id: str) -> CheckpointOutcome:
        """Cancel the escrow and refund the remaining balance to the client.

        Raises:
            UnauthorizedError: Actor is neither client nor freelancer
            JobCancelledError: Already cancelled
            CancellationWindowOpenError: Window since funding not yet elapsed
        """
        escrow = self._read(escrow_id)
        escrow.authorize(actor_id, ROLE_CLIENT, ROLE_FREELANCER)
        escrow.check_cancel(self._clock())

        receipt = self._send(
            ACTION_CANCEL,
            escrow_id,
            lambda: self.ledger.cancel(escrow_id, actor_id),
        )
        after = self._read(escrow_id)
        refund = after.refunded_amount
        log_checkpoint_event(escrow_id, ACTION_CANCEL, actor=actor_id, amount=refund)
        return CheckpointOutcome(escrow_id, ACTION_CANCEL, receipt, after, amount=refund)

    def _send(self, action: str, escrow_id: str, call: Callable[[], TransactionReceipt]) -> TransactionReceipt:
        try:
            receipt = call()
        except CommerceError:
            raise
        except Exception as e:
            logger.error(f"Ledger {action} failed for escrow {escrow_id}: {e}")
            raise CollaboratorFailure(
                f"Ledger {action} failed for escrow {escrow_id}: {e}", escrow_id=escrow_id
            ) from e
        return receipt.require_success(escrow_id=escrow_id)
