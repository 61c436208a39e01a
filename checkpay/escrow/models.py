"""
Escrow unit and checkpoint state machine.

One escrow unit exists per approved application. It holds the deposit and
three checkpoint slots paying out 10%, 35% and 55% of the deposit.

Per checkpoint: pending -> submitted -> approved (terminal, paid), or
submitted -> pending again after a rejection. Per escrow: active ->
cancelled (terminal), independent of checkpoint progress.

The same rules run in two places: the checkpoint workflow validates against
a fresh read before sending a transaction, and the ledger applies them when
the transaction lands. Both go through the methods below.
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from checkpay.errors import (
    AlreadyApprovedError,
    AlreadyCompletedError,
    CancellationWindowOpenError,
    InvalidCheckpointIndexError,
    InvalidStateError,
    JobCancelledError,
    NotSubmittedError,
    OutOfOrderError,
    UnauthorizedError,
)
from checkpay.parties import same_party
from checkpay.store.deliverables import DeliverableRef

CHECKPOINT_COUNT = 3
CHECKPOINT_SHARES: Tuple[int, ...] = (10, 35, 55)

ROLE_CLIENT = "client"
ROLE_FREELANCER = "freelancer"


def payout_schedule(deposited_amount: int) -> Tuple[int, ...]:
    """Split a deposit into per-checkpoint payouts.

    Every checkpoint but the last gets ``floor(amount * share / 100)``; the
    last gets whatever remains, so the payouts always sum to the deposit.
    """
    if deposited_amount < 0:
        raise ValueError("Deposited amount cannot be negative")
    payouts = [deposited_amount * share // 100 for share in CHECKPOINT_SHARES[:-1]]
    payouts.append(deposited_amount - sum(payouts))
    return tuple(payouts)


class CheckpointState(Enum):
    """Derived checkpoint state."""

    PENDING = "pending"
    SUBMITTED = "submitted"
    APPROVED = "approved"


@dataclass
class Checkpoint:
    """One milestone slot of an escrow unit."""

    index: int
    is_completed: bool = False
    is_approved: bool = False
    deliverable: Optional[DeliverableRef] = None
    submitted_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    released_amount: int = 0

    @property
    def state(self) -> CheckpointState:
        if self.is_approved:
            return CheckpointState.APPROVED
        if self.is_completed:
            return CheckpointState.SUBMITTED
        return CheckpointState.PENDING

    @property
    def share(self) -> int:
        return CHECKPOINT_SHARES[self.index]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "state": self.state.value,
            "share_percent": self.share,
            "is_completed": self.is_completed,
            "is_approved": self.is_approved,
            "deliverable": self.deliverable.encode() if self.deliverable else None,
            "submitted_at": self.submitted_at.isoformat() if self.submitted_at else None,
            "approved_at": self.approved_at.isoformat() if self.approved_at else None,
            "released_amount": str(self.released_amount),
        }


def _default_checkpoints() -> List[Checkpoint]:
    return [Checkpoint(index=i) for i in range(CHECKPOINT_COUNT)]


@dataclass
class EscrowUnit:
    """A funded escrow for one approved application.

    Attributes:
        escrow_id: Ledger identifier of the escrow
        job_id: Listing this escrow belongs to
        application_index: Approved application within the listing
        client_id: Depositor; approves, rejects, may cancel
        freelancer_id: Payee; submits, may cancel
        final_price_usd: Agreed USD price (the application's proposal)
        settlement_asset: Asset symbol the deposit is held in
        deposited_amount: Base units deposited, fixed at deposit time
        cancellation_window_days: Days after funding before cancel is allowed
        estimated_delivery_at: Parsed from the application's estimate
        funded_at: When the deposit landed
        payout_schedule: Per-checkpoint payouts, computed once from the deposit
    """

    escrow_id: str
    job_id: int
    application_index: int
    client_id: str
    freelancer_id: str
    final_price_usd: Decimal
    settlement_asset: str
    deposited_amount: int
    cancellation_window_days: int
    estimated_delivery_at: datetime
    funded_at: datetime
    payout_schedule: Tuple[int, ...] = ()
    checkpoints: List[Checkpoint] = field(default_factory=_default_checkpoints)
    is_cancelled: bool = False
    cancelled_at: Optional[datetime] = None
    total_released: int = 0
    refunded_amount: int = 0

    def __post_init__(self):
        if self.deposited_amount < 0:
            raise ValueError("Deposited amount cannot be negative")
        if Decimal(self.final_price_usd) <= 0:
            raise ValueError("Final price must be positive")
        if self.cancellation_window_days < 0:
            raise ValueError("Cancellation window cannot be negative")
        if same_party(self.client_id, self.freelancer_id):
            raise ValueError("Client and freelancer must be different parties")
        if not self.payout_schedule:
            self.payout_schedule = payout_schedule(self.deposited_amount)
        if len(self.payout_schedule) != CHECKPOINT_COUNT:
            raise ValueError(f"Payout schedule must have {CHECKPOINT_COUNT} entries")
        if sum(self.payout_schedule) != self.deposited_amount:
            raise ValueError("Payout schedule must sum to the deposited amount")
        if len(self.checkpoints) != CHECKPOINT_COUNT:
            raise ValueError(f"Escrow must have exactly {CHECKPOINT_COUNT} checkpoints")

    # === Derived state ===

    @property
    def remaining_balance(self) -> int:
        return self.deposited_amount - self.total_released - self.refunded_amount

    @property
    def cancellation_opens_at(self) -> datetime:
        return self.funded_at + timedelta(days=self.cancellation_window_days)

    @property
    def is_complete(self) -> bool:
        return all(cp.is_approved for cp in self.checkpoints)

    @property
    def next_index(self) -> Optional[int]:
        """First checkpoint not yet approved, or None when all are."""
        for cp in self.checkpoints:
            if not cp.is_approved:
                return cp.index
        return None

    def can_cancel(self, now: datetime) -> bool:
        return not self.is_cancelled and now > self.cancellation_opens_at

    def role_of(self, actor_id: str) -> Optional[str]:
        if same_party(actor_id, self.client_id):
            return ROLE_CLIENT
        if same_party(actor_id, self.freelancer_id):
            return ROLE_FREELANCER
        return None

    # === Guards ===

    def authorize(self, actor_id: str, *roles: str) -> str:
        """Return the actor's role, or raise if it isn't one of ``roles``."""
        role = self.role_of(actor_id)
        if role is None or role not in roles:
            raise UnauthorizedError(
                f"{actor_id} may not perform this action (requires {' or '.join(roles)})",
                job_id=self.job_id,
                escrow_id=self.escrow_id,
            )
        return role

    def checkpoint(self, index: int) -> Checkpoint:
        if not isinstance(index, int) or index < 0 or index >= CHECKPOINT_COUNT:
            raise InvalidCheckpointIndexError(
                f"Invalid checkpoint index {index} (0-{CHECKPOINT_COUNT - 1})",
                job_id=self.job_id,
                escrow_id=self.escrow_id,
                checkpoint_index=index if isinstance(index, int) else None,
            )
        return self.checkpoints[index]

    def _ensure_active(self, index: Optional[int] = None) -> None:
        if self.is_cancelled:
            raise JobCancelledError(
                f"Escrow {self.escrow_id} is cancelled",
                job_id=self.job_id,
                escrow_id=self.escrow_id,
                checkpoint_index=index,
            )

    def check_submit(self, index: int) -> Checkpoint:
        self._ensure_active(index)
        cp = self.checkpoint(index)
        if index > 0 and not self.checkpoints[index - 1].is_approved:
            raise OutOfOrderError(
                f"Checkpoint {index} requires checkpoint {index - 1} to be approved first",
                job_id=self.job_id,
                escrow_id=self.escrow_id,
                checkpoint_index=index,
            )
        if cp.is_completed or cp.is_approved:
            raise AlreadyCompletedError(
                f"Checkpoint {index} has already been submitted",
                job_id=self.job_id,
                escrow_id=self.escrow_id,
                checkpoint_index=index,
            )
        return cp

    def check_approve(self, index: int) -> Checkpoint:
        self._ensure_active(index)
        cp = self.checkpoint(index)
        if cp.is_approved:
            raise AlreadyApprovedError(
                f"Checkpoint {index} is already approved",
                job_id=self.job_id,
                escrow_id=self.escrow_id,
                checkpoint_index=index,
            )
        if not cp.is_completed:
            raise NotSubmittedError(
                f"Checkpoint {index} has not been submitted",
                job_id=self.job_id,
                escrow_id=self.escrow_id,
                checkpoint_index=index,
            )
        return cp

    def check_reject(self, index: int) -> Checkpoint:
        # Identical preconditions: a paid checkpoint can't be rejected either.
        return self.check_approve(index)

    def check_cancel(self, now: datetime) -> None:
        self._ensure_active()
        if now <= self.cancellation_opens_at:
            raise CancellationWindowOpenError(
                f"Cancellation is allowed after {self.cancellation_opens_at.isoformat()}",
                job_id=self.job_id,
                escrow_id=self.escrow_id,
            )

    # === Transitions ===

    def submit(self, index: int, deliverable: DeliverableRef, at: datetime) -> Checkpoint:
        cp = self.check_submit(index)
        cp.is_completed = True
        cp.deliverable = deliverable
        cp.submitted_at = at
        return cp

    def approve(self, index: int, at: datetime) -> int:
        """Approve a submitted checkpoint. Returns the amount released."""
        cp = self.check_approve(index)
        amount = self.payout_schedule[index]
        if self.total_released + amount > self.deposited_amount - self.refunded_amount:
            raise InvalidStateError(
                f"Release of {amount} would exceed the escrowed balance",
                job_id=self.job_id,
                escrow_id=self.escrow_id,
                checkpoint_index=index,
            )
        cp.is_approved = True
        cp.approved_at = at
        cp.released_amount = amount
        self.total_released += amount
        return amount

    def reject(self, index: int) -> Checkpoint:
        cp = self.check_reject(index)
        cp.is_completed = False
        cp.deliverable = None
        cp.submitted_at = None
        return cp

    def cancel(self, at: datetime) -> int:
        """Cancel the escrow. Returns the amount refunded to the client."""
        self.check_cancel(at)
        refund = self.remaining_balance
        self.is_cancelled = True
        self.cancelled_at = at
        self.refunded_amount += refund
        return refund

    # === Serialization ===

    def copy(self) -> "EscrowUnit":
        return copy.deepcopy(self)

    def to_dict(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        data = {
            "escrow_id": self.escrow_id,
            "job_id": self.job_id,
            "application_index": self.application_index,
            "client_id": self.client_id,
            "freelancer_id": self.freelancer_id,
            "final_price_usd": str(self.final_price_usd),
            "settlement_asset": self.settlement_asset,
            "deposited_amount": str(self.deposited_amount),
            "payout_schedule": [str(p) for p in self.payout_schedule],
            "cancellation_window_days": self.cancellation_window_days,
            "estimated_delivery_at": self.estimated_delivery_at.isoformat(),
            "funded_at": self.funded_at.isoformat(),
            "is_cancelled": self.is_cancelled,
            "cancelled_at": self.cancelled_at.isoformat() if self.cancelled_at else None,
            "total_released": str(self.total_released),
            "refunded_amount": str(self.refunded_amount),
            "remaining_balance": str(self.remaining_balance),
            "checkpoints": [cp.to_dict() for cp in self.checkpoints],
        }
        if now is not None:
            data["can_cancel"] = self.can_cancel(now)
        return data
