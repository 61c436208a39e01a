"""Escrow subsystem for Checkpay.

Each approved application gets one escrow unit that holds the client's
deposit and releases it across three checkpoints (10% / 35% / 55%).

Modules:
- models.py: Escrow unit, checkpoints and the payout schedule
- workflow.py: Submit / approve / reject / cancel against the ledger
"""

from checkpay.escrow.models import (
    CHECKPOINT_COUNT,
    CHECKPOINT_SHARES,
    Checkpoint,
    CheckpointState,
    EscrowUnit,
    payout_schedule,
)
from checkpay.escrow.workflow import (
    CheckpointOutcome,
    CheckpointView,
    CheckpointWorkflow,
    EscrowStatusView,
)

__all__ = [
    "CHECKPOINT_COUNT",
    "CHECKPOINT_SHARES",
    "Checkpoint",
    "CheckpointState",
    "EscrowUnit",
    "payout_schedule",
    "CheckpointWorkflow",
    "CheckpointOutcome",
    "CheckpointView",
    "EscrowStatusView",
]
