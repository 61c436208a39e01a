"""Approval orchestration for Checkpay.

Modules:
- steps.py: The ordered saga steps
- saga.py: Resumable four-step approval of an application
- log.py: Audit log of step outcomes (in-memory or JSON files)
"""

from checkpay.orchestrator.log import (
    ApprovalLog,
    ApprovalLogEntry,
    FileApprovalLog,
    InMemoryApprovalLog,
)
from checkpay.orchestrator.saga import ApprovalOrchestrator, ApprovalProgress, ApprovalResult
from checkpay.orchestrator.steps import ApprovalStep

__all__ = [
    "ApprovalOrchestrator",
    "ApprovalProgress",
    "ApprovalResult",
    "ApprovalStep",
    "ApprovalLog",
    "ApprovalLogEntry",
    "InMemoryApprovalLog",
    "FileApprovalLog",
]
