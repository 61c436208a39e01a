"""Approval saga steps."""

from enum import IntEnum


class ApprovalStep(IntEnum):
    """The four ordered steps of approving an application."""

    AUTHORIZE_SPEND = 1
    CREATE_AND_FUND = 2
    MARK_APPROVED = 3
    BIND = 4

    @property
    def label(self) -> str:
        return self.name.lower()


STEP_COMPLETED = "completed"
STEP_SKIPPED = "skipped"
STEP_FAILED = "failed"
