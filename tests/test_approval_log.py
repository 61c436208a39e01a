"""Tests for the approval audit log."""

import json
from datetime import datetime, timezone

import pytest

from checkpay.orchestrator import (
    ApprovalLogEntry,
    ApprovalOrchestrator,
    FileApprovalLog,
    InMemoryApprovalLog,
)
from checkpay.orchestrator.log import MAX_LOG_SIZE

AT = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def entry(job_id=1, step=1, outcome="completed", **kwargs):
    return ApprovalLogEntry(
        job_id=job_id, application_index=0, step=step, outcome=outcome, at=AT, **kwargs
    )


class TestApprovalLogEntry:
    def test_dict_round_trip(self):
        original = entry(detail="amount=5", tx_hash="0xabc")
        assert ApprovalLogEntry.from_dict(original.to_dict()) == original


class TestInMemoryApprovalLog:
    def test_filter_by_job(self):
        log = InMemoryApprovalLog()
        log.record(entry(job_id=1))
        log.record(entry(job_id=2))
        log.record(entry(job_id=1, step=2))

        assert [e.step for e in log.entries(1)] == [1, 2]
        assert len(log.entries()) == 3


class TestFileApprovalLog:
    def test_persists_per_job(self, tmp_path):
        log = FileApprovalLog(tmp_path)
        log.record(entry(job_id=1))
        log.record(entry(job_id=1, step=2, tx_hash="0xdef"))
        log.record(entry(job_id=2))

        assert (tmp_path / "job-1.json").exists()
        reopened = FileApprovalLog(tmp_path)
        assert [e.step for e in reopened.entries(1)] == [1, 2]
        assert reopened.entries(1)[1].tx_hash == "0xdef"
        assert len(reopened.entries()) == 3

    def test_default_directory(self, monkeypatch, tmp_path):
        monkeypatch.setenv("CHECKPAY_DATA_DIR", str(tmp_path))
        assert FileApprovalLog().log_dir == tmp_path / "approvals"

    def test_missing_directory(self, tmp_path):
        assert FileApprovalLog(tmp_path / "nope").entries() == []

    def test_corrupt_file_is_ignored(self, tmp_path):
        (tmp_path / "job-1.json").write_text("{not json")
        log = FileApprovalLog(tmp_path)

        assert log.entries(1) == []
        log.record(entry(job_id=1))
        assert len(log.entries(1)) == 1

    def test_oversized_file_refused(self, tmp_path):
        path = tmp_path / "job-1.json"
        path.write_text(json.dumps([]) + " " * (MAX_LOG_SIZE + 1))
        with pytest.raises(ValueError, match="too large"):
            FileApprovalLog(tmp_path).entries(1)

    def test_orchestrator_writes_file_log(
        self, tmp_path, ledger, normalizer, config, clock, make_listing, make_application, client_id
    ):
        log = FileApprovalLog(tmp_path)
        orchestrator = ApprovalOrchestrator(ledger, normalizer, config, approval_log=log, clock=clock)
        listing = make_listing()
        make_application(listing.job_id)

        orchestrator.approve_application(listing.job_id, 0, client_id)

        outcomes = [(e.step, e.outcome) for e in FileApprovalLog(tmp_path).entries(listing.job_id)]
        assert outcomes == [(1, "completed"), (2, "completed"), (3, "completed"), (4, "completed")]

    def test_unwritable_log_does_not_fail_approval(
        self, tmp_path, ledger, normalizer, config, clock, make_listing, make_application, client_id
    ):
        blocker = tmp_path / "file.txt"
        blocker.write_text("not a directory")
        log = FileApprovalLog(blocker / "approvals")
        orchestrator = ApprovalOrchestrator(ledger, normalizer, config, approval_log=log, clock=clock)
        listing = make_listing()
        make_application(listing.job_id)

        result = orchestrator.approve_application(listing.job_id, 0, client_id)

        assert len(result.executed_steps) == 4
        assert ledger.get_listing(listing.job_id).escrow_ref == result.escrow_id
        with pytest.raises(ValueError, match="directory"):
            log.record(entry())
