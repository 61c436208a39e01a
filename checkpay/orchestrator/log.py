"""
Approval audit log.

Records every saga step outcome for operators. The orchestrator never reads
this log back to decide what to do; progress is always re-derived from the
ledger.
"""

import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from checkpay.logging_config import get_checkpay_home

logger = logging.getLogger(__name__)

# Maximum log file size (10MB) before it is refused on load
MAX_LOG_SIZE = 10 * 1024 * 1024


@dataclass(frozen=True)
class ApprovalLogEntry:
    """One saga step outcome."""

    job_id: int
    application_index: int
    step: int
    outcome: str
    at: datetime
    detail: Optional[str] = None
    tx_hash: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "application_index": self.application_index,
            "step": self.step,
            "outcome": self.outcome,
            "at": self.at.isoformat(),
            "detail": self.detail,
            "tx_hash": self.tx_hash,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ApprovalLogEntry":
        return cls(
            job_id=int(data["job_id"]),
            application_index=int(data["application_index"]),
            step=int(data["step"]),
            outcome=data["outcome"],
            at=datetime.fromisoformat(data["at"]),
            detail=data.get("detail"),
            tx_hash=data.get("tx_hash"),
        )


class ApprovalLog(Protocol):
    """Protocol for approval audit logs."""

    def record(self, entry: ApprovalLogEntry) -> None:
        ...

    def entries(self, job_id: Optional[int] = None) -> List[ApprovalLogEntry]:
        ...


class InMemoryApprovalLog:
    """Approval log kept in memory."""

    def __init__(self):
        self._entries: List[ApprovalLogEntry] = []
        self._lock = threading.Lock()

    def record(self, entry: ApprovalLogEntry) -> None:
        with self._lock:
            self._entries.append(entry)

    def entries(self, job_id: Optional[int] = None) -> List[ApprovalLogEntry]:
        with self._lock:
            if job_id is None:
                return list(self._entries)
            return [e for e in self._entries if e.job_id == job_id]


class FileApprovalLog:
    """Approval log persisted as one JSON file per job under the data dir."""

    def __init__(self, log_dir: Optional[Path] = None):
        self.log_dir = Path(log_dir) if log_dir else get_checkpay_home() / "approvals"
        self._lock = threading.Lock()

    def _path(self, job_id: int) -> Path:
        return self.log_dir / f"job-{job_id}.json"

    def _load(self, path: Path) -> List[Dict[str, Any]]:
        if not path.exists():
            return []
        try:
            file_size = path.stat().st_size
            if file_size > MAX_LOG_SIZE:
                logger.error(f"Approval log too large ({file_size} bytes, max {MAX_LOG_SIZE})")
                raise ValueError(f"Approval log too large ({file_size} bytes)")
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Could not load approval log {path}: {e}")
            return []
        return data if isinstance(data, list) else [data]

    def record(self, entry: ApprovalLogEntry) -> None:
        with self._lock:
            try:
                self.log_dir.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                logger.error(f"Cannot create approval log directory: {e}")
                raise ValueError(f"Cannot create approval log directory: {e}")

            path = self._path(entry.job_id)
            existing = self._load(path)
            existing.append(entry.to_dict())
            try:
                with open(path, "w", encoding="utf-8") as f:
                    json.dump(existing, f, indent=2)
            except OSError as e:
                logger.error(f"Cannot save approval log: {e}")
                raise ValueError(f"Cannot save approval log: {e}")

    def entries(self, job_id: Optional[int] = None) -> List[ApprovalLogEntry]:
        with self._lock:
            if job_id is not None:
                paths = [self._path(job_id)]
            elif self.log_dir.exists():
                paths = sorted(self.log_dir.glob("job-*.json"))
            else:
                paths = []
            result = []
            for path in paths:
                result.extend(ApprovalLogEntry.from_dict(d) for d in self._load(path))
            return result
