# models.py
import json
from dataclasses import dataclass
from typing import Any, Optional

# Job states
QUEUED = "queued"
RUNNING = "running"
SUCCESS = "success"
FAILED = "failed"
JOB_STATUSES = (QUEUED, RUNNING, SUCCESS, FAILED)

# Import kinds (passed through to the processor untouched)
JOB_KINDS = ("full", "delta")

# Log levels
INFO = "info"
WARN = "warn"
ERROR = "error"
LOG_LEVELS = (INFO, WARN, ERROR)


class JobCancelled(Exception):
    """Raised by a processor once it has observed its cancellation signal."""


@dataclass
class Job:
    id: str
    source_id: str
    kind: str
    created_by: str
    status: str = QUEUED   # queued | running | success | failed
    total_items: int = 0
    processed_items: int = 0
    error_count: int = 0
    last_checkpoint: Optional[str] = None
    claimed_by: Optional[str] = None
    created_at: str = ""
    started_at: Optional[str] = None
    finished_at: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> "Job":
        return cls(
            id=row["id"],
            source_id=row["source_id"],
            kind=row["kind"],
            created_by=row["created_by"],
            status=row["status"],
            total_items=row["total_items"] or 0,
            processed_items=row["processed_items"] or 0,
            error_count=row["error_count"] or 0,
            last_checkpoint=row["last_checkpoint"],
            claimed_by=row["claimed_by"],
            created_at=row["created_at"],
            started_at=row["started_at"],
            finished_at=row["finished_at"],
        )


@dataclass
class JobLogEntry:
    id: int
    job_id: str
    level: str   # info | warn | error
    message: str
    details: Optional[Any] = None
    created_at: str = ""

    @classmethod
    def from_row(cls, row) -> "JobLogEntry":
        details = row["details_json"]
        return cls(
            id=row["id"],
            job_id=row["job_id"],
            level=row["level"],
            message=row["message"],
            details=json.loads(details) if details is not None else None,
            created_at=row["created_at"],
        )


@dataclass
class JobErrorRecord:
    id: int
    job_id: str
    stage: str
    error_message: str
    error_code: Optional[str] = None
    external_id: Optional[str] = None
    retry_count: int = 0
    resolved: bool = False
    created_at: str = ""

    @classmethod
    def from_row(cls, row) -> "JobErrorRecord":
        return cls(
            id=row["id"],
            job_id=row["job_id"],
            stage=row["stage"],
            error_message=row["error_message"],
            error_code=row["error_code"],
            external_id=row["external_id"],
            retry_count=row["retry_count"] or 0,
            resolved=bool(row["resolved"]),
            created_at=row["created_at"],
        )
