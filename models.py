# models.py
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

QUEUED = "queued"
RUNNING = "running"
COMPLETED = "completed"
CANCELLED = "cancelled"
STATES = (QUEUED, RUNNING, COMPLETED, CANCELLED)

SUCCEEDED = "succeeded"
FAILED = "failed"
UNKNOWN = "unknown"   # process gone, exit status never collected
OUTCOMES = (SUCCEEDED, FAILED, UNKNOWN)


def utcnow():
    return datetime.now(timezone.utc)


def parse_ts(value):
    return datetime.fromisoformat(value) if value else None


@dataclass
class Job:
    name: str
    command: str
    priority: int = 5
    shell: bool = False
    id: Optional[int] = None
    state: str = QUEUED   # queued | running | completed | cancelled
    outcome: Optional[str] = None
    exit_code: Optional[int] = None
    error: Optional[str] = None
    pid: Optional[int] = None
    log_path: Optional[str] = None
    submitted_at: str = field(default_factory=lambda: utcnow().isoformat())
    started_at: Optional[str] = None
    ended_at: Optional[str] = None
    duration_seconds: Optional[float] = None
    cancel_requested: bool = False

    @classmethod
    def from_row(cls, row):
        return cls(
            id=row["id"],
            name=row["name"],
            command=row["command"],
            priority=row["priority"],
            shell=bool(row["shell"]),
            state=row["state"],
            outcome=row["outcome"],
            exit_code=row["exit_code"],
            error=row["error"],
            pid=row["pid"],
            log_path=row["log_path"],
            submitted_at=row["submitted_at"],
            started_at=row["started_at"],
            ended_at=row["ended_at"],
            duration_seconds=row["duration_seconds"],
            cancel_requested=bool(row["cancel_requested"]),
        )


@dataclass(frozen=True)
class QueuedEntry:
    name: str
    priority: int
    submitted_at: str


@dataclass(frozen=True)
class ActiveEntry:
    name: str
    pid: int
    started_at: str
    elapsed_seconds: float
    liveness_error: Optional[str] = None  # set while the reaper cannot tell if it is alive


@dataclass(frozen=True)
class HistoryEntry:
    id: int
    ts: str
    job_name: Optional[str]
    event: str
    detail: Optional[str] = None
    exit_code: Optional[int] = None


@dataclass(frozen=True)
class StatusSnapshot:
    """Point-in-time view of the queue, the active set and the history tail."""
    taken_at: str
    max_concurrent: int
    queued: tuple
    active: tuple
    history: tuple
    counts: dict

    def to_dict(self):
        return {
            "taken_at": self.taken_at,
            "max_concurrent": self.max_concurrent,
            "queued": [vars(e) for e in self.queued],
            "active": [vars(e) for e in self.active],
            "history": [vars(e) for e in self.history],
            "counts": dict(self.counts),
        }


@dataclass
class RunSummary:
    ticks: int = 0
    admitted: int = 0
    retired: int = 0
    stopped_early: bool = False
