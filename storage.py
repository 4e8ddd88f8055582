# storage.py
import logging
import os
import re
import shlex
import sqlite3
import threading
from contextlib import contextmanager

from errors import ConfigurationError, JobNotFoundError, SubmissionError
from models import (
    CANCELLED, COMPLETED, FAILED, OUTCOMES, QUEUED, RUNNING, STATES,
    ActiveEntry, HistoryEntry, Job, QueuedEntry, StatusSnapshot, parse_ts, utcnow,
)

logger = logging.getLogger(__name__)

DEFAULTS = {
    "max_concurrent": "3",
    "poll_interval": "5.0",
    "duration": "60",
    "log_dir": "scheduler_logs",
}

JOB_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
SQLITE_INT_MIN = -2 ** 63
SQLITE_INT_MAX = 2 ** 63 - 1


class Storage:
    """SQLite-backed job store: the queue, the active set and the history log.

    Queue and active set are the ``queued`` and ``running`` rows of the
    ``jobs`` table, so a job can never sit in both. ``history`` is insert-only.
    """

    def __init__(self, db_path="scheduler.db", log_dir=None):
        self.db_path = db_path
        # isolation_level=None: transactions are opened explicitly in transaction()
        self.conn = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None, timeout=10.0)
        self.conn.row_factory = sqlite3.Row
        self.lock = threading.RLock()

        # Better concurrency for a scheduler plus CLI/dashboard readers
        self.conn.execute("PRAGMA journal_mode=WAL;")
        self.conn.execute("PRAGMA synchronous=NORMAL;")

        self._init_schema()
        self.log_dir = log_dir or self.get_config("log_dir", DEFAULTS["log_dir"])

    def _init_schema(self):
        with self.transaction():
            self.conn.execute("""
            CREATE TABLE IF NOT EXISTS jobs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                command TEXT NOT NULL,
                priority INTEGER NOT NULL DEFAULT 5,
                shell INTEGER NOT NULL DEFAULT 0,
                state TEXT NOT NULL,
                outcome TEXT,
                exit_code INTEGER,
                error TEXT,
                pid INTEGER,
                log_path TEXT,
                submitted_at TEXT NOT NULL,
                started_at TEXT,
                ended_at TEXT,
                duration_seconds REAL,
                cancel_requested INTEGER NOT NULL DEFAULT 0
            )
            """)
            self.conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_state ON jobs (state, priority DESC, id)")
            self.conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_name ON jobs (name)")

            # History table (append-only)
            self.conn.execute("""
            CREATE TABLE IF NOT EXISTS history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                ts TEXT NOT NULL,
                job_name TEXT,
                event TEXT NOT NULL,
                detail TEXT,
                exit_code INTEGER
            )
            """)

            # Config table
            self.conn.execute("""
            CREATE TABLE IF NOT EXISTS config (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """)

    def close(self):
        self.conn.close()

    @contextmanager
    def transaction(self, immediate=True):
        """Run the block in one SQLite transaction; nested calls join the outer one."""
        with self.lock:
            if self.conn.in_transaction:
                yield self.conn
                return
            self.conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
            try:
                yield self.conn
            except BaseException:
                self.conn.execute("ROLLBACK")
                raise
            else:
                self.conn.execute("COMMIT")

    # ---------------- Config helpers ----------------
    def get_config(self, key, default=None):
        row = self.conn.execute("SELECT value FROM config WHERE key=?", (key,)).fetchone()
        return row["value"] if row else default

    def set_config(self, key, value):
        now = utcnow().isoformat()
        with self.transaction():
            self.conn.execute("""
                INSERT INTO config (key, value, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at
            """, (key, str(value), now))

    def list_config(self):
        return self.conn.execute("SELECT key, value, updated_at FROM config ORDER BY key").fetchall()

    def setting(self, key, cast=str):
        """Typed config value, falling back to DEFAULTS."""
        raw = self.get_config(key, DEFAULTS.get(key))
        if raw is None:
            raise ConfigurationError(f"config key '{key}' is not set")
        try:
            return cast(raw)
        except (TypeError, ValueError):
            raise ConfigurationError(f"config key '{key}' has invalid value {raw!r}") from None

    # ---------------- History ----------------
    def record_event(self, job_name, event, detail=None, exit_code=None):
        with self.transaction():
            self.conn.execute("""
                INSERT INTO history (ts, job_name, event, detail, exit_code)
                VALUES (?, ?, ?, ?, ?)
            """, (utcnow().isoformat(), job_name, event, detail, exit_code))

    def history(self, limit=20, job_name=None):
        """Most recent ``limit`` history rows, oldest first."""
        if job_name:
            rows = self.conn.execute(
                "SELECT * FROM history WHERE job_name=? ORDER BY id DESC LIMIT ?", (job_name, limit)
            ).fetchall()
        else:
            rows = self.conn.execute("SELECT * FROM history ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [HistoryEntry(**dict(r)) for r in reversed(rows)]

    def initialize(self):
        os.makedirs(self.log_dir, exist_ok=True)
        self.record_event(None, "initialized", f"log_dir={self.log_dir}")

    # ---------------- Submission ----------------
    def submit(self, name, command, priority=5, shell=False):
        if not name or not JOB_NAME_RE.match(name):
            raise SubmissionError(f"invalid job name {name!r} (letters, digits, '.', '_' and '-' only)")
        if not command or not command.strip():
            raise SubmissionError(f"job {name} has no command")
        if "\x00" in command:
            raise SubmissionError(f"command for {name} contains a NUL byte")
        if isinstance(priority, bool) or not isinstance(priority, int):
            raise SubmissionError(f"priority must be an integer, got {priority!r}")
        if not SQLITE_INT_MIN <= priority <= SQLITE_INT_MAX:
            raise SubmissionError(f"priority {priority} is outside the 64-bit integer range")
        if not shell:
            try:
                if not shlex.split(command):
                    raise SubmissionError(f"job {name} has no command")
            except ValueError as e:
                raise SubmissionError(f"cannot parse command for {name}: {e}") from None

        job = Job(name=name, command=command, priority=priority, shell=shell)
        with self.transaction():
            clash = self.conn.execute(
                "SELECT state FROM jobs WHERE name=? AND state IN (?, ?)", (name, QUEUED, RUNNING)
            ).fetchone()
            if clash:
                raise SubmissionError(f"job {name} is already {clash['state']}")
            cur = self.conn.execute("""
                INSERT INTO jobs (name, command, priority, shell, state, submitted_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (name, command, priority, int(shell), QUEUED, job.submitted_at))
            job.id = cur.lastrowid
            job.log_path = os.path.join(self.log_dir, f"{name}-{job.id}.log")
            self.conn.execute("UPDATE jobs SET log_path=? WHERE id=?", (job.log_path, job.id))
            self.record_event(name, "submitted", f"priority={priority}")
        logger.info("Job %s submitted (priority=%s)", name, priority)
        return job

    # ---------------- Queries ----------------
    def get_job(self, name):
        row = self.conn.execute("SELECT * FROM jobs WHERE name=? ORDER BY id DESC LIMIT 1", (name,)).fetchone()
        if not row:
            raise JobNotFoundError(f"job {name} not found")
        return Job.from_row(row)

    def list_jobs(self, state=None):
        if state:
            rows = self.conn.execute("SELECT * FROM jobs WHERE state=? ORDER BY id", (state,)).fetchall()
        else:
            rows = self.conn.execute("SELECT * FROM jobs ORDER BY id").fetchall()
        return [Job.from_row(r) for r in rows]

    def queued_jobs(self):
        """Queued jobs in admission order: highest priority, then earliest submitted."""
        rows = self.conn.execute(
            "SELECT * FROM jobs WHERE state=? ORDER BY priority DESC, id ASC", (QUEUED,)
        ).fetchall()
        return [Job.from_row(r) for r in rows]

    def next_queued(self):
        row = self.conn.execute(
            "SELECT * FROM jobs WHERE state=? ORDER BY priority DESC, id ASC LIMIT 1", (QUEUED,)
        ).fetchone()
        return Job.from_row(row) if row else None

    def active_jobs(self):
        rows = self.conn.execute("SELECT * FROM jobs WHERE state=? ORDER BY started_at, id", (RUNNING,)).fetchall()
        return [Job.from_row(r) for r in rows]

    def count_active(self):
        return self.conn.execute("SELECT COUNT(*) AS c FROM jobs WHERE state=?", (RUNNING,)).fetchone()["c"]

    def is_drained(self):
        row = self.conn.execute(
            "SELECT COUNT(*) AS c FROM jobs WHERE state IN (?, ?)", (QUEUED, RUNNING)
        ).fetchone()
        return row["c"] == 0

    # ---------------- Transitions ----------------
    def mark_running(self, job, pid):
        now = utcnow().isoformat()
        with self.transaction():
            updated = self.conn.execute("""
                UPDATE jobs SET state=?, pid=?, started_at=?
                WHERE id=? AND state=?
            """, (RUNNING, pid, now, job.id, QUEUED)).rowcount
            if updated != 1:
                raise JobNotFoundError(f"job {job.name} is no longer queued")
            self.record_event(job.name, "started", f"pid={pid}")
        job.state, job.pid, job.started_at = RUNNING, pid, now

    def mark_launch_failed(self, job, reason):
        now = utcnow().isoformat()
        with self.transaction():
            self.conn.execute("""
                UPDATE jobs SET state=?, outcome=?, error=?, ended_at=?
                WHERE id=? AND state=?
            """, (COMPLETED, FAILED, reason, now, job.id, QUEUED))
            self.record_event(job.name, "launch_failed", reason)
        job.state, job.outcome, job.error, job.ended_at = COMPLETED, FAILED, reason, now

    def mark_finished(self, job, state, outcome, exit_code, event, detail=None, error=None):
        """Retire a running job to ``completed`` or ``cancelled``.

        Returns None when the job was already retired elsewhere.
        """
        ended = utcnow()
        started = parse_ts(job.started_at)
        duration = (ended - started).total_seconds() if started else None
        with self.transaction():
            updated = self.conn.execute("""
                UPDATE jobs SET state=?, outcome=?, exit_code=?, error=?, ended_at=?, duration_seconds=?
                WHERE id=? AND state=?
            """, (state, outcome, exit_code, error, ended.isoformat(), duration, job.id, RUNNING)).rowcount
            if updated != 1:
                return None
            self.record_event(job.name, event, detail, exit_code)
        job.state, job.outcome, job.exit_code, job.error = state, outcome, exit_code, error
        job.ended_at, job.duration_seconds = ended.isoformat(), duration
        return job

    def mark_ambiguous(self, job, reason):
        """Flag a running job whose liveness cannot be checked. History gets one row per episode."""
        with self.transaction():
            updated = self.conn.execute(
                "UPDATE jobs SET error=? WHERE id=? AND state=? AND error IS NULL", (reason, job.id, RUNNING)
            ).rowcount
            if updated:
                self.record_event(job.name, "ambiguous", reason)
        job.error = reason
        return bool(updated)

    def clear_ambiguous(self, job):
        with self.transaction():
            updated = self.conn.execute(
                "UPDATE jobs SET error=NULL WHERE id=? AND state=? AND error IS NOT NULL", (job.id, RUNNING)
            ).rowcount
            if updated:
                self.record_event(job.name, "liveness_restored", f"pid={job.pid}")
        job.error = None
        return bool(updated)

    def cancel_queued(self, name):
        now = utcnow().isoformat()
        with self.transaction():
            updated = self.conn.execute(
                "UPDATE jobs SET state=?, ended_at=? WHERE name=? AND state=?", (CANCELLED, now, name, QUEUED)
            ).rowcount
            if updated:
                self.record_event(name, "cancelled", "removed from queue")
        return bool(updated)

    def request_cancel(self, name):
        """Flag a running job for cancellation; returns the job or None if it is not running."""
        with self.transaction():
            row = self.conn.execute("SELECT * FROM jobs WHERE name=? AND state=?", (name, RUNNING)).fetchone()
            if not row:
                return None
            self.conn.execute("UPDATE jobs SET cancel_requested=1 WHERE id=?", (row["id"],))
            self.record_event(name, "cancel_requested", f"pid={row['pid']}")
        job = Job.from_row(row)
        job.cancel_requested = True
        return job

    # ---------------- Status ----------------
    def snapshot(self, max_concurrent, history_limit=20, now=None):
        now = now or utcnow()
        with self.transaction(immediate=False):
            queued = tuple(QueuedEntry(j.name, j.priority, j.submitted_at) for j in self.queued_jobs())
            active = tuple(
                ActiveEntry(j.name, j.pid, j.started_at,
                            round(max(0.0, (now - parse_ts(j.started_at)).total_seconds()), 3),
                            j.error)
                for j in self.active_jobs()
            )
            history = tuple(self.history(history_limit))
            counts = {s: 0 for s in STATES}
            counts.update({o: 0 for o in OUTCOMES})
            for r in self.conn.execute("SELECT state, COUNT(*) AS c FROM jobs GROUP BY state"):
                counts[r["state"]] = r["c"]
            for r in self.conn.execute(
                "SELECT outcome, COUNT(*) AS c FROM jobs WHERE state=? GROUP BY outcome", (COMPLETED,)
            ):
                counts[r["outcome"]] = r["c"]
            counts["ambiguous"] = sum(1 for a in active if a.liveness_error)
        return StatusSnapshot(
            taken_at=now.isoformat(),
            max_concurrent=max_concurrent,
            queued=queued,
            active=active,
            history=history,
            counts=counts,
        )
