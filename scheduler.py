# scheduler.py
"""
Priority scheduler with bounded concurrency.

Each tick first reaps finished jobs (freeing capacity), then admits the
highest-priority queued jobs until the active set is full:

    queued ──admit──> running ──exit observed──> completed / cancelled
       └──launch error──> completed(failed)

The loop is the only writer of job state in normal operation. Transitions are
single SQLite transactions, so CLI submitters in other processes are safe.
"""
import logging
import time

from errors import ConfigurationError, JobNotFoundError, LaunchError, LivenessAmbiguity
from launcher import GONE, launch, probe_pid, terminate_group
from models import CANCELLED, COMPLETED, FAILED, SUCCEEDED, UNKNOWN, RunSummary

logger = logging.getLogger(__name__)


class Scheduler:

    def __init__(self, store, max_concurrent=None, poll_interval=None, spawn=launch):
        self.store = store
        self.max_concurrent = max_concurrent if max_concurrent is not None else store.setting("max_concurrent", int)
        self.poll_interval = poll_interval if poll_interval is not None else store.setting("poll_interval", float)
        self._spawn = spawn
        self._handles = {}  # job name -> ProcessHandle, only for jobs this process launched

    def _log_transition(self, job_name, old_state, new_state, extra=""):
        logger.info("Job %s: %s → %s%s", job_name, old_state, new_state, f" {extra}" if extra else "")

    def validate(self, duration=0, poll_interval=None):
        poll_interval = self.poll_interval if poll_interval is None else poll_interval
        if isinstance(self.max_concurrent, bool) or not isinstance(self.max_concurrent, int) or self.max_concurrent <= 0:
            raise ConfigurationError(f"max_concurrent must be a positive integer, got {self.max_concurrent!r}")
        if not poll_interval or poll_interval <= 0:
            raise ConfigurationError(f"poll_interval must be positive, got {poll_interval!r}")
        if duration is None or duration < 0:
            raise ConfigurationError(f"duration must be >= 0, got {duration!r}")

    # ---------------- Reaper ----------------
    def reap_once(self):
        """Retire every running job whose process has exited. Returns the retired jobs."""
        retired = []
        with self.store.lock:
            active = self.store.active_jobs()
            self._drop_stale_handles({j.name for j in active})
            for job in active:
                handle = self._handles.get(job.name)
                if handle is not None and handle.pid == job.pid:
                    exit_code = handle.poll()
                    if exit_code is None:
                        continue
                    handle.close_files()
                    del self._handles[job.name]
                    done = self._retire(job, exit_code)
                    if done:
                        retired.append(done)
                    continue

                try:
                    liveness = probe_pid(job.name, job.pid, job.started_at)
                except LivenessAmbiguity as e:
                    if self.store.mark_ambiguous(job, e.reason):
                        logger.warning("%s; leaving it running", e)
                    continue
                if job.error:
                    self.store.clear_ambiguous(job)
                if liveness == GONE:
                    done = self._retire_unknown(job)
                    if done:
                        retired.append(done)
        return retired

    def _drop_stale_handles(self, active_names):
        # jobs retired out-of-band (e.g. `schedctl reap` in another process)
        for name in [n for n in self._handles if n not in active_names]:
            handle = self._handles[name]
            if handle.poll() is not None:
                handle.close_files()
                del self._handles[name]

    def _retire(self, job, exit_code):
        if job.cancel_requested:
            if self.store.mark_finished(job, CANCELLED, None, exit_code, "cancelled", f"exit_code={exit_code}"):
                self._log_transition(job.name, "running", "cancelled", f"(exit_code={exit_code})")
                return job
            return None
        outcome = SUCCEEDED if exit_code == 0 else FAILED
        if exit_code < 0:
            error = f"terminated by signal {-exit_code}"
        elif exit_code:
            error = f"exited with status {exit_code}"
        else:
            error = None
        event = "completed" if outcome == SUCCEEDED else "failed"
        if not self.store.mark_finished(job, COMPLETED, outcome, exit_code, event, error, error=error):
            return None
        self._log_transition(job.name, "running", f"completed({outcome})",
                             f"(exit_code={exit_code}, duration={job.duration_seconds:.3f}s)")
        return job

    def _retire_unknown(self, job):
        if job.cancel_requested:
            if self.store.mark_finished(job, CANCELLED, None, None, "cancelled", "exit status unavailable"):
                self._log_transition(job.name, "running", "cancelled", "(exit status unavailable)")
                return job
            return None
        reason = "process exited but its status could not be collected (not started by this scheduler)"
        if not self.store.mark_finished(job, COMPLETED, UNKNOWN, None, "ambiguous", reason, error=reason):
            return None
        logger.warning("Job %s: running → completed(%s) (pid %s: %s)", job.name, UNKNOWN, job.pid, reason)
        return job

    # ---------------- Admission ----------------
    def admit(self):
        """Launch queued jobs, best first, while capacity remains. Returns the admitted jobs."""
        admitted = []
        while True:
            with self.store.transaction():
                if self.store.count_active() >= self.max_concurrent:
                    break
                job = self.store.next_queued()
                if job is None:
                    break
                try:
                    handle = self._spawn(job)
                except LaunchError as e:
                    self.store.mark_launch_failed(job, e.reason)
                    self._log_transition(job.name, "queued", f"completed({FAILED})", f"(launch error: {e.reason})")
                    continue
                self.store.mark_running(job, handle.pid)
                self._handles[job.name] = handle
            self._log_transition(job.name, "queued", "running", f"(pid={handle.pid}, priority={job.priority})")
            admitted.append(job)
        return admitted

    # ---------------- Loop ----------------
    def tick(self, admit=True):
        with self.store.lock:
            retired = self.reap_once()
            admitted = self.admit() if admit else []
        return retired, admitted

    def run(self, duration=None, poll_interval=None, stop_event=None):
        """Tick until ``duration`` has passed and nothing is queued or running.

        Setting ``stop_event`` stops admission; running jobs are still drained.
        """
        if duration is None:
            duration = self.store.setting("duration", float)
        interval = self.poll_interval if poll_interval is None else poll_interval
        self.validate(duration, interval)

        summary = RunSummary()
        deadline = time.monotonic() + duration
        logger.info("Scheduler running for %ss (max_concurrent=%s, poll=%ss)",
                    duration, self.max_concurrent, interval)
        while True:
            stopping = stop_event is not None and stop_event.is_set()
            retired, admitted = self.tick(admit=not stopping)
            summary.ticks += 1
            summary.retired += len(retired)
            summary.admitted += len(admitted)

            if stopping:
                summary.stopped_early = True
                if self.store.count_active() == 0:
                    break
            elif time.monotonic() >= deadline and self.store.is_drained():
                break
            time.sleep(interval)
        logger.info("Scheduler stopped after %s ticks (%s admitted, %s retired)",
                    summary.ticks, summary.admitted, summary.retired)
        return summary

    # ---------------- Cancel / status ----------------
    def cancel(self, name):
        """Cancel a queued or running job. Returns the state it was in."""
        if self.store.cancel_queued(name):
            self._log_transition(name, "queued", "cancelled")
            return "queued"
        job = self.store.request_cancel(name)
        if job is None:
            raise JobNotFoundError(f"no queued or running job named {name}")
        handle = self._handles.get(name)
        if handle is not None:
            handle.terminate_group()
        elif not terminate_group(job.pid):
            logger.info("Job %s: process group %s already gone", name, job.pid)
        self._log_transition(name, "running", "cancelling", f"(pid={job.pid})")
        return "running"

    def status(self, history_limit=20, now=None):
        return self.store.snapshot(self.max_concurrent, history_limit=history_limit, now=now)
