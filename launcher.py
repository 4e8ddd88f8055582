# launcher.py
"""Spawning job processes and checking on them later.

``launch`` never waits for the job: it returns a ``ProcessHandle`` around the
``Popen`` object so the reaper can collect the real exit code with ``poll()``.
Jobs started by another scheduler process have no handle here; for those
``probe_pid`` asks psutil whether the pid is still the process we started.
"""
import logging
import os
import shlex
import signal
import subprocess
from datetime import datetime

import psutil

from errors import LaunchError, LivenessAmbiguity
from models import parse_ts, utcnow

logger = logging.getLogger(__name__)

ALIVE = "alive"
GONE = "gone"

# slack between our started_at stamp and the kernel's create_time
PID_REUSE_SLACK_SECONDS = 2.0


class ProcessHandle:
    """Joinable handle to a job process started by this scheduler."""

    def __init__(self, job_name, process, log_file):
        self.job_name = job_name
        self.process = process
        self.log_file = log_file
        self.started_at = utcnow()

    @property
    def pid(self):
        return self.process.pid

    def poll(self):
        """Exit code once the process has exited, else None. Negative means killed by that signal."""
        return self.process.poll()

    def is_running(self):
        return self.process.poll() is None

    def terminate_group(self, sig=signal.SIGTERM):
        if self.is_running():
            terminate_group(self.pid, sig)

    def wait(self, timeout=None):
        return self.process.wait(timeout=timeout)

    def close_files(self):
        if self.log_file and not self.log_file.closed:
            self.log_file.close()


def launch(job):
    """Start ``job.command`` detached, output appended to ``job.log_path``."""
    if job.shell:
        args = job.command
    else:
        try:
            args = shlex.split(job.command)
        except ValueError as e:
            raise LaunchError(job.name, f"cannot parse command: {e}") from None

    log_file = None
    try:
        log_dir = os.path.dirname(job.log_path)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        log_file = open(job.log_path, "a")
        log_file.write(f"[{utcnow().isoformat()}] Starting job: {job.name}\n")
        log_file.write(f"Command: {job.command}\n\n")
        log_file.flush()

        process = subprocess.Popen(
            args,
            shell=job.shell,
            stdin=subprocess.DEVNULL,
            stdout=log_file,
            stderr=subprocess.STDOUT,
            start_new_session=True,  # own process group, so cancel can signal the whole tree
        )
    except (OSError, ValueError) as e:
        # ValueError: embedded null byte in the command
        if log_file is not None:
            log_file.write(f"Launch failed: {e}\n")
            log_file.close()
        raise LaunchError(job.name, getattr(e, "strerror", None) or str(e)) from e

    return ProcessHandle(job.name, process, log_file)


def probe_pid(job_name, pid, started_at=None):
    """Liveness of a process we hold no handle for: ALIVE or GONE.

    Raises LivenessAmbiguity when the OS will not tell us.
    """
    try:
        proc = psutil.Process(pid)
        if proc.status() == psutil.STATUS_ZOMBIE:
            # exited, but its parent has not collected the status yet; leave it to the parent
            return ALIVE
        started = parse_ts(started_at) if isinstance(started_at, str) else started_at
        if started is not None:
            created = datetime.fromtimestamp(proc.create_time(), tz=started.tzinfo)
            if (created - started).total_seconds() > PID_REUSE_SLACK_SECONDS:
                # pid was recycled by an unrelated process
                return GONE
        return ALIVE
    except psutil.NoSuchProcess:
        return GONE
    except psutil.AccessDenied as e:
        raise LivenessAmbiguity(job_name, pid, "access denied") from e


def terminate_group(pid, sig=signal.SIGTERM):
    """Signal the process group led by ``pid``. Returns False if it is already gone."""
    try:
        os.killpg(pid, sig)
    except ProcessLookupError:
        return False
    logger.debug("Sent %s to process group %s", signal.Signals(sig).name, pid)
    return True
