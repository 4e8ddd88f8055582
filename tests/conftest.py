"""
Shared test fixtures.

Each test gets its own SQLite file and log directory under tmp_path, and jobs
are short `python -c` commands run with the current interpreter, so the suite
needs nothing beyond a POSIX host.
"""

import shlex
import sys
import time

import pytest

from storage import Storage


def py_cmd(code: str) -> str:
    """Command string running `code` with the test interpreter."""
    return f"{shlex.quote(sys.executable)} -c {shlex.quote(code)}"


def sleep_cmd(seconds: float) -> str:
    return py_cmd(f"import time; time.sleep({seconds})")


def wait_until(predicate, timeout=10.0, interval=0.02):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return False


@pytest.fixture
def store(tmp_path):
    s = Storage(str(tmp_path / "sched.db"), log_dir=str(tmp_path / "logs"))
    yield s
    s.close()
