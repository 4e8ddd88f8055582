"""
Tests for the scheduler: admission order, capacity, reaping with real
exit codes, the drain guarantee and cancellation.
"""

import os
import signal
import subprocess
import sys
import threading
import time

import psutil
import pytest

from conftest import py_cmd, sleep_cmd, wait_until
from errors import ConfigurationError, JobNotFoundError
from models import CANCELLED, COMPLETED, FAILED, QUEUED, RUNNING, SUCCEEDED, UNKNOWN
from scheduler import Scheduler


def _completion_order(store):
    return [h.job_name for h in store.history(limit=100) if h.event in ("completed", "failed")]


def test_higher_priority_runs_first_with_single_slot(store):
    """Scenario A: p2 (priority 8) is admitted and completes before p1 (priority 5)."""
    store.submit("p1", sleep_cmd(0.2), priority=5)
    store.submit("p2", sleep_cmd(0.2), priority=8)

    Scheduler(store, max_concurrent=1).run(duration=0, poll_interval=0.05)

    assert _completion_order(store) == ["p2", "p1"]
    started = [h.job_name for h in store.history(limit=100) if h.event == "started"]
    assert started == ["p2", "p1"]


def test_first_tick_fills_capacity_by_priority(store):
    """Scenario B: with two slots the priority 3 and 2 jobs start, priority 1 waits."""
    store.submit("low", sleep_cmd(0.5), priority=1)
    store.submit("mid", sleep_cmd(0.5), priority=2)
    store.submit("top", sleep_cmd(0.5), priority=3)
    sched = Scheduler(store, max_concurrent=2)

    sched.tick()

    assert {j.name for j in store.active_jobs()} == {"top", "mid"}
    assert [j.name for j in store.queued_jobs()] == ["low"]

    sched.run(duration=0, poll_interval=0.05)
    assert store.get_job("low").outcome == SUCCEEDED


def test_launch_failure_does_not_block_next_job(store):
    """Scenario C: a missing executable fails at launch and the next job starts in the same tick."""
    store.submit("bad", "definitely-not-a-real-executable-xyz --flag", priority=5)
    store.submit("good", sleep_cmd(0.1), priority=1)
    sched = Scheduler(store, max_concurrent=1)

    _, admitted = sched.tick()

    bad = store.get_job("bad")
    assert bad.state == COMPLETED
    assert bad.outcome == FAILED
    assert bad.started_at is None
    assert bad.error
    assert [j.name for j in admitted] == ["good"]
    assert store.get_job("good").state == RUNNING
    assert "launch_failed" in [h.event for h in store.history(job_name="bad")]

    sched.run(duration=0, poll_interval=0.05)


@pytest.mark.parametrize("breakage", ["nul_command", "log_is_directory"])
def test_unlaunchable_row_does_not_stall_the_queue(store, breakage):
    bad = store.submit("bad", "echo bad", priority=9)
    store.submit("good", py_cmd("print('ok')"), priority=1)
    # rows written by an older store, or a log path clobbered after submit
    if breakage == "nul_command":
        store.conn.execute("UPDATE jobs SET command=? WHERE id=?", ("echo a\x00b", bad.id))
    else:
        os.makedirs(bad.log_path)

    summary = Scheduler(store, max_concurrent=1).run(duration=0, poll_interval=0.02)

    bad = store.get_job("bad")
    assert (bad.state, bad.outcome) == (COMPLETED, FAILED)
    assert bad.error
    assert store.get_job("good").outcome == SUCCEEDED
    assert store.is_drained()
    assert summary.admitted == 1


def test_non_executable_file_is_a_launch_error(store, tmp_path):
    script = tmp_path / "not-executable.sh"
    script.write_text("#!/bin/sh\necho hi\n")
    os.chmod(script, 0o644)
    store.submit("noexec", str(script))

    Scheduler(store, max_concurrent=1).tick()

    job = store.get_job("noexec")
    assert job.outcome == FAILED
    assert job.exit_code is None


def test_zero_duration_still_drains_everything(store):
    """Scenario D: run(0, ...) admits and finishes all queued jobs before returning."""
    for i in range(4):
        store.submit(f"job{i}", sleep_cmd(0.05), priority=i)

    summary = Scheduler(store, max_concurrent=2).run(duration=0, poll_interval=0.02)

    assert store.is_drained()
    assert summary.admitted == 4
    assert summary.retired == 4
    assert all(j.outcome == SUCCEEDED for j in store.list_jobs())


def test_capacity_and_mutual_exclusion_hold_every_tick(store):
    for i in range(6):
        store.submit(f"job{i}", sleep_cmd(0.1), priority=i % 3)
    sched = Scheduler(store, max_concurrent=2)

    for _ in range(500):
        sched.tick()
        active = {j.name for j in store.active_jobs()}
        queued = {j.name for j in store.queued_jobs()}
        assert len(active) <= 2
        assert not active & queued
        if store.is_drained():
            break
        time.sleep(0.02)
    assert store.is_drained()


def test_exit_status_distinguishes_success_from_failure(store):
    store.submit("ok", py_cmd("print('fine')"))
    store.submit("boom", py_cmd("import sys; sys.exit(3)"))
    store.submit("killed", py_cmd("import os, signal; os.kill(os.getpid(), signal.SIGTERM)"))

    Scheduler(store, max_concurrent=3).run(duration=0, poll_interval=0.02)

    ok, boom, killed = (store.get_job(n) for n in ("ok", "boom", "killed"))
    assert (ok.outcome, ok.exit_code) == (SUCCEEDED, 0)
    assert (boom.outcome, boom.exit_code) == (FAILED, 3)
    assert boom.error == "exited with status 3"
    assert (killed.outcome, killed.exit_code) == (FAILED, -signal.SIGTERM)
    assert store.snapshot(3).counts[FAILED] == 2


def test_job_output_goes_to_its_log(store):
    job = store.submit("talker", py_cmd("import sys; print('to out'); print('to err', file=sys.stderr)"))

    Scheduler(store, max_concurrent=1).run(duration=0, poll_interval=0.02)

    with open(job.log_path) as f:
        text = f.read()
    assert "Starting job: talker" in text
    assert "to out" in text
    assert "to err" in text


def test_shell_job_runs_through_sh(store):
    job = store.submit("pipe", "echo abc | tr a z", shell=True)

    Scheduler(store, max_concurrent=1).run(duration=0, poll_interval=0.02)

    assert store.get_job("pipe").outcome == SUCCEEDED
    with open(job.log_path) as f:
        assert "zbc" in f.read()


def test_reap_without_handle_reports_unknown_outcome(store):
    store.submit("orphan", sleep_cmd(0.05))
    owner = Scheduler(store, max_concurrent=1)
    owner.admit()
    owner._handles["orphan"].wait(timeout=5)

    # a second scheduler (e.g. `schedctl reap`) never held the Popen object
    retired = Scheduler(store, max_concurrent=1).reap_once()

    assert [j.name for j in retired] == ["orphan"]
    job = store.get_job("orphan")
    assert job.state == COMPLETED
    assert job.outcome == UNKNOWN
    assert job.exit_code is None
    assert store.history(job_name="orphan")[-1].event == "ambiguous"

    # the owner drops its stale handle rather than reaping twice
    assert owner.reap_once() == []
    assert "orphan" not in owner._handles


def test_reap_without_handle_leaves_live_process_running(store):
    store.submit("live", sleep_cmd(5))
    owner = Scheduler(store, max_concurrent=1)
    owner.admit()
    try:
        assert Scheduler(store, max_concurrent=1).reap_once() == []
        assert store.get_job("live").state == RUNNING
    finally:
        owner.cancel("live")
        owner.run(duration=0, poll_interval=0.02)


def test_access_denied_liveness_is_flagged_not_completed(store, monkeypatch):
    job = store.submit("hidden", "echo hi")
    exited = subprocess.Popen([sys.executable, "-c", "pass"])
    exited.wait()
    store.mark_running(job, exited.pid)

    def denied(pid):
        raise psutil.AccessDenied(pid)

    monkeypatch.setattr(psutil, "Process", denied)
    sched = Scheduler(store, max_concurrent=1)

    assert sched.reap_once() == []
    assert sched.reap_once() == []
    assert store.get_job("hidden").state == RUNNING

    snap = sched.status()
    assert snap.active[0].liveness_error
    assert snap.counts["ambiguous"] == 1
    events = [h.event for h in store.history(job_name="hidden")]
    assert events.count("ambiguous") == 1

    # the pid can be inspected again, is gone, and the job retires as unknown
    monkeypatch.undo()
    sched.reap_once()
    events = [h.event for h in store.history(job_name="hidden")]
    assert events[-2:] == ["liveness_restored", "ambiguous"]
    assert store.get_job("hidden").outcome == UNKNOWN
    assert sched.status().counts["ambiguous"] == 0


def test_cancel_queued_job(store):
    store.submit("later", "echo later")
    sched = Scheduler(store, max_concurrent=1)

    assert sched.cancel("later") == QUEUED
    assert store.get_job("later").state == CANCELLED
    assert store.is_drained()


def test_cancel_running_job_terminates_process_group(store):
    store.submit("long", sleep_cmd(30))
    sched = Scheduler(store, max_concurrent=1)
    sched.tick()
    pid = store.get_job("long").pid

    assert sched.cancel("long") == RUNNING
    assert wait_until(lambda: bool(sched.reap_once()), timeout=10)

    job = store.get_job("long")
    assert job.state == CANCELLED
    assert job.exit_code == -signal.SIGTERM
    assert not psutil.pid_exists(pid) or psutil.Process(pid).status() == psutil.STATUS_ZOMBIE


def test_cancel_unknown_job_raises(store):
    with pytest.raises(JobNotFoundError):
        Scheduler(store, max_concurrent=1).cancel("nope")


@pytest.mark.parametrize("max_concurrent, poll_interval, duration", [
    (0, 1.0, 10),
    (-1, 1.0, 10),
    (2, 0, 10),
    (2, -0.5, 10),
    (2, 1.0, -1),
])
def test_bad_configuration_aborts_before_any_job_runs(store, max_concurrent, poll_interval, duration):
    store.submit("never", "echo never")
    sched = Scheduler(store, max_concurrent=max_concurrent, poll_interval=poll_interval)

    with pytest.raises(ConfigurationError):
        sched.run(duration=duration)
    assert store.get_job("never").state == QUEUED


def test_defaults_come_from_config(store):
    store.set_config("max_concurrent", 7)
    store.set_config("poll_interval", 0.25)

    sched = Scheduler(store)
    assert sched.max_concurrent == 7
    assert sched.poll_interval == 0.25


def test_run_poll_interval_override_is_per_call(store):
    store.submit("quick", "echo quick")
    sched = Scheduler(store, max_concurrent=1, poll_interval=1.0)

    sched.run(duration=0, poll_interval=0.02)

    assert sched.poll_interval == 1.0


def test_stop_event_drains_running_jobs_but_leaves_queue(store):
    store.submit("first", sleep_cmd(0.2), priority=9)
    store.submit("second", sleep_cmd(0.2), priority=1)
    sched = Scheduler(store, max_concurrent=1)
    sched.tick()
    stop = threading.Event()
    stop.set()

    summary = sched.run(duration=60, poll_interval=0.02, stop_event=stop)

    assert summary.stopped_early
    assert store.get_job("first").outcome == SUCCEEDED
    assert store.get_job("second").state == QUEUED


def test_status_is_read_only_and_stable(store):
    store.submit("a", "echo a", priority=2)
    store.submit("b", "echo b", priority=4)
    sched = Scheduler(store, max_concurrent=1)

    first = sched.status()
    second = sched.status()
    assert first.queued == second.queued
    assert first.history == second.history
    assert [q.name for q in first.queued] == ["b", "a"]
    assert store.get_job("a").state == QUEUED
