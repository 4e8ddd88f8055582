# cli.py
import logging
import threading

import click

from errors import SchedulerError
from models import STATES
from scheduler import Scheduler
from storage import DEFAULTS, Storage


def _fail(message):
    click.echo(f"❌ {message}")
    raise SystemExit(1)


@click.group()
@click.option("--db", "db_path", default="scheduler.db", envvar="SCHEDCTL_DB", show_default=True,
              help="SQLite file holding the queue, active jobs and history")
@click.option("--log-level", default="INFO", show_default=True,
              type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False))
@click.pass_context
def cli(ctx, db_path, log_level):
    """schedctl - local priority job scheduler"""
    logging.basicConfig(level=log_level.upper(), format="[%(asctime)s] %(message)s", force=True)
    ctx.obj = Storage(db_path)
    ctx.call_on_close(ctx.obj.close)


# ---------------- Init ----------------
@cli.command()
@click.pass_obj
def init(db):
    """Create the log directory and mark the history"""
    db.initialize()
    click.echo(f"✅ Scheduler initialized (db={db.db_path}, logs={db.log_dir}).")


# ---------------- Submit ----------------
@cli.command()
@click.argument("name")
@click.argument("command")
@click.option("--priority", default=5, type=int, show_default=True, help="Job priority (higher runs first)")
@click.option("--shell", is_flag=True, help="Run the command through /bin/sh -c")
@click.pass_obj
def submit(db, name, command, priority, shell):
    """Add a new job to the queue"""
    try:
        job = db.submit(name, command, priority=priority, shell=shell)
    except SchedulerError as e:
        _fail(f"Failed to submit job: {e}")
    click.echo(f"✅ Job {job.name} queued (priority={job.priority}, log={job.log_path}).")


# ---------------- List Jobs ----------------
@cli.command(name="list")
@click.option("--state", default=None, type=click.Choice(STATES), help="Filter jobs by state")
@click.pass_obj
def list_jobs(db, state):
    """List jobs"""
    jobs = db.list_jobs(state)
    if not jobs:
        click.echo("No jobs found.")
        return
    for job in jobs:
        outcome = f"({job.outcome})" if job.outcome else ""
        dur = f"{job.duration_seconds:.3f}s" if job.duration_seconds is not None else "-"
        click.echo(f"{job.name} | {job.command} | state={job.state}{outcome} | priority={job.priority} | duration={dur}")


# ---------------- Status ----------------
@cli.command()
@click.option("--history", "history_limit", default=10, show_default=True, help="History rows to show")
@click.pass_obj
def status(db, history_limit):
    """Show queue, active jobs and recent history"""
    try:
        snap = Scheduler(db).status(history_limit=history_limit)
    except SchedulerError as e:
        _fail(str(e))
    counts = snap.counts

    click.echo("=== Job Scheduler Status ===")
    click.echo(f"Max concurrent jobs: {snap.max_concurrent}")
    click.echo(f"Completed: {counts['succeeded']} succeeded, {counts['failed']} failed, "
               f"{counts['unknown']} unknown; cancelled: {counts['cancelled']}")
    click.echo()
    click.echo(f"Queued jobs: {len(snap.queued)}")
    for q in snap.queued:
        click.echo(f"  Priority {q.priority}: {q.name}")
    click.echo()
    click.echo(f"Active jobs: {len(snap.active)} ({counts['ambiguous']} with unknown liveness)")
    for a in snap.active:
        note = f" ⚠ liveness unknown: {a.liveness_error}" if a.liveness_error else ""
        click.echo(f"  {a.name} (PID: {a.pid}, runtime: {a.elapsed_seconds:.0f}s){note}")
    if snap.history:
        click.echo()
        click.echo("Recent history:")
        for h in snap.history:
            _echo_history(h)


def _echo_history(h):
    who = h.job_name or "-"
    detail = f" ({h.detail})" if h.detail else ""
    click.echo(f"  [{h.ts}] {who}: {h.event}{detail}")


@cli.command()
@click.option("--limit", default=20, show_default=True)
@click.option("--job", "job_name", default=None, help="Only this job's entries")
@click.pass_obj
def history(db, limit, job_name):
    """Show the history log"""
    rows = db.history(limit, job_name=job_name)
    if not rows:
        click.echo("No history yet.")
        return
    for h in rows:
        _echo_history(h)


# ---------------- Run / reap / cancel ----------------
@cli.command()
@click.option("--duration", default=None, type=float, help="Seconds to keep scheduling (uses config if set)")
@click.option("--poll-interval", default=None, type=float, help="Seconds between ticks (uses config if set)")
@click.option("--max-concurrent", default=None, type=int, help="Concurrency cap (uses config if set)")
@click.pass_obj
def run(db, duration, poll_interval, max_concurrent):
    """Run the scheduler loop until the queue drains"""
    stop_event = threading.Event()
    try:
        sched = Scheduler(db, max_concurrent=max_concurrent, poll_interval=poll_interval)
        if duration is None:
            duration = db.setting("duration", float)
        sched.validate(duration)
    except SchedulerError as e:
        _fail(str(e))

    click.echo(f"🚀 Starting scheduler for {duration:g}s (max_concurrent={sched.max_concurrent}, poll={sched.poll_interval:g}s)")
    click.echo("Press Ctrl+C to stop admitting and drain running jobs.")
    try:
        summary = sched.run(duration)
    except KeyboardInterrupt:
        click.echo("\n🛑 Stopping admission, waiting for active jobs ...")
        stop_event.set()
        summary = sched.run(0, stop_event=stop_event)
    click.echo(f"✅ All jobs completed ({summary.admitted} admitted, {summary.retired} retired in {summary.ticks} ticks).")


@cli.command()
@click.pass_obj
def reap(db):
    """Retire finished jobs once, without admitting new ones"""
    try:
        retired = Scheduler(db).reap_once()
    except SchedulerError as e:
        _fail(str(e))
    if not retired:
        click.echo("No finished jobs.")
        return
    for job in retired:
        click.echo(f"🧹 {job.name}: {job.state}{f'({job.outcome})' if job.outcome else ''}")


@cli.command()
@click.argument("name")
@click.pass_obj
def cancel(db, name):
    """Cancel a queued or running job"""
    try:
        was = Scheduler(db).cancel(name)
    except SchedulerError as e:
        _fail(str(e))
    if was == "queued":
        click.echo(f"🗑 Job {name} removed from the queue.")
    else:
        click.echo(f"🛑 Job {name} signalled; it will be recorded as cancelled once it exits.")


@cli.command()
@click.argument("name")
@click.pass_obj
def show(db, name):
    """Show details of a single job"""
    try:
        job = db.get_job(name)
    except SchedulerError as e:
        _fail(str(e))

    click.echo(f"🔎 Job {job.name}")
    click.echo(f"  Command: {job.command}")
    click.echo(f"  State: {job.state}")
    click.echo(f"  Outcome: {job.outcome or '-'}")
    click.echo(f"  Priority: {job.priority}")
    click.echo(f"  PID: {job.pid or '-'}")
    click.echo(f"  Submitted: {job.submitted_at}")
    click.echo(f"  Started: {job.started_at or '-'}")
    click.echo(f"  Ended: {job.ended_at or '-'}")
    click.echo(f"  Duration: {job.duration_seconds:.3f}s" if job.duration_seconds is not None else "  Duration: -")
    click.echo(f"  Exit code: {job.exit_code if job.exit_code is not None else '-'}")
    click.echo(f"  Error: {job.error or '-'}")
    click.echo(f"  Log: {job.log_path}")


# ---------------- Config management ----------------
@cli.group()
def config():
    """Scheduler defaults (max_concurrent, poll_interval, duration, log_dir)"""
    pass


@config.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_obj
def config_set(db, key, value):
    """Set a config key to a value"""
    db.set_config(key, value)
    click.echo(f"🛠️ Config '{key}' set to '{value}'.")


@config.command("get")
@click.argument("key")
@click.pass_obj
def config_get(db, key):
    """Get a config key"""
    value = db.get_config(key)
    if value is None:
        if key in DEFAULTS:
            click.echo(f"{key}={DEFAULTS[key]} (default)")
        else:
            click.echo(f"{key} not set")
        return
    click.echo(f"{key}={value}")


@config.command("list")
@click.pass_obj
def config_list(db):
    """List all config keys"""
    rows = {r["key"]: r for r in db.list_config()}
    for key in sorted(set(DEFAULTS) | set(rows)):
        if key in rows:
            click.echo(f"{key}={rows[key]['value']} (updated_at={rows[key]['updated_at']})")
        else:
            click.echo(f"{key}={DEFAULTS[key]} (default)")


# ---------------- Dashboard ----------------
@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, show_default=True)
@click.pass_obj
def serve(db, host, port):
    """Serve the read-only status dashboard"""
    import uvicorn
    from dashboard import create_app

    uvicorn.run(create_app(db), host=host, port=port)


# ---------------- Entrypoint ----------------
if __name__ == "__main__":
    cli()
