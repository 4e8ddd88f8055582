# dashboard.py
import os
from html import escape

from fastapi import FastAPI, HTTPException
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse

from errors import JobNotFoundError
from scheduler import Scheduler

# ---------- Shared UI ----------
BASE_STYLE = """
  body { font-family: Arial, sans-serif; margin: 0; background: #f9f9f9; color: #333; }
  h1 { background: #2196F3; color: white; padding: 15px; margin: 0; }
  h2 { margin-top: 30px; color: #2196F3; }
  .container { padding: 20px; }
  .navbar { background: #1976D2; padding: 10px 20px; display: flex; gap: 20px; }
  .navbar a { color: white; text-decoration: none; font-weight: bold; }
  table { border-collapse: collapse; width: 100%; margin-top: 10px; background: white; }
  th, td { border: 1px solid #ddd; padding: 8px; text-align: left; }
  th { background-color: #2196F3; color: white; }
  tr:nth-child(even) { background-color: #f2f2f2; }
  a { color: #1976D2; }
  .cards { display: grid; grid-template-columns: repeat(auto-fit,minmax(180px,1fr)); gap: 16px; margin-top: 20px; }
  .card { background: white; border: 1px solid #ddd; border-radius: 6px; padding: 12px; }
  .muted { color: #555; }
"""


def page(title: str, body_html: str) -> str:
    return f"""
    <html>
    <head>
      <title>{title}</title>
      <meta http-equiv="refresh" content="5">
      <style>{BASE_STYLE}</style>
    </head>
    <body>
      <h1>{title}</h1>
      <div class="navbar">
        <a href="/">🏠 Home</a>
        <a href="/status">🧾 JSON</a>
      </div>
      <div class="container">
        {body_html}
      </div>
    </body>
    </html>
    """


def _job_link(name):
    return f"<a href='/job/{escape(name)}'>{escape(name)}</a>" if name else "-"


def create_app(store) -> FastAPI:
    """Read-only view over ``store``; nothing here changes job state."""
    app = FastAPI(title="schedctl dashboard")
    scheduler = Scheduler(store)

    def _get_job(name):
        try:
            return store.get_job(name)
        except JobNotFoundError:
            raise HTTPException(status_code=404, detail=f"job {name} not found") from None

    # ---------- Home ----------
    @app.get("/", response_class=HTMLResponse)
    def home():
        snap = scheduler.status(history_limit=25)
        c = snap.counts

        cards = f"""
          <div class="cards">
            <div class="card"><h3>Queued</h3><p>{len(snap.queued)}</p></div>
            <div class="card"><h3>Running</h3><p>{len(snap.active)} / {snap.max_concurrent}</p></div>
            <div class="card"><h3>Succeeded</h3><p>{c['succeeded']}</p></div>
            <div class="card"><h3>Failed</h3><p>{c['failed']}</p></div>
            <div class="card"><h3>Unknown</h3><p>{c['unknown']}</p></div>
            <div class="card"><h3>Cancelled</h3><p>{c['cancelled']}</p></div>
          </div>
        """

        body = "<h2>Queue</h2><table><tr><th>Name</th><th>Priority</th><th>Submitted</th></tr>"
        for q in snap.queued:
            body += f"<tr><td>{_job_link(q.name)}</td><td>{q.priority}</td><td>{q.submitted_at}</td></tr>"
        body += "</table>"

        body += "<h2>Active jobs</h2><table><tr><th>Name</th><th>PID</th><th>Started</th><th>Runtime</th><th>Liveness</th></tr>"
        for a in snap.active:
            body += f"<tr><td>{_job_link(a.name)}</td><td>{a.pid}</td><td>{a.started_at}</td><td>{a.elapsed_seconds:.0f}s</td><td>{escape(a.liveness_error or 'ok')}</td></tr>"
        body += "</table>"

        body += "<h2>Recent history</h2><table><tr><th>Time</th><th>Job</th><th>Event</th><th>Detail</th></tr>"
        for h in reversed(snap.history):
            body += f"<tr><td>{h.ts}</td><td>{_job_link(h.job_name)}</td><td>{h.event}</td><td>{escape(h.detail or '-')}</td></tr>"
        body += "</table>"

        return page("📊 Scheduler Dashboard", cards + body)

    # ---------- Status (JSON) ----------
    @app.get("/status", response_class=JSONResponse)
    def status_json(history: int = 20):
        return scheduler.status(history_limit=history).to_dict()

    # ---------- Job detail ----------
    @app.get("/job/{name}", response_class=HTMLResponse)
    def job_detail(name: str):
        job = _get_job(name)
        duration = f"{job.duration_seconds:.3f}s" if job.duration_seconds is not None else "-"
        exit_code = job.exit_code if job.exit_code is not None else "-"

        rows = "".join(
            f"<tr><td>{h.ts}</td><td>{h.event}</td><td>{escape(h.detail or '-')}</td></tr>"
            for h in store.history(50, job_name=job.name)
        )
        body = f"""
          <h2>Job {escape(job.name)}</h2>
          <div class="cards">
            <div class="card"><b>State</b><p>{job.state}</p></div>
            <div class="card"><b>Outcome</b><p>{job.outcome or '-'}</p></div>
            <div class="card"><b>Priority</b><p>{job.priority}</p></div>
            <div class="card"><b>Duration</b><p>{duration}</p></div>
            <div class="card"><b>Exit code</b><p>{exit_code}</p></div>
          </div>

          <h3>Command</h3>
          <p class="muted">{escape(job.command)}</p>

          <h3>Timestamps</h3>
          <table>
            <tr><th>Submitted</th><td>{job.submitted_at}</td></tr>
            <tr><th>Started</th><td>{job.started_at or '-'}</td></tr>
            <tr><th>Ended</th><td>{job.ended_at or '-'}</td></tr>
          </table>

          <h3>Error</h3>
          <pre>{escape(job.error or '-')}</pre>

          <h3>History</h3>
          <table><tr><th>Time</th><th>Event</th><th>Detail</th></tr>{rows}</table>

          <p><a href="/job/{escape(job.name)}/log">⬇ Download log</a></p>
        """
        return page(f"🔎 Job {escape(job.name)}", body)

    # ---------- Log artifact ----------
    @app.get("/job/{name}/log", response_class=PlainTextResponse)
    def job_log(name: str):
        job = _get_job(name)
        if not job.log_path or not os.path.exists(job.log_path):
            return PlainTextResponse("(no output)", media_type="text/plain")
        with open(job.log_path, errors="replace") as f:
            return PlainTextResponse(f.read(), media_type="text/plain")

    return app
