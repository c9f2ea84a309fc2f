# dashboard.py
import os
from dataclasses import asdict
from html import escape
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse

from logconfig import configure_logging
from models import JOB_STATUSES
from storage import Storage

configure_logging(json=os.environ.get("IMPORTCTL_JSON_LOGS") == "1")

app = FastAPI(title="importctl dashboard")


def get_storage():
    db = Storage(os.environ.get("IMPORTCTL_DB", "queue.db"))
    try:
        yield db
    finally:
        db.close()


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
  canvas { margin-top: 20px; display: block; max-width: 500px; }
  .cards { display: grid; grid-template-columns: repeat(auto-fit,minmax(180px,1fr)); gap: 16px; margin-top: 20px; }
  .card { background: white; border: 1px solid #ddd; border-radius: 6px; padding: 12px; }
  .muted { color: #555; }
  .warn { color: #E65100; }
  .error { color: #C62828; }
"""


def page(title: str, body_html: str, include_chart_js: bool = False) -> str:
    script_tag = '<script src="https://cdn.jsdelivr.net/npm/chart.js"></script>' if include_chart_js else ''
    return f"""
    <html>
    <head>
      <title>{escape(title)}</title>
      {script_tag}
      <style>{BASE_STYLE}</style>
    </head>
    <body>
      <h1>{escape(title)}</h1>
      <div class="navbar">
        <a href="/">Jobs</a>
        <a href="/metrics">Metrics</a>
        <a href="/config">Config</a>
      </div>
      <div class="container">
        {body_html}
      </div>
    </body>
    </html>
    """


def _cell(value):
    return escape(str(value)) if value not in (None, "") else "-"


# ---------- Home ----------
@app.get("/", response_class=HTMLResponse)
def home(status: Optional[str] = None, db: Storage = Depends(get_storage)):
    if status is not None and status not in JOB_STATUSES:
        raise HTTPException(status_code=400, detail=f"Unknown status: {status}")
    jobs = db.list_jobs(status=status, limit=50)

    body = """
    <h2>Recent jobs</h2>
    <table>
      <tr><th>ID</th><th>Source</th><th>Kind</th><th>Status</th><th>Progress</th><th>Errors</th><th>Created</th><th>Finished</th></tr>
    """
    for j in jobs:
        body += (
            f"<tr><td><a href='/job/{escape(j.id)}'>{escape(j.id)}</a></td><td>{_cell(j.source_id)}</td>"
            f"<td>{_cell(j.kind)}</td><td>{_cell(j.status)}</td><td>{j.processed_items}/{j.total_items}</td>"
            f"<td>{j.error_count}</td><td>{_cell(j.created_at)}</td><td>{_cell(j.finished_at)}</td></tr>"
        )
    body += "</table>"
    if not jobs:
        body += "<p class='muted'>No jobs found.</p>"

    body += """
      <h2>Job states</h2>
      <canvas id="jobChart"></canvas>
      <script>
        async function loadChart() {
          const res = await fetch('/metrics/json');
          const data = await res.json();
          new Chart(document.getElementById('jobChart'), {
            type: 'pie',
            data: {
              labels: ['Queued', 'Running', 'Success', 'Failed'],
              datasets: [{
                data: [data.queued, data.running, data.success, data.failed],
                backgroundColor: ['#90CAF9', '#FFC107', '#4CAF50', '#F44336']
              }]
            }
          });
        }
        loadChart();
      </script>
    """
    return page("Import Jobs", body, include_chart_js=True)


# ---------- Metrics ----------
@app.get("/metrics", response_class=HTMLResponse)
def metrics_page(db: Storage = Depends(get_storage)):
    counts = db.count_by_status()
    cards = "".join(
        f'<div class="card"><h3>{state.title()}</h3><p>{count}</p></div>' for state, count in counts.items()
    )
    body = f"""
      <div class="cards">{cards}</div>
      <p class="muted">Tip: use the CLI "status" command for scriptable output.</p>
    """
    return page("Metrics", body)


@app.get("/metrics/json", response_class=JSONResponse)
def metrics_json(db: Storage = Depends(get_storage)):
    return db.count_by_status()


# ---------- Config ----------
@app.get("/config", response_class=HTMLResponse)
def config_page(db: Storage = Depends(get_storage)):
    rows = db.list_config()

    body = """
      <h2>Scheduler configuration</h2>
      <table>
        <tr><th>Key</th><th>Value</th><th>Updated</th></tr>
    """
    for r in rows:
        body += f"<tr><td>{_cell(r['key'])}</td><td>{_cell(r['value'])}</td><td>{_cell(r['updated_at'])}</td></tr>"
    body += "</table>"
    if not rows:
        body += "<p class='muted'>No config entries found; defaults apply.</p>"
    else:
        body += "<p class='muted'>Use CLI config set/get to manage values.</p>"

    return page("Config", body)


# ---------- Job detail ----------
@app.get("/job/{job_id}", response_class=HTMLResponse)
def job_detail(job_id: str, db: Storage = Depends(get_storage)):
    job = db.get_job(job_id)
    if job is None:
        return HTMLResponse(page("Job not found", f"<p>Job {escape(job_id)} not found.</p>"), status_code=404)

    body = f"""
      <h2>Job {escape(job.id)}</h2>
      <div class="cards">
        <div class="card"><b>Status</b><p>{_cell(job.status)}</p></div>
        <div class="card"><b>Kind</b><p>{_cell(job.kind)}</p></div>
        <div class="card"><b>Progress</b><p>{job.processed_items}/{job.total_items}</p></div>
        <div class="card"><b>Errors</b><p>{job.error_count}</p></div>
        <div class="card"><b>Checkpoint</b><p>{_cell(job.last_checkpoint)}</p></div>
      </div>

      <h3>Details</h3>
      <table>
        <tr><th>Source</th><td>{_cell(job.source_id)}</td></tr>
        <tr><th>Created by</th><td>{_cell(job.created_by)}</td></tr>
        <tr><th>Claimed by</th><td>{_cell(job.claimed_by)}</td></tr>
        <tr><th>Created</th><td>{_cell(job.created_at)}</td></tr>
        <tr><th>Started</th><td>{_cell(job.started_at)}</td></tr>
        <tr><th>Finished</th><td>{_cell(job.finished_at)}</td></tr>
      </table>
    """

    body += "<h3>Logs</h3><table><tr><th>Time</th><th>Level</th><th>Message</th></tr>"
    for entry in db.get_logs(job.id):
        body += (
            f"<tr class='{escape(entry.level)}'><td>{_cell(entry.created_at)}</td>"
            f"<td>{_cell(entry.level)}</td><td>{_cell(entry.message)}</td></tr>"
        )
    body += "</table>"

    records = db.get_errors(job.id)
    body += "<h3>Errors</h3>"
    if not records:
        body += "<p class='muted'>No errors recorded.</p>"
    else:
        body += "<table><tr><th>#</th><th>Stage</th><th>Code</th><th>Item</th><th>Retry</th><th>Resolved</th><th>Message</th></tr>"
        for r in records:
            body += (
                f"<tr><td>{r.id}</td><td>{_cell(r.stage)}</td><td>{_cell(r.error_code)}</td>"
                f"<td>{_cell(r.external_id)}</td><td>{r.retry_count}</td><td>{'yes' if r.resolved else 'no'}</td>"
                f"<td>{_cell(r.error_message)}</td></tr>"
            )
        body += "</table>"

    body += f'<p><a href="/job/{escape(job.id)}/logs.txt">Download log trace</a></p>'
    return page(f"Job {job.id}", body)


# ---------- Download log trace ----------
@app.get("/job/{job_id}/logs.txt", response_class=PlainTextResponse)
def download_logs(job_id: str, db: Storage = Depends(get_storage)):
    entries = db.get_logs(job_id)
    if not entries:
        return PlainTextResponse("(no logs)", media_type="text/plain")
    lines = [f"[{e.created_at}] {e.level.upper()} {e.message}" for e in entries]
    return PlainTextResponse("\n".join(lines) + "\n", media_type="text/plain")


# ---------- JSON status ----------
@app.get("/api/jobs/{job_id}", response_class=JSONResponse)
def job_status(job_id: str, db: Storage = Depends(get_storage)):
    job = db.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    return asdict(job)
