# cli.py
import os
import signal
import time

import click

from config import SchedulerConfig
from importqueue import ImportQueue
from logconfig import configure_logging
from models import JOB_KINDS, JOB_STATUSES
from processors import load_processor_factory
from storage import Storage

DEFAULT_PROCESSOR = "processors:DemoProcessor"


@click.group()
@click.option("--db", "db_path", default="queue.db", envvar="IMPORTCTL_DB", show_default=True,
              help="SQLite job store path")
@click.option("--log-level", default="INFO", envvar="IMPORTCTL_LOG_LEVEL", help="Process log level")
@click.option("--json-logs", is_flag=True, help="Emit process logs as JSON")
@click.pass_context
def cli(ctx, db_path, log_level, json_logs):
    """importctl - schedule and inspect import jobs"""
    configure_logging(json=json_logs, level=log_level)
    ctx.ensure_object(dict)
    ctx.obj["db_path"] = db_path


def _storage(ctx):
    return Storage(ctx.obj["db_path"])


def _queue(ctx, **overrides):
    db = _storage(ctx)
    try:
        cfg = SchedulerConfig.from_storage(db, **overrides)
    except ValueError as e:
        raise click.ClickException(str(e))
    return ImportQueue(db, cfg)


# ---------------- Enqueue ----------------
@cli.command()
@click.option("--source-id", required=True, help="Import source to pull from")
@click.option("--kind", type=click.Choice(JOB_KINDS), default="delta", show_default=True, help="Import kind")
@click.option("--created-by", required=True, help="Requesting user")
@click.pass_context
def enqueue(ctx, source_id, kind, created_by):
    """Add a new import job to the queue"""
    job = _queue(ctx).enqueue(source_id, kind, created_by)
    click.echo(f"✅ Job {job.id} enqueued ({kind} import from {source_id}).")


# ---------------- List Jobs ----------------
@cli.command(name="list")
@click.option("--status", type=click.Choice(JOB_STATUSES), default=None, help="Filter jobs by status")
@click.option("--limit", default=50, show_default=True, help="Maximum jobs to show")
@click.pass_context
def list_jobs(ctx, status, limit):
    """List jobs, newest first"""
    jobs = _queue(ctx).list_jobs(status=status, limit=limit)
    if not jobs:
        click.echo("No jobs found.")
        return

    for job in jobs:
        click.echo(
            f"{job.id} | source={job.source_id} | kind={job.kind} | status={job.status} | "
            f"progress={job.processed_items}/{job.total_items} | errors={job.error_count} | created={job.created_at}"
        )


# ---------------- Status ----------------
@cli.command()
@click.pass_context
def status(ctx):
    """Show summary of job states"""
    counts = _queue(ctx).summary()
    if not any(counts.values()):
        click.echo("No jobs in the system yet.")
        return

    click.echo("📊 Job Status Summary:")
    for state, count in counts.items():
        click.echo(f"  {state}: {count}")


@cli.command()
@click.argument("job_id")
@click.pass_context
def show(ctx, job_id):
    """Show details of a single job"""
    job = _queue(ctx).status(job_id)
    if job is None:
        raise click.ClickException(f"Job {job_id} not found.")

    click.echo(f"🔎 Job {job.id}")
    click.echo(f"  Source: {job.source_id}")
    click.echo(f"  Kind: {job.kind}")
    click.echo(f"  Status: {job.status}")
    click.echo(f"  Created by: {job.created_by}")
    click.echo(f"  Progress: {job.processed_items}/{job.total_items}")
    click.echo(f"  Errors: {job.error_count}")
    click.echo(f"  Checkpoint: {job.last_checkpoint or '-'}")
    click.echo(f"  Claimed by: {job.claimed_by or '-'}")
    click.echo(f"  Created: {job.created_at}")
    click.echo(f"  Started: {job.started_at or '-'}")
    click.echo(f"  Finished: {job.finished_at or '-'}")


# ---------------- Logs & errors ----------------
@cli.command()
@click.argument("job_id")
@click.option("--limit", default=None, type=int, help="Show at most N entries")
@click.option("--offset", default=0, show_default=True, help="Skip the first N entries")
@click.pass_context
def logs(ctx, job_id, limit, offset):
    """Show the log trace of a job"""
    entries = _queue(ctx).logs(job_id, limit=limit, offset=offset)
    if not entries:
        click.echo(f"No logs for job {job_id}.")
        return
    for entry in entries:
        details = f" {entry.details}" if entry.details is not None else ""
        click.echo(f"[{entry.created_at}] {entry.level.upper():5} {entry.message}{details}")


@cli.command()
@click.argument("job_id")
@click.option("--unresolved", is_flag=True, help="Only show unresolved errors")
@click.pass_context
def errors(ctx, job_id, unresolved):
    """Show error records of a job"""
    records = _queue(ctx).errors(job_id, unresolved_only=unresolved)
    if not records:
        click.echo(f"No errors for job {job_id}.")
        return
    for r in records:
        flag = "resolved" if r.resolved else "open"
        click.echo(
            f"#{r.id} [{r.created_at}] stage={r.stage} code={r.error_code or '-'} "
            f"item={r.external_id or '-'} retry={r.retry_count} {flag} | {r.error_message}"
        )


@cli.command()
@click.argument("error_id", type=int)
@click.pass_context
def resolve(ctx, error_id):
    """Mark an error record as resolved"""
    if not _queue(ctx).resolve_error(error_id):
        raise click.ClickException(f"Error #{error_id} not found or already resolved.")
    click.echo(f"✔️ Error #{error_id} marked resolved.")


# ---------------- Retry ----------------
@cli.command()
@click.argument("job_id")
@click.pass_context
def retry(ctx, job_id):
    """Move a failed job back to the queue with fresh retries"""
    if not _queue(ctx).requeue(job_id):
        raise click.ClickException(f"Job {job_id} not found or not failed.")
    click.echo(f"♻️ Job {job_id} moved back to queued.")


# ---------------- Rescue operations ----------------
@cli.group()
def rescue():
    """Recovery tools for stuck jobs"""
    pass


@rescue.command("stale")
@click.option("--older-than-seconds", default=3600, show_default=True,
              help="Requeue running jobs started more than N seconds ago")
@click.pass_context
def rescue_stale(ctx, older_than_seconds):
    """Return jobs left running by a dead scheduler to the queue"""
    ids = _queue(ctx).rescue_stale(older_than_seconds)
    if not ids:
        click.echo("No stale jobs found.")
        return
    click.echo(f"🔧 Returned {len(ids)} job(s) to queued: {', '.join(ids)}")


# ---------------- Worker ----------------
@cli.command()
@click.option("--concurrency", default=None, type=int, help="Concurrent jobs (uses config if set)")
@click.option("--poll-interval", default=None, type=float, help="Poll interval in seconds (uses config if set)")
@click.option("--max-retries", default=None, type=int, help="Failed attempts before giving up (uses config if set)")
@click.option("--processor", default=DEFAULT_PROCESSOR, show_default=True,
              help="'module:factory' building the processor from the queue")
@click.option("--shutdown-timeout", default=30.0, show_default=True,
              help="Seconds to wait for cancelled jobs on shutdown")
@click.pass_context
def worker(ctx, concurrency, poll_interval, max_retries, processor, shutdown_timeout):
    """Run the scheduler until Ctrl+C or SIGTERM"""
    queue = _queue(ctx, concurrent_jobs=concurrency, poll_interval=poll_interval, max_retries=max_retries)
    try:
        factory = load_processor_factory(processor)
    except (ValueError, ImportError) as e:
        raise click.ClickException(str(e))

    queue.register_processor(factory(queue))

    def _terminate(signum, frame):
        raise KeyboardInterrupt

    signal.signal(signal.SIGTERM, _terminate)

    cfg = queue.config
    queue.start()
    click.echo(f"🚀 Scheduler {queue.scheduler.owner} started "
               f"(concurrency={cfg.concurrent_jobs}, poll={cfg.poll_interval}s, max_retries={cfg.max_retries})")
    click.echo("Press Ctrl+C to stop gracefully.")

    try:
        while True:
            time.sleep(0.5)
    except KeyboardInterrupt:
        click.echo("\n🛑 Stopping scheduler ...")
        queue.stop()
        if queue.join(timeout=shutdown_timeout):
            click.echo("✅ Scheduler stopped cleanly.")
        else:
            click.echo("⚠️ Some jobs were still running at shutdown.")


# ---------------- Dashboard ----------------
@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, show_default=True)
@click.pass_context
def dashboard(ctx, host, port):
    """Serve the read-only web dashboard"""
    import uvicorn
    from dashboard import app

    # The dashboard opens its store per request from the same variable
    os.environ["IMPORTCTL_DB"] = ctx.obj["db_path"]
    uvicorn.run(app, host=host, port=port)


# ---------------- Config management ----------------
@cli.group()
def config():
    """Scheduler configuration stored alongside the jobs"""
    pass


@config.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_context
def config_set(ctx, key, value):
    """Set a config key to a value"""
    db = _storage(ctx)
    db.set_config(key, value)
    try:
        SchedulerConfig.from_storage(db)
    except ValueError as e:
        click.echo(f"⚠️ Stored, but the scheduler will reject it: {e}")
        return
    click.echo(f"🛠️ Config '{key}' set to '{value}'.")


@config.command("get")
@click.argument("key")
@click.option("--default", default=None, help="Fallback if key not set")
@click.pass_context
def config_get(ctx, key, default):
    """Get a config key"""
    value = _storage(ctx).get_config(key)
    if value is None:
        if default is not None:
            click.echo(f"{key}={default} (default)")
        else:
            click.echo(f"{key} not set")
        return
    click.echo(f"{key}={value}")


@config.command("list")
@click.pass_context
def config_list(ctx):
    """List all config keys"""
    rows = _storage(ctx).list_config()
    if not rows:
        click.echo("No config keys set.")
        return
    for row in rows:
        click.echo(f"{row['key']}={row['value']} (updated_at={row['updated_at']})")


# ---------------- Entrypoint ----------------
if __name__ == "__main__":
    cli()
