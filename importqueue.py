# importqueue.py
from datetime import datetime, timedelta, timezone

import structlog

from config import SchedulerConfig
from models import INFO, WARN
from scheduler import Scheduler

logger = structlog.get_logger()


class ImportQueue:
    """
    Public face of the scheduler: enqueue and observe import jobs, and
    start or stop the background loop that executes them.
    """

    def __init__(self, db, config=None, owner=None):
        self.db = db
        self.config = config or SchedulerConfig()
        self.scheduler = Scheduler(db, self.config, owner=owner)

    # ---------------- Scheduler control ----------------
    def register_processor(self, processor):
        """Set the callable `processor(job, signal)` that performs an import."""
        self.scheduler.processor = processor

    def start(self):
        self.scheduler.start()

    def stop(self):
        self.scheduler.stop()

    def join(self, timeout=None):
        return self.scheduler.join(timeout)

    @property
    def is_running(self):
        return self.scheduler.is_running

    @property
    def active_job_ids(self):
        return self.scheduler.active_job_ids

    # ---------------- Jobs ----------------
    def enqueue(self, source_id, kind, created_by):
        """Queue a job; it becomes eligible on the next poll tick."""
        job = self.db.insert_job(source_id, kind, created_by)
        self.db.append_log(job.id, INFO, f"Job enqueued: {kind} import from source {source_id}")
        logger.info("job_enqueued", job_id=job.id, source_id=source_id, kind=kind, created_by=created_by)
        return job

    def status(self, job_id):
        return self.db.get_job(job_id)

    def logs(self, job_id, limit=None, offset=0):
        return self.db.get_logs(job_id, limit=limit, offset=offset)

    def errors(self, job_id, unresolved_only=False):
        return self.db.get_errors(job_id, unresolved_only=unresolved_only)

    def list_jobs(self, status=None, limit=50):
        return self.db.list_jobs(status=status, limit=limit)

    def summary(self):
        return self.db.count_by_status()

    # ---------------- Processor callbacks ----------------
    def progress(self, job_id, processed, total):
        self.db.update_progress(job_id, processed, total)

    def checkpoint(self, job_id, token):
        self.db.update_checkpoint(job_id, token)

    # ---------------- Operator actions ----------------
    def requeue(self, job_id):
        """Give a failed job a fresh set of retries."""
        if not self.db.requeue_failed(job_id):
            return False
        self.db.append_log(job_id, INFO, "Job requeued by operator")
        logger.info("job_requeued", job_id=job_id)
        return True

    def rescue_stale(self, older_than_seconds):
        """Return jobs stuck in `running` (their scheduler died) to the queue."""
        cutoff = (datetime.now(timezone.utc) - timedelta(seconds=older_than_seconds)).isoformat()
        ids = self.db.requeue_stale(cutoff)
        for job_id in ids:
            self.db.append_log(
                job_id,
                WARN,
                "Job returned to queue after stale claim",
                {"older_than_seconds": older_than_seconds},
            )
            logger.warning("stale_job_requeued", job_id=job_id, older_than_seconds=older_than_seconds)
        return ids

    def resolve_error(self, error_id):
        return self.db.resolve_error(error_id)
