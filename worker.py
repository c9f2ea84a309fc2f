# worker.py
import threading

import structlog

from models import ERROR, FAILED, INFO, QUEUED, RUNNING, SUCCESS, WARN, JobCancelled
from storage import utc_now

logger = structlog.get_logger()


class CancelSignal:
    """Cooperative cancellation flag handed to a processor."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self):
        return self._event.is_set()

    def wait(self, timeout=None):
        """Sleep up to `timeout` seconds; returns True as soon as cancelled."""
        return self._event.wait(timeout)

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise JobCancelled("Job cancellation requested")


class JobRunner:
    """
    Drives one claimed job through the processor to success, failure,
    requeue or cancellation, and frees its scheduler slot when done.
    """

    def __init__(self, db, processor, config, on_complete=None):
        self.db = db
        self.processor = processor
        self.config = config
        self.on_complete = on_complete

    def run(self, job, signal):
        try:
            self._process_job(job, signal)
        except Exception:
            # No caller to raise to once a job is launched
            logger.exception("job_bookkeeping_failed", job_id=job.id)
        finally:
            if self.on_complete is not None:
                self.on_complete(job.id, signal)

    def _log_transition(self, job_id, old_state, new_state, **extra):
        logger.info("job_transition", job_id=job_id, old_state=old_state, new_state=new_state, **extra)

    def _process_job(self, job, signal):
        # The claim already persisted `running`
        self.db.append_log(job.id, INFO, f"Starting job {job.id}")

        try:
            self.processor(job, signal)
        except Exception as exc:
            if signal.cancelled:
                self._handle_cancelled(job)
                return
            self._handle_failure(job, exc)
            return

        if signal.cancelled:
            self._handle_cancelled(job)
            return

        if not self.db.finalize(job.id, SUCCESS, finished_at=utc_now(), claim=job):
            logger.warning("job_claim_lost_skipping_update", job_id=job.id, outcome=SUCCESS)
            return
        self._log_transition(job.id, RUNNING, SUCCESS)
        self.db.append_log(job.id, INFO, f"Job {job.id} completed successfully")

    def _handle_cancelled(self, job):
        if not self.db.finalize(job.id, FAILED, finished_at=utc_now(), claim=job):
            logger.warning("job_claim_lost_skipping_update", job_id=job.id, outcome="cancelled")
            return
        self._log_transition(job.id, RUNNING, FAILED, reason="cancelled")
        self.db.append_log(job.id, WARN, f"Job {job.id} was cancelled")

    def _handle_failure(self, job, exc):
        logger.error("job_failed", job_id=job.id, error=str(exc), exc_info=exc)

        # `job` is the claim snapshot; a runner whose claim was rescued
        # and taken by another scheduler must not spend its retries
        error_count = self.db.increment_error_count(job.id, claim=job)
        if error_count is None:
            logger.warning("job_claim_lost_skipping_update", job_id=job.id, outcome="failure")
            return

        code = getattr(exc, "code", None)
        self.db.append_error(
            job.id,
            "process",
            str(exc) or exc.__class__.__name__,
            code=str(code) if code is not None else None,
            retry_count=job.error_count,
        )
        max_retries = self.config.max_retries

        if error_count < max_retries:
            if not self.db.finalize(job.id, QUEUED, claim=job):
                logger.warning("job_claim_lost_skipping_update", job_id=job.id, outcome="retry")
                return
            self._log_transition(job.id, RUNNING, QUEUED, attempts=error_count, max_retries=max_retries)
            self.db.append_log(
                job.id,
                WARN,
                f"Job {job.id} failed, will retry ({error_count}/{max_retries})",
                {"error": str(exc), "attempt": error_count},
            )
        else:
            if not self.db.finalize(job.id, FAILED, finished_at=utc_now(), claim=job):
                logger.warning("job_claim_lost_skipping_update", job_id=job.id, outcome=FAILED)
                return
            self._log_transition(job.id, RUNNING, FAILED, attempts=error_count, max_retries=max_retries)
            self.db.append_log(
                job.id,
                ERROR,
                f"Job {job.id} failed permanently after {max_retries} retries",
                {"error": str(exc), "attempt": error_count},
            )
