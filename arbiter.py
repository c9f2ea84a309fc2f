# arbiter.py
import uuid

import structlog

from models import QUEUED

logger = structlog.get_logger()


class ClaimArbiter:
    """
    Hands out at most one claim per queued job across every scheduler
    sharing the store, using the store's conditional update instead of a lock.
    """

    def __init__(self, db, owner=None):
        self.db = db
        self.owner = owner or f"scheduler-{uuid.uuid4().hex[:8]}"

    def claim_next(self):
        """
        Claim the oldest queued job.
        Returns the claimed job, or None if the queue is empty or the
        candidate was taken by another scheduler between read and update.
        Store errors propagate to the caller.
        """
        candidate = self.db.select_oldest_queued()
        if candidate is None:
            return None

        job = self.db.conditional_claim(candidate.id, claimed_by=self.owner)
        if job is None:
            # Lost the race to another scheduler; the next tick tries again
            logger.debug("claim_lost", job_id=candidate.id, owner=self.owner)
            return None

        logger.info(
            "job_claimed",
            job_id=job.id,
            source_id=job.source_id,
            kind=job.kind,
            error_count=job.error_count,
            owner=self.owner,
        )
        return job

    def release(self, job):
        """Hand an unlaunched claim back to the queue. Returns True if it was still ours."""
        released = self.db.finalize(job.id, QUEUED, claim=job)
        logger.info("claim_released", job_id=job.id, owner=self.owner, released=released)
        return released
