# scheduler.py
import threading
import time

import structlog

from arbiter import ClaimArbiter
from worker import CancelSignal, JobRunner

logger = structlog.get_logger()


class Scheduler:
    """
    Polls the store on a fixed interval and launches claimed jobs on their
    own threads, never holding more than `config.concurrent_jobs` at once.
    """

    def __init__(self, db, config, processor=None, owner=None):
        self.db = db
        self.config = config
        self.processor = processor
        self.arbiter = ClaimArbiter(db, owner=owner)

        self._lock = threading.Lock()
        self._active_jobs = {}      # job_id -> CancelSignal
        self._claims_in_flight = 0
        self._runner_threads = []
        self._stop_event = threading.Event()
        self._stop_event.set()
        self._poll_thread = None
        self._stopped = False

    @property
    def owner(self):
        return self.arbiter.owner

    @property
    def is_running(self):
        return not self._stop_event.is_set()

    @property
    def active_job_ids(self):
        with self._lock:
            return list(self._active_jobs)

    def start(self):
        with self._lock:
            if self.is_running:
                logger.info("scheduler_already_running", owner=self.owner)
                return
            # Each poll thread watches its own stop event so a quick
            # stop()/start() never leaves two loops polling
            stop_event = threading.Event()
            self._stop_event = stop_event
            self._stopped = False
            self._poll_thread = threading.Thread(
                target=self._poll_loop, args=(stop_event,), name=f"{self.owner}-poll", daemon=True
            )
            logger.info(
                "scheduler_starting",
                owner=self.owner,
                poll_interval=self.config.poll_interval,
                concurrent_jobs=self.config.concurrent_jobs,
                max_retries=self.config.max_retries,
            )
            self._poll_thread.start()

    def stop(self):
        """Stop polling and signal every active job. Does not wait for them."""
        with self._lock:
            self._stop_event.set()
            self._stopped = True
            for job_id, signal in self._active_jobs.items():
                logger.info("cancelling_job", job_id=job_id, owner=self.owner)
                signal.cancel()
            # Runners still finalize their own jobs after this
            self._active_jobs.clear()
        logger.info("scheduler_stopped", owner=self.owner)

    def join(self, timeout=None):
        """Wait for the poll thread and launched runners to exit. Returns True if all did."""
        with self._lock:
            threads = [t for t in self._runner_threads if t.is_alive()]
            if self._poll_thread is not None:
                threads.append(self._poll_thread)
        deadline = None if timeout is None else time.monotonic() + timeout
        for t in threads:
            t.join(None if deadline is None else max(0.0, deadline - time.monotonic()))
        return not any(t.is_alive() for t in threads)

    def _poll_loop(self, stop_event):
        while not stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("poll_error", owner=self.owner)
            # Fixed interval whether or not a job was found
            stop_event.wait(self.config.poll_interval)

    def tick(self):
        """
        One claim-and-launch cycle.
        Returns the launched job, or None when there is no free slot,
        no processor, no queued job, or the claim was lost.

        The store is only touched outside `self._lock`: a claim may sit in
        SQLite's busy timeout, and stop() or a finishing runner must not
        wait on it. A slot is reserved for the claim in flight instead.
        """
        with self._lock:
            if self._stopped or self.processor is None:
                return None
            if len(self._active_jobs) + self._claims_in_flight >= self.config.concurrent_jobs:
                return None
            self._claims_in_flight += 1
            processor = self.processor

        try:
            job = self.arbiter.claim_next()
        except Exception:
            with self._lock:
                self._claims_in_flight -= 1
            raise

        with self._lock:
            self._claims_in_flight -= 1
            if job is None:
                return None
            if not self._stopped:
                self._launch(job, processor)
                return job

        # stop() ran while the claim was in flight
        self.arbiter.release(job)
        return None

    def _launch(self, job, processor):
        signal = CancelSignal()
        self._active_jobs[job.id] = signal
        runner = JobRunner(self.db, processor, self.config, on_complete=self._on_job_complete)
        thread = threading.Thread(
            target=runner.run, args=(job, signal), name=f"import-job-{job.id[:8]}", daemon=True
        )
        self._runner_threads = [t for t in self._runner_threads if t.is_alive()]
        self._runner_threads.append(thread)
        thread.start()

    def _on_job_complete(self, job_id, signal):
        with self._lock:
            # stop() may already have cleared the map
            if self._active_jobs.get(job_id) is signal:
                del self._active_jobs[job_id]
