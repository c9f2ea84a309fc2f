"""Tests for the job runner's outcome handling."""
import sqlite3

import pytest

from config import SchedulerConfig
from models import FAILED, QUEUED, RUNNING, SUCCESS, JobCancelled
from worker import CancelSignal, JobRunner

CONFIG = SchedulerConfig(poll_interval=0.01, max_retries=3, concurrent_jobs=2)


class CodedError(Exception):
    def __init__(self, message, code):
        super().__init__(message)
        self.code = code


def claim(db, source_id="src"):
    job = db.insert_job(source_id, "delta", "tester")
    return db.conditional_claim(job.id)


def run(db, job, processor, signal=None, config=CONFIG):
    completed = []
    runner = JobRunner(db, processor, config, on_complete=lambda job_id, sig: completed.append(job_id))
    runner.run(job, signal or CancelSignal())
    return completed


def messages(db, job_id, level=None):
    return [e.message for e in db.get_logs(job_id) if level is None or e.level == level]


def test_success(db):
    job = claim(db)
    seen = []
    completed = run(db, job, lambda j, s: seen.append(j.id))

    stored = db.get_job(job.id)
    assert seen == [job.id]
    assert stored.status == SUCCESS
    assert stored.finished_at is not None
    assert completed == [job.id]
    assert messages(db, job.id, "info") == [
        f"Starting job {job.id}",
        f"Job {job.id} completed successfully",
    ]


def test_failure_below_cap_requeues(db):
    job = claim(db)

    def boom(j, s):
        raise CodedError("upstream 503", code=503)

    run(db, job, boom)

    stored = db.get_job(job.id)
    assert stored.status == QUEUED
    assert stored.finished_at is None
    assert stored.error_count == 1

    records = db.get_errors(job.id)
    assert len(records) == 1
    assert (records[0].stage, records[0].error_message, records[0].error_code) == ("process", "upstream 503", "503")
    assert records[0].retry_count == 0
    assert messages(db, job.id, "warn") == [f"Job {job.id} failed, will retry (1/3)"]


def test_failure_at_cap_fails_permanently(db):
    job = claim(db)
    db.increment_error_count(job.id)
    db.increment_error_count(job.id)
    job = db.get_job(job.id)

    def boom(j, s):
        raise RuntimeError("still broken")

    run(db, job, boom)

    stored = db.get_job(job.id)
    assert stored.status == FAILED
    assert stored.finished_at is not None
    assert stored.error_count == 3
    assert db.get_errors(job.id)[0].retry_count == 2
    assert messages(db, job.id, "error") == [f"Job {job.id} failed permanently after 3 retries"]


def test_max_retries_of_one_never_requeues(db):
    job = claim(db)

    def boom(j, s):
        raise RuntimeError("nope")

    run(db, job, boom, config=SchedulerConfig(poll_interval=0.01, max_retries=1, concurrent_jobs=1))
    assert db.get_job(job.id).status == FAILED


def test_exception_without_message_is_recorded_by_type(db):
    job = claim(db)

    def boom(j, s):
        raise KeyError()

    run(db, job, boom)
    assert db.get_errors(job.id)[0].error_message == "KeyError"


@pytest.mark.parametrize("outcome", ["return", "raise", "job_cancelled"])
def test_cancellation_takes_precedence(db, outcome):
    job = claim(db)
    signal = CancelSignal()

    def processor(j, s):
        s.cancel()
        if outcome == "raise":
            raise RuntimeError("interrupted mid-import")
        if outcome == "job_cancelled":
            s.raise_if_cancelled()

    run(db, job, processor, signal=signal)

    stored = db.get_job(job.id)
    assert stored.status == FAILED
    assert stored.finished_at is not None
    # Cancellation is never retried or counted as a processor failure
    assert stored.error_count == 0
    assert db.get_errors(job.id) == []
    assert messages(db, job.id, "warn") == [f"Job {job.id} was cancelled"]


def test_finalize_skipped_when_job_no_longer_running(db):
    job = claim(db)

    def processor(j, s):
        # An operator forced the job elsewhere while it ran
        db.finalize(j.id, FAILED, finished_at="2020-01-01T00:00:00+00:00")

    run(db, job, processor)

    stored = db.get_job(job.id)
    assert stored.status == FAILED
    assert stored.finished_at == "2020-01-01T00:00:00+00:00"
    assert f"Job {job.id} completed successfully" not in messages(db, job.id)


def test_bookkeeping_failure_still_frees_slot(db):
    job = claim(db)

    class BrokenStore:
        def append_log(self, *args, **kwargs):
            raise sqlite3.OperationalError("database is locked")

    completed = run(BrokenStore(), job, lambda j, s: None)
    assert completed == [job.id]


def test_completion_hook_runs_once_on_failure(db):
    job = claim(db)

    def boom(j, s):
        raise RuntimeError("x")

    assert run(db, job, boom) == [job.id]


def test_cancel_signal():
    signal = CancelSignal()
    assert signal.cancelled is False
    assert signal.wait(0.01) is False
    signal.raise_if_cancelled()

    signal.cancel()
    assert signal.cancelled is True
    assert signal.wait(1) is True
    with pytest.raises(JobCancelled):
        signal.raise_if_cancelled()


@pytest.mark.parametrize("outcome", ["return", "raise", "cancel"])
def test_runner_that_lost_its_claim_changes_nothing(db, outcome):
    job = claim(db)

    def processor(j, s):
        # An operator rescues the job and another scheduler claims it
        db.requeue_stale("9999-12-31T00:00:00+00:00")
        db.conditional_claim(j.id, claimed_by="scheduler-b")
        if outcome == "raise":
            raise RuntimeError("late failure")
        if outcome == "cancel":
            s.cancel()

    run(db, job, processor)

    stored = db.get_job(job.id)
    assert stored.status == RUNNING
    assert stored.claimed_by == "scheduler-b"
    assert stored.error_count == 0
    assert stored.finished_at is None
    assert db.get_errors(job.id) == []
    assert messages(db, job.id) == [f"Starting job {job.id}"]
