"""Tests for the lifecycle API."""
from conftest import wait_for

from config import SchedulerConfig
from models import FAILED, QUEUED, RUNNING, SUCCESS


def test_enqueue_logs_and_waits_for_poll(make_queue):
    queue = make_queue(processor=lambda job, signal: None)
    job = queue.enqueue("shopify-1", "full", "alice")

    # Nothing runs until the scheduler polls
    assert queue.status(job.id).status == QUEUED
    logs = queue.logs(job.id)
    assert [(e.level, e.message) for e in logs] == [
        ("info", "Job enqueued: full import from source shopify-1"),
    ]


def test_status_unknown_job(make_queue):
    assert make_queue().status("missing") is None


def test_progress_and_checkpoint_visible_while_running(make_queue):
    seen = {}

    def processor(job, signal):
        queue.progress(job.id, 3, 10)
        queue.checkpoint(job.id, "page-2")
        seen.update(vars(queue.status(job.id)))

    queue = make_queue(processor=processor)
    job = queue.enqueue("src", "delta", "alice")
    queue.start()

    assert wait_for(lambda: queue.status(job.id).status == SUCCESS)
    assert seen["status"] == RUNNING
    assert (seen["processed_items"], seen["total_items"], seen["last_checkpoint"]) == (3, 10, "page-2")


def test_checkpoint_survives_retry(make_queue):
    checkpoints = []

    def resumable(job, signal):
        checkpoints.append(job.last_checkpoint)
        if job.last_checkpoint is None:
            queue.checkpoint(job.id, "cursor-50")
            raise RuntimeError("connection reset")

    queue = make_queue(processor=resumable)
    job = queue.enqueue("src", "full", "alice")
    queue.start()

    assert wait_for(lambda: queue.status(job.id).status == SUCCESS)
    assert checkpoints == [None, "cursor-50"]


def test_logs_pagination(make_queue):
    queue = make_queue(processor=lambda job, signal: None)
    job = queue.enqueue("src", "full", "alice")
    queue.start()
    assert wait_for(lambda: queue.status(job.id).status == SUCCESS)

    everything = queue.logs(job.id)
    assert len(everything) == 3
    assert queue.logs(job.id, limit=1, offset=1) == everything[1:2]


def test_requeue_failed_job(make_queue):
    attempts = []

    def fails_once_permanently(job, signal):
        attempts.append(job.id)
        if len(attempts) == 1:
            raise RuntimeError("bad credentials")

    queue = make_queue(
        config=SchedulerConfig(poll_interval=0.02, max_retries=1, concurrent_jobs=1),
        processor=fails_once_permanently,
    )
    job = queue.enqueue("src", "delta", "alice")
    queue.start()
    assert wait_for(lambda: queue.status(job.id).status == FAILED)

    assert queue.requeue(job.id) is True
    assert wait_for(lambda: queue.status(job.id).status == SUCCESS)
    assert "Job requeued by operator" in [e.message for e in queue.logs(job.id)]
    assert queue.requeue(job.id) is False


def test_rescue_stale(make_queue, db):
    queue = make_queue()
    job = queue.enqueue("src", "delta", "alice")
    db.conditional_claim(job.id, claimed_by="scheduler-dead")

    assert queue.rescue_stale(older_than_seconds=3600) == []
    assert queue.rescue_stale(older_than_seconds=-1) == [job.id]

    stored = queue.status(job.id)
    assert stored.status == QUEUED
    assert stored.claimed_by is None
    assert any(e.level == "warn" and "stale" in e.message for e in queue.logs(job.id))


def test_resolve_error(make_queue, db):
    queue = make_queue()
    job = queue.enqueue("src", "delta", "alice")
    db.append_error(job.id, "fetch", "timeout", external_id="sku-1")
    error = queue.errors(job.id)[0]

    assert queue.resolve_error(error.id) is True
    assert queue.errors(job.id, unresolved_only=True) == []


def test_list_and_summary(make_queue):
    queue = make_queue()
    a = queue.enqueue("a", "full", "alice")
    b = queue.enqueue("b", "delta", "bob")
    assert [j.id for j in queue.list_jobs()] == [b.id, a.id]
    assert queue.summary()[QUEUED] == 2
