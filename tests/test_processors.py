"""Tests for processor loading and the demo import."""
import pytest
from conftest import wait_for

from config import SchedulerConfig
from models import FAILED, SUCCESS, JobCancelled
from processors import DemoProcessor, load_processor_factory
from worker import CancelSignal


def test_load_processor_factory():
    assert load_processor_factory("processors:DemoProcessor") is DemoProcessor


@pytest.mark.parametrize("path", ["processors", "processors:", ":DemoProcessor"])
def test_load_processor_factory_rejects_bad_paths(path):
    with pytest.raises(ValueError):
        load_processor_factory(path)


def test_load_processor_factory_missing_attr():
    with pytest.raises(ValueError, match="no attribute"):
        load_processor_factory("processors:Nope")


def test_load_processor_factory_missing_module():
    with pytest.raises(ImportError):
        load_processor_factory("no_such_module_here:thing")


def test_demo_import_reports_progress_and_checkpoints(make_queue):
    queue = make_queue()
    queue.register_processor(DemoProcessor(queue, items=6, delay=0, batch_size=3))
    job = queue.enqueue("shop", "full", "alice")
    queue.start()

    assert wait_for(lambda: queue.status(job.id).status == SUCCESS)
    stored = queue.status(job.id)
    assert (stored.processed_items, stored.total_items) == (6, 6)
    assert stored.last_checkpoint == "6"


def test_demo_import_resumes_from_checkpoint(make_queue, db):
    queue = make_queue()
    processor = DemoProcessor(queue, items=4, delay=0, batch_size=2)
    job = db.insert_job("shop", "delta", "alice")
    db.update_checkpoint(job.id, "2")

    processor(db.get_job(job.id), CancelSignal())
    # Progress starts past the checkpoint
    assert db.get_job(job.id).processed_items == 4


def test_demo_import_failing_source_exhausts_retries(make_queue):
    queue = make_queue(config=SchedulerConfig(poll_interval=0.01, max_retries=2, concurrent_jobs=1))
    queue.register_processor(DemoProcessor(queue, items=4, delay=0, batch_size=2))
    job = queue.enqueue("fail-source", "full", "alice")
    queue.start()

    assert wait_for(lambda: queue.status(job.id).status == FAILED)
    assert len(queue.errors(job.id)) == 2


def test_demo_import_honours_cancellation(make_queue, db):
    queue = make_queue()
    processor = DemoProcessor(queue, items=100, delay=0.01)
    job = db.insert_job("shop", "full", "alice")
    signal = CancelSignal()
    signal.cancel()

    with pytest.raises(JobCancelled):
        processor(db.get_job(job.id), signal)
    assert db.get_job(job.id).processed_items == 0
