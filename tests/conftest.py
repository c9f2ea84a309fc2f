"""Shared fixtures for scheduler tests."""
import time

import pytest

from config import SchedulerConfig
from importqueue import ImportQueue
from storage import Storage

FAST = SchedulerConfig(poll_interval=0.02, max_retries=3, concurrent_jobs=2)


def wait_for(predicate, timeout=5.0, interval=0.01):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "jobs.db")


@pytest.fixture
def db(db_path):
    store = Storage(db_path)
    yield store
    store.close()


@pytest.fixture
def make_queue(db):
    queues = []

    def _make(config=FAST, processor=None):
        queue = ImportQueue(db, config)
        if processor is not None:
            queue.register_processor(processor)
        queues.append(queue)
        return queue

    yield _make

    for queue in queues:
        queue.stop()
        queue.join(timeout=5)
