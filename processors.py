# processors.py
import importlib

import structlog

from models import JobCancelled

logger = structlog.get_logger()


def load_processor_factory(path):
    """
    Resolve "package.module:attr" to a factory called as `factory(queue)`
    that returns the processor `process(job, signal)`.
    """
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Processor must look like 'module:attr', got {path!r}")
    module = importlib.import_module(module_name)
    try:
        return getattr(module, attr)
    except AttributeError as e:
        raise ValueError(f"Module {module_name!r} has no attribute {attr!r}") from e


class DemoProcessor:
    """
    Stand-in import used by `importctl worker` when no real processor is
    given: walks `items` fake records, reporting progress per item and a
    checkpoint per batch, and resumes from the last checkpoint on retry.
    Sources whose id starts with "fail" raise to exercise the retry path.
    """

    def __init__(self, queue, items=20, delay=0.1, batch_size=5):
        self.queue = queue
        self.items = items
        self.delay = delay
        self.batch_size = batch_size

    def __call__(self, job, signal):
        start = int(job.last_checkpoint) if job.last_checkpoint else 0
        if start:
            logger.info("demo_import_resuming", job_id=job.id, checkpoint=start)

        for i in range(start, self.items):
            signal.raise_if_cancelled()
            if job.source_id.startswith("fail") and i >= self.items // 2:
                raise RuntimeError(f"Source {job.source_id} rejected item {i}")
            if signal.wait(self.delay):
                raise JobCancelled(f"Cancelled at item {i}")

            done = i + 1
            self.queue.progress(job.id, done, self.items)
            if done % self.batch_size == 0:
                self.queue.checkpoint(job.id, str(done))

        logger.info("demo_import_done", job_id=job.id, kind=job.kind, items=self.items)
