"""
Compute System

A small thread pool that runs batches of work items. Layers submit one item
per chunk, then block in wait() until the whole batch has finished.
"""

import itertools
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, wait as wait_futures

from .errors import ConfigurationError

logger = logging.getLogger(__name__)


class WorkItem:
    """
    A unit of work run by a ComputeSystem worker

    run() receives the index of the worker thread, in [0, num_workers). It
    identifies the worker only, for per-thread scratch or diagnostics. The
    result of an item never depends on it.
    """

    def run(self, thread_index):
        raise NotImplementedError


class ComputeSystem:
    """
    Thread pool executing work items

    Args:
        num_workers (int, optional): Number of worker threads. Defaults to 1.
    """

    def __init__(self, num_workers=1):
        if num_workers < 1:
            raise ConfigurationError(f"num_workers must be at least 1, got {num_workers}")

        self.num_workers = num_workers

        self._local = threading.local()
        self._counter = itertools.count()
        self._counter_lock = threading.Lock()

        self._executor = ThreadPoolExecutor(
            max_workers=num_workers,
            thread_name_prefix="sparsepc",
            initializer=self._init_worker,
        )
        self._futures = []

    def _init_worker(self):
        with self._counter_lock:
            self._local.thread_index = next(self._counter)

    def _run(self, item):
        item.run(self._local.thread_index)

    def add_work_item(self, item):
        """Submit a work item to the pool."""
        self._futures.append(self._executor.submit(self._run, item))

    def wait(self):
        """
        Block until every submitted item has completed

        Raises:
            Exception: The first exception raised by a work item, once the
                whole batch has drained.
        """
        futures, self._futures = self._futures, []
        wait_futures(futures)

        for future in futures:
            error = future.exception()
            if error is not None:
                logger.error("Work item failed: %s", error)
                raise error

    def shutdown(self):
        self._executor.shutdown(wait=True)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.shutdown()
