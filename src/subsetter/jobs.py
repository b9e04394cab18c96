from __future__ import annotations

import logging
from concurrent.futures import FIRST_EXCEPTION, Future, ThreadPoolExecutor, wait
from threading import Event, Lock
from typing import Callable, Iterable, List, Optional

from .cancellation import CancellationHandler

logger = logging.getLogger(__name__)

Job = Callable[[], None]


class JobManager:
    """
    Bounded worker pool executing batches of independent jobs.

    :meth:`execute_jobs` blocks until every job of the batch succeeded or
    one failed. On failure, jobs that have not started yet are skipped,
    running jobs are awaited and the first error is re-raised. With a
    single thread, or a single job, jobs run inline in the caller thread.
    """

    def __init__(self, threads: int = 1, cancellation: Optional[CancellationHandler] = None) -> None:
        if threads < 1:
            raise ValueError("threads must be >= 1")
        self.threads = threads
        self._cancellation = cancellation or CancellationHandler()
        self._executor: Optional[ThreadPoolExecutor] = None
        self._lock = Lock()

    def _pool(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.threads, thread_name_prefix="subsetter-job"
                )
            return self._executor

    def execute_jobs(self, jobs: Iterable[Job]) -> None:
        batch = list(jobs)
        if not batch:
            return
        if self.threads == 1 or len(batch) == 1:
            for job in batch:
                self._cancellation.check()
                job()
            return

        failed = Event()

        def run(job: Job) -> None:
            if failed.is_set():
                return
            self._cancellation.check()
            job()

        pool = self._pool()
        futures: List[Future] = [pool.submit(run, job) for job in batch]
        done, pending = wait(futures, return_when=FIRST_EXCEPTION)

        error: Optional[BaseException] = None
        for future in futures:
            if future in done and future.exception() is not None:
                error = future.exception()
                break
        if error is None:
            return

        failed.set()
        for future in pending:
            future.cancel()
        wait([f for f in pending if not f.cancelled()])
        logger.debug("job batch aborted: %s", error)
        raise error

    def shutdown(self) -> None:
        with self._lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=True)
