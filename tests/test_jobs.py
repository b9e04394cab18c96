import threading
from typing import List

import pytest

from subsetter.cancellation import CancellationHandler
from subsetter.errors import CancellationError
from subsetter.jobs import JobManager


def test_single_thread_runs_inline_in_order() -> None:
    manager = JobManager(1)
    seen: List[int] = []
    manager.execute_jobs(lambda i=i: seen.append(i) for i in range(5))
    assert seen == [0, 1, 2, 3, 4]


def test_parallel_jobs_all_run() -> None:
    manager = JobManager(4)
    seen: List[int] = []
    lock = threading.Lock()

    def job(i: int) -> None:
        with lock:
            seen.append(i)

    try:
        manager.execute_jobs(lambda i=i: job(i) for i in range(20))
    finally:
        manager.shutdown()
    assert sorted(seen) == list(range(20))


def test_first_error_is_reraised() -> None:
    manager = JobManager(2)

    def fail() -> None:
        raise ValueError("boom")

    try:
        with pytest.raises(ValueError, match="boom"):
            manager.execute_jobs([fail, lambda: None, lambda: None])
    finally:
        manager.shutdown()


def test_cancelled_batch_raises() -> None:
    cancellation = CancellationHandler()
    manager = JobManager(1, cancellation)
    cancellation.cancel()
    with pytest.raises(CancellationError):
        manager.execute_jobs([lambda: None])


def test_empty_batch_is_noop() -> None:
    JobManager(3).execute_jobs([])


def test_threads_must_be_positive() -> None:
    with pytest.raises(ValueError):
        JobManager(0)
