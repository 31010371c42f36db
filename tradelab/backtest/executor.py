"""
Batch execution of independent backtests.

Backtests share no state, so batches fan out over a process or thread pool.
Outcomes are returned in submission order whatever order they finish in.
"""

import os
import threading
from concurrent.futures import FIRST_COMPLETED, Executor, Future, ProcessPoolExecutor, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

from ..errors import InvalidInputError
from ..observability.logger import get_logger

logger = get_logger(__name__)

BACKENDS = ("process", "thread")


class CancellationToken:
    """Cooperative cancellation flag shared between a caller and a batch."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class TaskOutcome:
    """Result or error of one task."""
    index: int
    value: Any = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class BatchResult:
    outcomes: List[TaskOutcome]
    cancelled: bool = False


def resolve_workers(n_jobs: int) -> int:
    """Map n_jobs (-1 = all cores) to a worker count bounded by the CPU count."""
    cpus = os.cpu_count() or 1
    if n_jobs == 0 or n_jobs < -1:
        raise InvalidInputError("n_jobs must be -1 or a positive integer", "n_jobs")
    if n_jobs == -1:
        return cpus
    return min(n_jobs, cpus)


def _make_executor(backend: str, workers: int) -> Executor:
    if backend == "process":
        return ProcessPoolExecutor(max_workers=workers)
    if backend == "thread":
        return ThreadPoolExecutor(max_workers=workers)
    raise InvalidInputError(f"backend must be one of {BACKENDS}", "backend")


def run_batch(
    fn: Callable[[Any], Any],
    tasks: Sequence[Any],
    n_jobs: int = 1,
    backend: str = "process",
    cancel_token: Optional[CancellationToken] = None,
    on_outcome: Optional[Callable[[TaskOutcome], None]] = None
) -> BatchResult:
    """
    Apply `fn` to every task.

    Exceptions raised by `fn` are captured per task and never abort the
    batch. Cancellation is checked between tasks; outcomes collected before
    it stay valid and pending work is dropped.

    Args:
        fn: Callable applied to each task (picklable for the process backend).
        tasks: Task payloads.
        n_jobs: Worker count; 1 runs in-process.
        backend: "process" or "thread".
        cancel_token: Optional cancellation flag.
        on_outcome: Called in the caller's thread as each task finishes.

    Returns:
        BatchResult with outcomes sorted by task index.
    """
    if backend not in BACKENDS:
        raise InvalidInputError(f"backend must be one of {BACKENDS}", "backend")
    workers = resolve_workers(n_jobs)
    outcomes: List[TaskOutcome] = []

    def collect(outcome: TaskOutcome) -> None:
        outcomes.append(outcome)
        if on_outcome is not None:
            on_outcome(outcome)

    if workers == 1 or len(tasks) <= 1:
        for index, task in enumerate(tasks):
            if cancel_token is not None and cancel_token.cancelled:
                return BatchResult(outcomes=outcomes, cancelled=True)
            try:
                collect(TaskOutcome(index=index, value=fn(task)))
            except Exception as e:
                collect(TaskOutcome(index=index, error=e))
        return BatchResult(outcomes=outcomes, cancelled=False)

    cancelled = False
    executor = _make_executor(backend, workers)
    try:
        pending: Dict[Future, int] = {
            executor.submit(fn, task): index for index, task in enumerate(tasks)
        }
        while pending:
            if cancel_token is not None and cancel_token.cancelled:
                cancelled = True
                break
            done, _ = wait(pending, timeout=0.1, return_when=FIRST_COMPLETED)
            for future in done:
                index = pending.pop(future)
                error = future.exception()
                if error is None:
                    collect(TaskOutcome(index=index, value=future.result()))
                else:
                    collect(TaskOutcome(index=index, error=error))
    finally:
        executor.shutdown(wait=True, cancel_futures=True)

    if cancelled:
        logger.info("Batch cancelled", completed=len(outcomes), total=len(tasks))

    outcomes.sort(key=lambda o: o.index)
    return BatchResult(outcomes=outcomes, cancelled=cancelled)
