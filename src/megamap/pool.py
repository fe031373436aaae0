"""Chromosome-parallel fan-out / fan-in.

Every chromosome is one task. Tasks never raise into the caller: each one
reports an exit status, and the pool's verdict is the conjunction of all of
them. A failing task does not cancel its siblings; partial outputs are left
for the caller to discard (or inspect) when the pool reports failure.
"""

from __future__ import annotations

import logging
import os
import traceback
from concurrent.futures import Executor, Future, ProcessPoolExecutor, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, List, Optional, Sequence, TypeVar

from tqdm import tqdm

from .errors import WorkerFaultError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Memory budget per worker used for the automatic concurrency default.
_WORKER_MEMORY_GIB = 12
_EXECUTORS = ("process", "thread")


@dataclass(frozen=True)
class TaskResult(Generic[T]):
    chrom: str
    output: Optional[T]
    exit_status: int
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.exit_status == 0


@dataclass
class PoolResult(Generic[T]):
    """Results in submission order, whatever order the tasks finished in."""

    results: List[TaskResult[T]] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return all(r.exit_status == 0 for r in self.results)

    @property
    def outputs(self) -> List[Optional[T]]:
        return [r.output for r in self.results]

    @property
    def failed(self) -> List[str]:
        return [r.chrom for r in self.results if r.exit_status != 0]

    def raise_for_status(self, stage: str) -> None:
        if self.success:
            return
        details = ", ".join(f"{r.chrom} (exit {r.exit_status})" for r in self.results if r.exit_status != 0)
        raise WorkerFaultError(
            f"Pipeline failed at stage '{stage}': {len(self.failed)} of {len(self.results)} "
            f"chromosome task(s) failed ({details}).",
            stage=stage,
            failed=self.failed,
        )


def _physical_memory_gib() -> Optional[float]:
    try:
        pages = os.sysconf("SC_PHYS_PAGES")
        page_size = os.sysconf("SC_PAGE_SIZE")
    except (AttributeError, ValueError, OSError):
        return None
    if pages <= 0 or page_size <= 0:
        return None
    return pages * page_size / 1024**3


def default_concurrency(*, cpu_count: Optional[int] = None, memory_gib: Optional[float] = None) -> int:
    """Half of the available cores, capped by memory / per-worker budget, at least 1."""
    cpus = cpu_count if cpu_count is not None else (os.cpu_count() or 2)
    n = max(1, cpus // 2)
    mem = memory_gib if memory_gib is not None else _physical_memory_gib()
    if mem is not None:
        by_mem = int(mem / _WORKER_MEMORY_GIB) - 1
        if 0 < by_mem < n:
            n = by_mem
    return max(1, n)


def _run_task(worker: Callable[[str], T], chrom: str) -> TaskResult[T]:
    # Runs inside the worker process: turn any exception into an exit status.
    try:
        return TaskResult(chrom=chrom, output=worker(chrom), exit_status=0)
    except Exception:
        return TaskResult(chrom=chrom, output=None, exit_status=1, error=traceback.format_exc())


def _make_executor(kind: str, n: int) -> Executor:
    if kind == "process":
        return ProcessPoolExecutor(max_workers=n)
    return ThreadPoolExecutor(max_workers=n)


def run_chromosomes(
    chromosomes: Sequence[str],
    worker: Callable[[str], T],
    *,
    concurrency: Optional[int] = None,
    executor: str = "process",
    progress: bool = False,
    desc: str = "Chromosomes",
) -> PoolResult[T]:
    """Apply ``worker`` to every chromosome with bounded concurrency.

    Parameters
    ----------
    chromosomes:
        Task keys; the result keeps this order.
    worker:
        Callable taking a chromosome name. Must be picklable for the
        ``process`` executor (module-level function or ``functools.partial``).
    concurrency:
        Maximum tasks in flight; defaults to :func:`default_concurrency`.
    executor:
        ``process`` (default) or ``thread``.
    progress:
        Show a tqdm progress bar over completed tasks.

    Returns
    -------
    PoolResult
        ``success`` is False if any task exited non-zero. All tasks run to
        completion regardless.
    """
    if executor not in _EXECUTORS:
        raise ValueError(f"executor must be one of {_EXECUTORS}, got {executor!r}")
    chroms = list(chromosomes)
    if not chroms:
        return PoolResult()

    n = concurrency if concurrency is not None else default_concurrency()
    n = max(1, min(int(n), len(chroms)))
    logger.debug("Running %d chromosome task(s) on %d %s worker(s)", len(chroms), n, executor)

    with _make_executor(executor, n) as ex:
        futures: List[Future] = [ex.submit(_run_task, worker, c) for c in chroms]
        done: Any = as_completed(futures)
        if progress:
            done = tqdm(done, total=len(futures), unit="chrom", desc=desc)
        for fut in done:
            # _run_task never raises; a broken pool (e.g. killed process) does
            if fut.exception() is not None:
                logger.error("Worker crashed: %s", fut.exception())

    results: List[TaskResult[T]] = []
    for chrom, fut in zip(chroms, futures):
        exc = fut.exception()
        if exc is not None:
            results.append(TaskResult(chrom=chrom, output=None, exit_status=1, error=repr(exc)))
            continue
        res = fut.result()
        if res.exit_status != 0:
            logger.error("Task for %s failed:\n%s", chrom, res.error)
        results.append(res)
    return PoolResult(results=results)
