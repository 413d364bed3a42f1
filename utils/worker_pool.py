"""
Partition scheduler for the column iteration phase.

Subcolumns are split round-robin into disjoint partitions, one per worker.
Each worker drives its subcolumns one after another, every subcolumn for its
full loop budget, so a subcolumn's path-dependent state never crosses
threads. The pool lives for a single call and is joined before returning.

Failures are fail-together: a subcolumn that raises is recorded and its
worker moves on to the next subcolumn, sibling tasks keep running, and the
caller receives every failure once all workers are done.
"""

import logging
import time
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

Failure = Tuple[int, BaseException]


def partition(count: int, workers: int) -> List[List[int]]:
    """
    Split indices 0..count-1 round-robin into at most `workers` partitions.

    Example:
        >>> partition(5, 2)
        [[0, 2, 4], [1, 3]]
    """
    if workers < 1:
        raise ValueError(f"Worker count must be at least 1, got {workers}")
    partitions = [list(range(worker, count, workers)) for worker in range(workers)]
    return [indices for indices in partitions if indices]


def run_partitioned(
    subcolumns: Sequence,
    loops: int,
    threads: int,
    cancel_event: Optional[threading.Event] = None,
    on_subcolumn_done: Optional[Callable[[int], None]] = None
) -> List[Failure]:
    """
    Run `loops` steps on every subcolumn using a transient thread pool.

    Args:
        subcolumns: Objects with a run(loops, cancel_event=...) method
        loops: Steps per subcolumn (>= 0)
        threads: Maximum number of workers (>= 1)
        cancel_event: Optional flag checked by subcolumns between steps
        on_subcolumn_done: Called with the index of each subcolumn that
            completed all of its loops

    Returns:
        (index, exception) for every failed subcolumn, sorted by index.
        Empty when all subcolumns completed.
    """
    if threads < 1:
        raise ValueError(f"Thread count must be at least 1, got {threads}")
    if loops < 0:
        raise ValueError(f"Loop count cannot be negative, got {loops}")

    subcolumns = list(subcolumns)
    if not subcolumns:
        logger.debug("No subcolumns to run")
        return []

    partitions = partition(len(subcolumns), threads)

    def drive(worker: int, indices: List[int]) -> List[Failure]:
        logger.debug(f"Worker {worker} starting subcolumns {indices}")
        worker_failures: List[Failure] = []
        for index in indices:
            try:
                subcolumns[index].run(loops, cancel_event=cancel_event)
            except Exception as e:
                logger.error(f"Subcolumn {index} failed on worker {worker}: {e}")
                worker_failures.append((index, e))
                continue
            if on_subcolumn_done is not None:
                try:
                    on_subcolumn_done(index)
                except Exception as e:
                    logger.error(f"Completion callback failed for subcolumn {index}: {e}")
                    worker_failures.append((index, e))
        logger.debug(f"Worker {worker} finished ({len(worker_failures)} failures)")
        return worker_failures

    start = time.perf_counter()
    failures: List[Failure] = []
    with ThreadPoolExecutor(max_workers=len(partitions), thread_name_prefix="ccd-worker") as executor:
        futures = [
            executor.submit(drive, worker, indices)
            for worker, indices in enumerate(partitions)
        ]
        for future in futures:
            failures.extend(future.result())

    elapsed = time.perf_counter() - start
    logger.info(f"Ran {len(subcolumns)} subcolumns x {loops} loops on "
                f"{len(partitions)} workers in {elapsed:.3f} s "
                f"({len(failures)} failed)")

    return sorted(failures, key=lambda item: item[0])
