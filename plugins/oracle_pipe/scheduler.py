"""
Partition Scheduler Module

Splits the captured row count into contiguous, balanced ranges and runs one
PipeWorker per range on its own thread. The scheduler waits for every worker
to return before reporting.
"""

from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional, Tuple
import logging
import os

from oracle_pipe.worker import FETCH_BOUNDED, MAX_BIND_ROWS, PipeWorker, WorkerResult

logger = logging.getLogger(__name__)


def compute_ranges(total: int, degree: int) -> List[Tuple[int, int]]:
    """
    Split [0, total) into min(degree, total) contiguous ranges.

    Every range has total // n rows, and the first total % n ranges take one
    extra row, so no range is empty and the last one ends at total.

    Examples:
        >>> compute_ranges(120, 4)
        [(0, 30), (30, 60), (60, 90), (90, 120)]
        >>> compute_ranges(10, 4)
        [(0, 3), (3, 6), (6, 8), (8, 10)]
        >>> compute_ranges(0, 4)
        []
    """
    if degree < 1:
        raise ValueError(f"Degree must be at least 1, got {degree}")
    count = min(degree, total)
    if count <= 0:
        return []

    size, remainder = divmod(total, count)
    ranges = []
    start = 0
    for index in range(count):
        end = start + size + (1 if index < remainder else 0)
        ranges.append((start, end))
        start = end
    return ranges


def resolve_degree(
    requested: Optional[int],
    source_cores: int,
    destination_cores: int,
    cpu_count: Optional[int] = None,
) -> int:
    """
    Parallel degree for the run.

    The requested degree wins; otherwise the smallest of the local CPU count
    and the source/destination core counts.
    """
    if requested:
        return requested
    if cpu_count is None:
        cpu_count = os.cpu_count() or 1
    degree = max(1, min(cpu_count, source_cores or 1, destination_cores or 1))
    logger.info(
        f"Parallel degree {degree} (local CPUs {cpu_count}, source cores {source_cores}, "
        f"destination cores {destination_cores})"
    )
    return degree


def run_workers(
    table,
    source_pool,
    destination_pool,
    ranges: List[Tuple[int, int]],
    commit_after: int = 50,
    fetch_strategy: str = FETCH_BOUNDED,
    max_rows: int = MAX_BIND_ROWS,
) -> List[WorkerResult]:
    """
    Run one worker per range and wait for all of them.

    Returns:
        Worker results in range order
    """
    if not ranges:
        return []

    workers = [
        PipeWorker(
            worker_id=worker_id,
            table=table,
            source_pool=source_pool,
            destination_pool=destination_pool,
            start=start,
            end=end,
            commit_after=commit_after,
            fetch_strategy=fetch_strategy,
            max_rows=max_rows,
        )
        for worker_id, (start, end) in enumerate(ranges)
    ]

    logger.info(f"Starting {len(workers)} workers for {table.source_name}")
    with ThreadPoolExecutor(max_workers=len(workers), thread_name_prefix="pipe") as executor:
        futures = [executor.submit(worker.run) for worker in workers]
        results = [future.result() for future in futures]

    failed = [result for result in results if not result.success]
    if failed:
        logger.error(f"{len(failed)} of {len(results)} workers failed")
    return results
