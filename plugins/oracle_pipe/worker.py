"""
Pipe Worker Module

A PipeWorker copies one contiguous range of captured ROWIDs. The range is cut
into sub-batches no larger than the maximum bind-array size; each sub-batch is
fetched from the source with one execution of the fetch query, bound row by
row into the destination INSERT batch, and written on a row-count commit
cadence.

Workers share nothing mutable: each owns one source and one destination
connection, its cursors and its counters.
"""

from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Tuple
import logging
import math
import os
import time

import psycopg2

from oracle_pipe.binders import InsertBatch, number_output_type_handler
from oracle_pipe.utils import oracle_error_code

logger = logging.getLogger(__name__)

# Largest collection bound in one fetch
MAX_BIND_ROWS = int(os.environ.get('PIPE_MAX_BIND_ROWS', '32767'))

LOG_EVERY_ROWS = int(os.environ.get('PIPE_LOG_EVERY_ROWS', '1000'))

FETCH_BOUNDED = "bounded"
FETCH_ALL = "all"
FETCH_STRATEGIES = (FETCH_BOUNDED, FETCH_ALL)

CAPACITY_HINTS = {
    1461: (
        "ORA-01461: a national character value did not fit the destination column. "
        "Check that NCHAR/NVARCHAR2 source columns map to NCHAR/NVARCHAR2 destination columns."
    ),
    12899: (
        "ORA-12899: a value is too large for the destination column. "
        "Widen the destination column or check the destination character set."
    ),
}

PG_STRING_DATA_RIGHT_TRUNCATION = "22001"


def plan_sub_batches(start: int, end: int, max_rows: int = MAX_BIND_ROWS) -> List[Tuple[int, int]]:
    """
    Cut [start, end) into consecutive sub-batches of at most max_rows rows.

    Examples:
        >>> plan_sub_batches(0, 70000, 32767)
        [(0, 32767), (32767, 65534), (65534, 70000)]
    """
    if max_rows < 1:
        raise ValueError(f"max_rows must be positive, got {max_rows}")
    length = end - start
    if length <= 0:
        return []
    batches = []
    for index in range(math.ceil(length / max_rows)):
        batch_start = start + index * max_rows
        batches.append((batch_start, min(batch_start + max_rows, end)))
    return batches


def capacity_hint(error: BaseException) -> Optional[str]:
    """Remediation hint for destination capacity errors, None for anything else."""
    if isinstance(error, psycopg2.Error):
        if getattr(error, "pgcode", None) == PG_STRING_DATA_RIGHT_TRUNCATION:
            return (
                "SQLSTATE 22001: a value is too long for the destination column. "
                "Widen the destination column."
            )
        return None
    return CAPACITY_HINTS.get(oracle_error_code(error))


@dataclass
class WorkerResult:
    """Outcome of one worker."""

    worker_id: int
    start: int
    end: int
    rows_copied: int = 0
    rows_missing: int = 0
    sub_batches: int = 0
    commits: int = 0
    elapsed_seconds: float = 0.0
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        result['success'] = self.success
        return result


class PipeWorker:
    """Copies the ROWID range [start, end) of a PipeTable."""

    def __init__(
        self,
        worker_id: int,
        table,
        source_pool,
        destination_pool,
        start: int,
        end: int,
        commit_after: int = 50,
        fetch_strategy: str = FETCH_BOUNDED,
        max_rows: int = MAX_BIND_ROWS,
    ):
        self.worker_id = worker_id
        self.table = table
        self.source_pool = source_pool
        self.destination_pool = destination_pool
        self.start = start
        self.end = end
        self.commit_after = commit_after
        self.fetch_strategy = fetch_strategy
        self.max_rows = max_rows

    def run(self) -> WorkerResult:
        """
        Copy the range and report the outcome.

        Errors stop this worker only; they are logged with the worker id,
        the range and the elapsed time, and returned in the result.
        """
        result = WorkerResult(self.worker_id, self.start, self.end)
        start_time = time.time()
        source_conn = None
        destination_conn = None
        logger.info(f"Worker {self.worker_id}: copying rows [{self.start:,}, {self.end:,})")

        try:
            source_conn = self.source_pool.acquire()
            destination_conn = self.destination_pool.acquire()
            source_conn.outputtypehandler = number_output_type_handler
            batch = self.table.new_batch(destination_conn)

            for sub_start, sub_end in plan_sub_batches(self.start, self.end, self.max_rows):
                self._copy_sub_batch(source_conn, destination_conn, batch, sub_start, sub_end, result)

        except Exception as e:
            result.error = str(e)
            elapsed = time.time() - start_time
            hint = capacity_hint(e)
            logger.error(
                f"\n=====================\n"
                f"Worker {self.worker_id} failed on rows [{self.start:,}, {self.end:,}) "
                f"after {elapsed:.2f} seconds ({result.rows_copied:,} rows committed)\n"
                f"{hint or e}\n"
                f"====================="
            )
        finally:
            self.source_pool.release(source_conn)
            self.destination_pool.release(destination_conn)

        result.elapsed_seconds = time.time() - start_time
        if result.success:
            rows_per_second = result.rows_copied / result.elapsed_seconds if result.elapsed_seconds > 0 else 0
            logger.info(
                f"Worker {self.worker_id}: {result.rows_copied:,} rows in "
                f"{result.elapsed_seconds:.2f} seconds ({rows_per_second:,.0f} rows/sec), "
                f"{result.commits} commits"
            )
        return result

    def _copy_sub_batch(
        self,
        source_conn,
        destination_conn,
        batch: InsertBatch,
        sub_start: int,
        sub_end: int,
        result: WorkerResult,
    ) -> None:
        expected = sub_end - sub_start
        batch_start_time = time.time()
        rowids = self.table.extract(source_conn, sub_start, sub_end)

        fetched = 0
        with source_conn.cursor() as cursor:
            if self.fetch_strategy == FETCH_ALL:
                cursor.arraysize = expected
                cursor.prefetchrows = expected
            cursor.execute(self.table.fetch_query, rowids=rowids)
            for row in cursor:
                self.table.bind_row(row, batch)
                fetched += 1
                if len(batch) >= self.commit_after:
                    self._flush(destination_conn, batch, result)
                if (result.rows_copied + len(batch)) % LOG_EVERY_ROWS == 0:
                    logger.info(
                        f"Worker {self.worker_id}: {result.rows_copied + len(batch):,} rows processed"
                    )
        if len(batch):
            self._flush(destination_conn, batch, result)

        result.sub_batches += 1
        if fetched < expected:
            result.rows_missing += expected - fetched
            logger.warning(
                f"Worker {self.worker_id}: {expected - fetched:,} of {expected:,} rows in "
                f"[{sub_start:,}, {sub_end:,}) no longer exist in the source"
            )
        elapsed_ms = (time.time() - batch_start_time) * 1000
        logger.info(
            f"Worker {self.worker_id}: sub-batch [{sub_start:,}, {sub_end:,}) "
            f"copied {fetched:,} rows in {elapsed_ms:,.0f} ms"
        )

    def _flush(self, destination_conn, batch: InsertBatch, result: WorkerResult) -> None:
        """Write the pending rows and commit."""
        with destination_conn.cursor() as cursor:
            self.table.binder.write_batch(cursor, self.table.insert_statement, batch)
        destination_conn.commit()
        result.rows_copied += len(batch)
        result.commits += 1
        batch.clear()
