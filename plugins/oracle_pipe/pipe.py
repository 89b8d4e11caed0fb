"""
Pipe Orchestration Module

run_pipe() performs one complete table copy:

1. open the source and destination pools and probe both engines
2. read the source catalog and build the statements
3. capture the ROWIDs to copy with one execution of the key query
4. split them into ranges and run one worker per range
5. release the ROWID store and close both pools

Setup problems (configuration, privileges, unreachable databases) raise;
worker failures are reported in the returned result.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
import logging
import time

from oracle_pipe.binders import ENGINE_ORACLE, binder_for
from oracle_pipe.config import PipeConfig
from oracle_pipe.connection_pool import PipePool
from oracle_pipe.exceptions import ConfigurationError
from oracle_pipe.scheduler import compute_ranges, resolve_degree, run_workers
from oracle_pipe.table import PipeTable
from oracle_pipe.worker import WorkerResult

logger = logging.getLogger(__name__)

SOURCE_POOL_NAME = "oracle-pipe-source"
DESTINATION_POOL_NAME = "oracle-pipe-destination"


def run_pipe(config: PipeConfig) -> Dict[str, Any]:
    """
    Copy every captured row of the source table into the destination table.

    Args:
        config: Resolved run configuration

    Returns:
        Run result dictionary with per-worker statistics

    Raises:
        ConfigurationError: Invalid configuration or no copyable columns
        PrivilegeError: Missing catalog grants
    """
    config.validate()
    start_time = time.time()
    source_name = f"{config.source_schema}.{config.source_table}"
    destination_name = f"{config.destination_schema}.{config.destination_table}"
    logger.info(f"Starting pipe: {source_name} -> {destination_name}")

    source_pool: Optional[PipePool] = None
    destination_pool: Optional[PipePool] = None
    table: Optional[PipeTable] = None
    results: List[WorkerResult] = []
    degree = 0
    total = 0

    try:
        source_pool = PipePool.get(
            SOURCE_POOL_NAME, config.source_target, config.source_user, config.source_password
        )
        if source_pool.engine != ENGINE_ORACLE:
            raise ConfigurationError(f"Source must be an Oracle database, got {source_pool.engine}")
        destination_pool = PipePool.get(
            DESTINATION_POOL_NAME, config.destination_target,
            config.destination_user, config.destination_password,
        )

        source_conn = source_pool.acquire()
        try:
            table = PipeTable(
                source_conn,
                config.source_schema,
                config.source_table,
                config.destination_schema,
                config.destination_table,
                binder_for(destination_pool.engine),
                where_clause=config.where_clause,
                rowid_column=config.passthrough_column,
                store_backend=config.store_backend,
                scratch_directory=config.scratch_directory,
            )
            total = table.capture_rowids(source_conn)
        finally:
            source_pool.release(source_conn)

        degree = resolve_degree(config.degree, source_pool.db_cores, destination_pool.db_cores)
        ranges = compute_ranges(total, degree)
        if ranges:
            source_pool.resize(len(ranges))
            destination_pool.resize(len(ranges))
            results = run_workers(
                table,
                source_pool,
                destination_pool,
                ranges,
                commit_after=config.commit_after,
                fetch_strategy=config.fetch_strategy,
            )
        else:
            logger.info(f"No rows to copy from {source_name}")
    finally:
        if table is not None:
            table.close()
        if destination_pool is not None:
            destination_pool.close()
        if source_pool is not None:
            source_pool.close()

    return build_result(source_name, destination_name, total, degree, results, time.time() - start_time)


def build_result(
    source_name: str,
    destination_name: str,
    total: int,
    degree: int,
    results: List[WorkerResult],
    elapsed_time: float,
) -> Dict[str, Any]:
    """Aggregate worker results into the run result."""
    rows_copied = sum(result.rows_copied for result in results)
    rows_missing = sum(result.rows_missing for result in results)
    errors = [
        f"Worker {result.worker_id} [{result.start}, {result.end}): {result.error}"
        for result in results
        if not result.success
    ]
    avg_rows_per_second = rows_copied / elapsed_time if elapsed_time > 0 else 0

    result = {
        'source_table': source_name,
        'destination_table': destination_name,
        'rows_captured': total,
        'degree': len(results) if results else min(degree, total),
        'rows_copied': rows_copied,
        'rows_missing': rows_missing,
        'elapsed_time_seconds': elapsed_time,
        'avg_rows_per_second': avg_rows_per_second,
        'workers': [worker_result.to_dict() for worker_result in results],
        'success': len(errors) == 0,
        'errors': errors,
        'timestamp': datetime.now().isoformat(),
    }

    if result['success']:
        logger.info(
            f"Successfully copied {rows_copied:,} rows in {elapsed_time:.2f} seconds "
            f"({avg_rows_per_second:,.0f} rows/sec average)"
        )
    else:
        logger.warning(
            f"Pipe completed with issues. Captured: {total:,}, Copied: {rows_copied:,}, "
            f"Failed workers: {len(errors)}"
        )
    return result
