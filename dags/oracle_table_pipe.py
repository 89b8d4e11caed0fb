"""
Oracle Table Pipe DAG

This DAG copies all rows of one Oracle table into an existing Oracle or
PostgreSQL table:
1. ROWIDs of the rows to copy are captured once (optionally filtered)
2. The ROWIDs are split into ranges, one worker thread per range
3. Each worker fetches its rows in bulk and inserts them with a commit cadence

The destination table must already exist; no DDL is issued.
"""

from airflow.sdk import dag, task
from airflow.models.param import Param
from pendulum import datetime
from typing import Dict, Any
import logging

from oracle_pipe.config import PipeConfig
from oracle_pipe.exceptions import PipeRunError
from oracle_pipe.pipe import run_pipe

logger = logging.getLogger(__name__)


@dag(
    start_date=datetime(2025, 1, 1),
    schedule=None,  # Run manually or trigger via API
    catchup=False,
    max_active_runs=1,
    doc_md=__doc__,
    default_args={
        "owner": "data-team",
        # Reruns would duplicate committed rows
        "retries": 0,
    },
    params={
        "source_conn_id": Param(
            default="oracle_source",
            type="string",
            description="Oracle source connection ID"
        ),
        "destination_conn_id": Param(
            default="oracle_destination",
            type="string",
            description="Oracle or PostgreSQL destination connection ID"
        ),
        "source_schema": Param(
            default="SCOTT",
            type="string",
            description="Source schema (table owner)"
        ),
        "source_table": Param(
            default="EMP",
            type="string",
            description="Source table"
        ),
        "destination_schema": Param(
            default="",
            type="string",
            description="Destination schema (defaults to the source schema)"
        ),
        "destination_table": Param(
            default="",
            type="string",
            description="Destination table (defaults to the source table)"
        ),
        "where_clause": Param(
            default="",
            type="string",
            description="Optional WHERE clause applied when capturing ROWIDs"
        ),
        "degree": Param(
            default=0,
            type="integer",
            minimum=0,
            description="Parallel degree (0 = min of local CPUs, source and destination cores)"
        ),
        "commit_after": Param(
            default=50,
            type="integer",
            minimum=1,
            description="Rows inserted per destination commit"
        ),
        "fetch_strategy": Param(
            default="bounded",
            type="string",
            enum=["bounded", "all"],
            description="bounded = driver default array size, all = prefetch the whole sub-batch"
        ),
        "store_backend": Param(
            default="memory",
            type="string",
            enum=["memory", "disk"],
            description="Where captured ROWIDs are kept"
        ),
        "scratch_directory": Param(
            default="",
            type="string",
            description="Parent directory for the disk ROWID store (defaults to the OS temp dir)"
        ),
        "rowid_passthrough": Param(
            default=False,
            type="boolean",
            description="Copy the source ROWID into a destination column"
        ),
        "rowid_column": Param(
            default="ORA_ROW_ID",
            type="string",
            description="Destination column receiving the source ROWID"
        ),
    },
    tags=["oracle", "postgres", "etl", "table-copy"],
)
def oracle_table_pipe():
    """
    DAG copying one Oracle table.
    """

    @task
    def copy_table(**context) -> Dict[str, Any]:
        """
        Resolve the configuration and run the copy.

        Returns:
            Pipe result dictionary

        Raises:
            PipeRunError: If any worker failed
        """
        params = context["params"]
        config = PipeConfig.from_params(params)
        logger.info(f"Pipe configuration: {config.to_dict()}")

        result = run_pipe(config)

        context["ti"].xcom_push(key="rows_copied", value=result["rows_copied"])

        if not result["success"]:
            raise PipeRunError(
                f"Copy of {result['source_table']} failed: {len(result['errors'])} worker(s) failed",
                details={"errors": result["errors"]},
            )
        return result

    copy_table()


# Instantiate the DAG
oracle_table_pipe()
