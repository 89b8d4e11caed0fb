"""
Oracle Table Pipe

This package copies all rows of one Oracle table (optionally filtered) into an
existing Oracle or PostgreSQL table in parallel, keyed by ROWIDs captured once
up front, and is driven from Apache Airflow.

Modules:
- connection_pool: Sized source/destination pools with engine capacity probe
- columns: Classify Oracle catalog columns into semantic type tags
- binders: Per-dialect value conversion and SQL fragments
- rowid_store: Capture ROWIDs in memory or in a temporary on-disk log
- table: Catalog reader and statement synthesis
- worker: Copy one ROWID range in sub-batches with a commit cadence
- scheduler: Split the captured rows into ranges and run the workers
- pipe: Run one complete copy and aggregate the result
- config: Resolved run configuration

Performance Options:
- PIPE_POOL_HEADROOM=N: Connections allowed above the parallel degree (default 8)
- PIPE_MAX_BIND_ROWS=N: Largest ROWID collection per fetch (default 32767)
- PIPE_LOG_EVERY_ROWS=N: Progress log interval per worker (default 1000)
- PIPE_CAPTURE_ARRAYSIZE=N: Rows per round trip while capturing ROWIDs (default 10000)
"""

__version__ = "1.0.0"

from oracle_pipe import exceptions
from oracle_pipe import columns
from oracle_pipe import binders
from oracle_pipe import rowid_store
from oracle_pipe import connection_pool
from oracle_pipe import table
from oracle_pipe import worker
from oracle_pipe import scheduler
from oracle_pipe import config
from oracle_pipe import pipe

__all__ = [
    "exceptions",
    "columns",
    "binders",
    "rowid_store",
    "connection_pool",
    "table",
    "worker",
    "scheduler",
    "config",
    "pipe",
]
