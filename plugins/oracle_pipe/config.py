"""
Run Configuration Module

PipeConfig is the fully resolved input of one run. It is built either
directly or from Airflow DAG params, where the two sides are given as
Airflow connection ids and resolved through BaseHook.
"""

from dataclasses import dataclass, fields
from typing import Any, Dict, List, Optional
import logging
import os

from airflow.hooks.base import BaseHook

from oracle_pipe.connection_pool import parse_target
from oracle_pipe.exceptions import ConfigurationError
from oracle_pipe.rowid_store import STORE_DISK, STORE_MEMORY
from oracle_pipe.table import DEFAULT_ROWID_COLUMN
from oracle_pipe.utils import validate_sql_identifier
from oracle_pipe.worker import FETCH_BOUNDED, FETCH_STRATEGIES

logger = logging.getLogger(__name__)

STORE_BACKENDS = (STORE_MEMORY, STORE_DISK)

# Airflow conn_type -> target URI scheme
CONN_TYPE_SCHEMES = {
    "oracle": "oracle",
    "postgres": "postgresql",
    "postgresql": "postgresql",
}

DEFAULT_PORTS = {
    "oracle": 1521,
    "postgresql": 5432,
}


@dataclass
class PipeConfig:
    """Resolved configuration of one table copy."""

    source_target: str
    source_user: str
    source_password: str
    destination_target: str
    destination_user: str
    destination_password: str
    source_schema: str
    source_table: str
    destination_schema: Optional[str] = None
    destination_table: Optional[str] = None
    where_clause: Optional[str] = None
    degree: Optional[int] = None
    commit_after: int = 50
    fetch_strategy: str = FETCH_BOUNDED
    store_backend: str = STORE_MEMORY
    scratch_directory: Optional[str] = None
    rowid_passthrough: bool = False
    rowid_column: Optional[str] = None

    def __post_init__(self):
        if not self.destination_schema:
            self.destination_schema = self.source_schema
        if not self.destination_table:
            self.destination_table = self.source_table
        if self.rowid_passthrough and not self.rowid_column:
            self.rowid_column = DEFAULT_ROWID_COLUMN
        elif self.rowid_column and not self.rowid_passthrough:
            logger.warning(
                f"ROWID column '{self.rowid_column}' is ignored because rowid_passthrough is disabled"
            )
        if self.where_clause is not None:
            clause = self.where_clause.strip()
            if clause and not clause.lower().startswith("where"):
                clause = f"where {clause}"
            self.where_clause = clause or None

    @property
    def passthrough_column(self) -> Optional[str]:
        """Destination column for the source ROWID, None when disabled."""
        return self.rowid_column if self.rowid_passthrough else None

    def validate(self) -> None:
        """
        Check every setting before any work starts.

        Raises:
            ConfigurationError: Listing every problem found
        """
        problems: List[str] = []

        for label, target in (("source", self.source_target), ("destination", self.destination_target)):
            try:
                parse_target(target)
            except ConfigurationError as e:
                problems.append(f"{label}: {e.message}")

        for label, value in (
            ("source schema", self.source_schema),
            ("source table", self.source_table),
            ("destination schema", self.destination_schema),
            ("destination table", self.destination_table),
        ):
            try:
                validate_sql_identifier(value, label)
            except ValueError as e:
                problems.append(str(e))

        if self.passthrough_column:
            try:
                validate_sql_identifier(self.passthrough_column, "ROWID column name")
            except ValueError as e:
                problems.append(str(e))

        if self.degree is not None and self.degree < 1:
            problems.append(f"Parallel degree must be at least 1, got {self.degree}")
        if self.commit_after < 1:
            problems.append(f"commit_after must be at least 1, got {self.commit_after}")
        if self.fetch_strategy not in FETCH_STRATEGIES:
            problems.append(
                f"Unknown fetch strategy '{self.fetch_strategy}', expected one of {', '.join(FETCH_STRATEGIES)}"
            )
        if self.store_backend not in STORE_BACKENDS:
            problems.append(
                f"Unknown store backend '{self.store_backend}', expected one of {', '.join(STORE_BACKENDS)}"
            )
        if self.scratch_directory and not os.path.isdir(self.scratch_directory):
            problems.append(f"Scratch directory '{self.scratch_directory}' does not exist")

        if problems:
            raise ConfigurationError(
                "Invalid pipe configuration:\n  " + "\n  ".join(problems),
                details={"problems": problems},
            )

    def to_dict(self) -> Dict[str, Any]:
        """Settings without passwords, for logging and XCom."""
        return {
            field.name: getattr(self, field.name)
            for field in fields(self)
            if not field.name.endswith("password")
        }

    @classmethod
    def from_params(cls, params: Dict[str, Any]) -> "PipeConfig":
        """
        Build a config from DAG params.

        Args:
            params: Dict with source_conn_id/destination_conn_id and the
                    remaining PipeConfig fields by name

        Raises:
            ConfigurationError: If a connection id is missing or has an unsupported type
        """
        source_target, source_user, source_password = resolve_connection(params.get("source_conn_id"))
        destination_target, destination_user, destination_password = resolve_connection(
            params.get("destination_conn_id")
        )

        degree = params.get("degree")
        passthrough = bool(params.get("rowid_passthrough", False))
        return cls(
            source_target=source_target,
            source_user=source_user,
            source_password=source_password,
            destination_target=destination_target,
            destination_user=destination_user,
            destination_password=destination_password,
            source_schema=params.get("source_schema"),
            source_table=params.get("source_table"),
            destination_schema=params.get("destination_schema") or None,
            destination_table=params.get("destination_table") or None,
            where_clause=params.get("where_clause") or None,
            degree=int(degree) if degree else None,
            commit_after=int(params.get("commit_after", 50)),
            fetch_strategy=params.get("fetch_strategy", FETCH_BOUNDED),
            store_backend=params.get("store_backend", STORE_MEMORY),
            scratch_directory=params.get("scratch_directory") or None,
            rowid_passthrough=passthrough,
            rowid_column=(params.get("rowid_column") or None) if passthrough else None,
        )


def resolve_connection(conn_id: Optional[str]):
    """
    Turn an Airflow connection into (target, user, password).

    For Oracle connections the service name is taken from the
    'service_name' extra, falling back to the connection schema.
    """
    if not conn_id:
        raise ConfigurationError("Connection id is required")

    conn = BaseHook.get_connection(conn_id)
    scheme = CONN_TYPE_SCHEMES.get((conn.conn_type or "").lower())
    if scheme is None:
        raise ConfigurationError(
            f"Connection '{conn_id}' has unsupported type '{conn.conn_type}'",
            details={"conn_id": conn_id},
        )

    database = conn.schema
    if scheme == "oracle":
        database = conn.extra_dejson.get("service_name") or conn.schema
    port = conn.port or DEFAULT_PORTS[scheme]
    target = f"{scheme}://{conn.host}:{port}/{database}"
    logger.info(f"Resolved connection '{conn_id}' to {target}")
    return target, conn.login, conn.password or ''
