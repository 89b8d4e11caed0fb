"""
Table Descriptor Module

This module reads the source table definition from the Oracle catalog once and
synthesizes the three statements a run needs:

1. the key query, selecting only ROWIDs (the caller's filter applies here)
2. the fetch query, selecting the copied columns for a collection of ROWIDs
3. the destination INSERT statement

The fetch select list, the INSERT column list and the INSERT placeholder list
always have the same length and order.
"""

from typing import Any, List, Optional, Sequence
import logging

import oracledb

from oracle_pipe.binders import ColumnBinder, InsertBatch
from oracle_pipe.columns import ColumnDescriptor
from oracle_pipe.exceptions import ConfigurationError, PrivilegeError
from oracle_pipe.rowid_store import STORE_MEMORY, RowIdStore, create_store
from oracle_pipe.utils import oracle_error_code, qualified_name, quote_identifier, validate_sql_identifier

logger = logging.getLogger(__name__)

DEFAULT_ROWID_COLUMN = "ORA_ROW_ID"

ORA_TABLE_OR_VIEW_DOES_NOT_EXIST = 942

CATALOG_SQL = """
select C.COLUMN_NAME, C.DATA_TYPE, C.DATA_LENGTH, C.DATA_PRECISION, C.DATA_SCALE,
       C.NULLABLE, C.COLUMN_ID, L.CHUNK
from   DBA_TAB_COLS C
       left join DBA_LOBS L
         on C.OWNER = L.OWNER and C.TABLE_NAME = L.TABLE_NAME and C.COLUMN_NAME = L.COLUMN_NAME
where  C.OWNER = :owner
  and  C.TABLE_NAME = :table_name
  and  C.HIDDEN_COLUMN = 'NO'
  and  (C.DATA_TYPE in ('DATE', 'FLOAT', 'NUMBER', 'BINARY_FLOAT', 'BINARY_DOUBLE', 'RAW',
                        'CHAR', 'NCHAR', 'VARCHAR2', 'NVARCHAR2', 'BLOB', 'CLOB', 'NCLOB')
        or C.DATA_TYPE like 'TIMESTAMP%'
        or C.DATA_TYPE like 'INTERVAL%'
        or (C.DATA_TYPE = 'XMLTYPE' and C.DATA_TYPE_OWNER in ('SYS', 'PUBLIC')))
order by C.COLUMN_ID
"""


def read_columns(connection, owner: str, table: str, user: Optional[str] = None) -> List[ColumnDescriptor]:
    """
    Read and classify the columns of OWNER.TABLE from DBA_TAB_COLS/DBA_LOBS.

    Columns that classify as OPAQUE are dropped (ColumnDescriptor logs a
    warning for each).

    Raises:
        PrivilegeError: If the connected user cannot read the dictionary views
    """
    cursor = connection.cursor()
    try:
        try:
            cursor.execute(CATALOG_SQL, owner=owner.upper(), table_name=table.upper())
        except oracledb.DatabaseError as e:
            if oracle_error_code(e) == ORA_TABLE_OR_VIEW_DOES_NOT_EXIST:
                grantee = user or "<user>"
                grants = [
                    f"grant select on DBA_TAB_COLS to {grantee};",
                    f"grant select on DBA_LOBS to {grantee};",
                ]
                logger.error(
                    "\n=====================\n"
                    "Please run as SYSDBA:\n\t" + "\n\t".join(grants) +
                    "\nAnd restart the pipe\n"
                    "====================="
                )
                raise PrivilegeError(
                    f"Unable to read column definitions of {owner}.{table}", grants=grants
                ) from e
            raise
        rows = cursor.fetchall()
    finally:
        cursor.close()

    descriptors = [ColumnDescriptor.from_catalog_row(row) for row in rows]
    return [column for column in descriptors if column.is_supported]


class PipeTable:
    """
    Source/destination table pair of one run.

    Usage:
        table = PipeTable(source_conn, "SCOTT", "EMP", "SCOTT", "EMP_COPY", binder)
        total = table.capture_rowids(source_conn)
        ...
        table.close()
    """

    def __init__(
        self,
        connection,
        source_owner: str,
        source_table: str,
        destination_owner: str,
        destination_table: str,
        binder: ColumnBinder,
        where_clause: Optional[str] = None,
        rowid_column: Optional[str] = None,
        store_backend: str = STORE_MEMORY,
        scratch_directory: Optional[str] = None,
    ):
        """
        Read the catalog and build the statements.

        Args:
            connection: Open source connection
            source_owner: Source schema
            source_table: Source table
            destination_owner: Destination schema
            destination_table: Destination table (must exist)
            binder: Destination dialect binder
            where_clause: Optional full 'where ...' clause applied to the key query only
            rowid_column: Destination column receiving the source ROWID as text (None disables)
            store_backend: STORE_MEMORY or STORE_DISK
            scratch_directory: Parent directory for the disk store

        Raises:
            ConfigurationError: If the source table has no copyable columns
            PrivilegeError: If the catalog views cannot be read
        """
        self.source_name = qualified_name(source_owner, source_table)
        self.destination_name = qualified_name(destination_owner, destination_table)
        if rowid_column is not None:
            validate_sql_identifier(rowid_column, "ROWID column name")
        self.rowid_column = rowid_column
        self.where_clause = where_clause
        self.binder = binder

        self.columns = read_columns(
            connection, source_owner, source_table, getattr(connection, "username", None)
        )
        if not self.columns:
            raise ConfigurationError(
                f"Table {self.source_name} does not exist or has no columns with a supported datatype"
            )
        binder.check_columns(self.columns)

        self.key_query = self._build_key_query()
        self.fetch_query = self._build_fetch_query()
        self.insert_statement = self._build_insert_statement()
        self.input_types = self._build_input_types()

        logger.info(
            f"\n=====================\n"
            f"Source table {self.source_name}: {len(self.columns)} columns\n"
            f"Key query:\n\t{self.key_query}\n"
            f"Fetch query:\n\t{self.fetch_query}\n"
            f"Insert statement:\n\t{self.insert_statement}\n"
            f"====================="
        )

        self.store: RowIdStore = create_store(store_backend, source_owner, source_table, scratch_directory)

    @property
    def width(self) -> int:
        """Number of INSERT parameters per row."""
        return len(self.columns) + (1 if self.rowid_column else 0)

    def _build_key_query(self) -> str:
        statement = f"select ROWID from {self.source_name} KU$"
        if self.where_clause:
            statement += f" {self.where_clause}"
        return statement

    def _build_fetch_query(self) -> str:
        select_list = [self.binder.select_expression(column) for column in self.columns]
        if self.rowid_column:
            select_list.insert(0, self.binder.rowid_select_expression())
        return (
            f"select {', '.join(select_list)} "
            f"from {self.source_name} KU$, table(:rowids) R "
            f"where KU$.ROWID = chartorowid(R.COLUMN_VALUE)"
        )

    def _build_insert_statement(self) -> str:
        targets: List[Optional[ColumnDescriptor]] = list(self.columns)
        names = [quote_identifier(column.name) for column in self.columns]
        if self.rowid_column:
            targets.insert(0, None)
            names.insert(0, quote_identifier(self.rowid_column))
        placeholders = [
            self.binder.placeholder(column, position)
            for position, column in enumerate(targets, start=1)
        ]
        return (
            f"insert into {self.destination_name}({', '.join(names)}) "
            f"values({', '.join(placeholders)})"
        )

    def _build_input_types(self) -> List[Any]:
        input_types = [self.binder.input_type(column) for column in self.columns]
        if self.rowid_column:
            input_types.insert(0, self.binder.input_type(None))
        return input_types

    def capture_rowids(self, connection) -> int:
        """Run the key query once and capture the ROWIDs to copy."""
        return self.store.capture(connection, self.key_query)

    @property
    def row_count(self) -> int:
        return self.store.count()

    def extract(self, connection, start: int, end: int):
        """ROWIDs [start, end) as a bind object for the fetch query."""
        return self.store.extract(connection, start, end)

    def new_batch(self, connection) -> InsertBatch:
        return InsertBatch(connection, self.width, self.input_types)

    def bind_row(self, row: Sequence[Any], batch: InsertBatch) -> None:
        """Bind one fetched row into the batch and append it."""
        offset = 0
        if self.rowid_column:
            self.binder.bind_rowid(row, batch)
            offset = 1
        for index, column in enumerate(self.columns):
            position = index + offset
            self.binder.bind(column, row, position, batch, position)
        batch.add_row()

    def close(self) -> None:
        """Release the ROWID store."""
        self.store.release()
