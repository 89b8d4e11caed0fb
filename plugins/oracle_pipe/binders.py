"""
Column Binder Module

This module moves single column values from a fetched Oracle row into the
parameter row of the destination INSERT. One binder class exists per
destination dialect; each handles every ColumnType tag (except OPAQUE, which
never reaches a binder) and decides:

- the select-list expression used to fetch the column from the source
- the placeholder used for the column in the INSERT statement
- the destination input type used when the value is NULL
- the conversion applied to non-NULL values

Binders hold no per-row state and are shared by all workers.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Union
import logging
import re

import oracledb
from psycopg2.extras import execute_batch

from oracle_pipe.columns import CHARACTER_TYPES, INTEGER_TYPES, LOB_TYPES, ColumnDescriptor, ColumnType
from oracle_pipe.utils import quote_identifier

logger = logging.getLogger(__name__)

ENGINE_ORACLE = "oracle"
ENGINE_POSTGRES = "postgresql"

# Read size for LOB streaming when DBA_LOBS has no chunk hint
DEFAULT_LOB_CHUNK = 8060
MAX_LOB_CHUNK = 1024 * 1024

SOURCE_ALIAS = "KU$"

_ORA_TSTZ_FORMAT = "YYYY-MM-DD HH24:MI:SS.FF9 TZR"
_PG_TSTZ_FORMAT = "YYYY-MM-DD HH24:MI:SS.FF6 TZH:TZM"
_PY_TSTZ_FORMAT = "%Y-%m-%d %H:%M:%S.%f %z"
_INTERVAL_YM = re.compile(r'^\s*([+-])?(\d+)-(\d+)\s*$')


class InsertBatch:
    """
    Parameter rows waiting to be written to the destination.

    Acts as the prepared INSERT statement: binders set values by position
    into the current row, the worker appends the row and flushes the batch
    on its commit cadence.
    """

    def __init__(self, connection, width: int, input_types: Sequence[Any]):
        self.connection = connection
        self.width = width
        self.input_types = list(input_types)
        self.rows: List[tuple] = []
        self._current: List[Any] = [None] * width

    def set(self, position: int, value: Any) -> None:
        self._current[position] = value

    def set_null(self, position: int) -> None:
        self._current[position] = None

    def add_row(self) -> None:
        self.rows.append(tuple(self._current))
        self._current = [None] * self.width

    def clear(self) -> None:
        self.rows = []

    def __len__(self) -> int:
        return len(self.rows)


def lob_chunk_size(column: ColumnDescriptor) -> int:
    """Read size for a LOB column, bounded to MAX_LOB_CHUNK."""
    if column.lob_chunk <= 0:
        return DEFAULT_LOB_CHUNK
    return min(column.lob_chunk, MAX_LOB_CHUNK)


def iter_lob_chunks(lob: Any, chunk_size: int) -> Iterator[Union[str, bytes]]:
    """
    Yield the content of an Oracle LOB in pieces of at most chunk_size.

    Offsets are 1-based and counted in characters for CLOB/NCLOB, bytes
    for BLOB. Values already fetched inline as str/bytes are yielded whole.
    """
    if isinstance(lob, (str, bytes)):
        if lob:
            yield lob
        return

    offset = 1
    while True:
        data = lob.read(offset, chunk_size)
        if not data:
            break
        yield data
        offset += len(data)


def strip_nul(value: str) -> str:
    """Remove embedded NUL characters."""
    return value.replace("\x00", "")


def number_output_type_handler(cursor, metadata):
    """
    Fetch NUMBER columns as decimal.Decimal.

    Installed on source cursors so NUMBER values never pass through a
    binary float.
    """
    if metadata.type_code is oracledb.DB_TYPE_NUMBER:
        return cursor.var(Decimal, arraysize=cursor.arraysize)
    return None


class ColumnBinder:
    """
    Base binder shared by the destination dialects.

    Subclasses register their conversions in _converters. The set of keys
    must cover every supported ColumnType; __init__ enforces it.
    """

    engine: str = ""

    def __init__(self):
        self._converters: Dict[ColumnType, Callable[[ColumnDescriptor, Any, InsertBatch], Any]] = (
            self._build_converters()
        )
        missing = [
            column_type.value for column_type in ColumnType
            if column_type is not ColumnType.OPAQUE and column_type not in self._converters
        ]
        if missing:
            raise TypeError(f"{type(self).__name__} has no conversion for: {', '.join(missing)}")

    def _build_converters(self) -> Dict[ColumnType, Callable[[ColumnDescriptor, Any, InsertBatch], Any]]:
        raise NotImplementedError

    # SQL fragments

    def select_expression(self, column: ColumnDescriptor) -> str:
        """Expression selecting the column from the source alias."""
        name = f"{SOURCE_ALIAS}.{quote_identifier(column.name)}"
        if column.column_type is ColumnType.XMLTYPE:
            return f"XMLSERIALIZE(CONTENT {name} AS CLOB)"
        return name

    def check_columns(self, columns: Sequence[ColumnDescriptor]) -> None:
        """Report dialect limitations for the columns of a table; no-op by default."""

    def rowid_select_expression(self) -> str:
        return f"ROWIDTOCHAR({SOURCE_ALIAS}.ROWID)"

    def placeholder(self, column: Optional[ColumnDescriptor], position: int) -> str:
        """Placeholder for the 1-based INSERT position."""
        raise NotImplementedError

    # Typed NULLs

    def input_type(self, column: Optional[ColumnDescriptor]) -> Any:
        """Destination input type for the column; None lets the driver decide."""
        return None

    # Binding

    def bind(
        self,
        column: ColumnDescriptor,
        row: Sequence[Any],
        source_position: int,
        batch: InsertBatch,
        target_position: int,
    ) -> None:
        """
        Read one value from the fetched row and bind it into the batch.

        Args:
            column: Descriptor of the column being bound
            row: Row tuple returned by the fetch cursor
            source_position: 0-based position of the column in the row
            batch: Destination parameter batch
            target_position: 0-based position in the INSERT parameter list
        """
        value = row[source_position]
        if value is None:
            batch.set_null(target_position)
            return
        batch.set(target_position, self._converters[column.column_type](column, value, batch))

    def bind_rowid(self, row: Sequence[Any], batch: InsertBatch) -> None:
        value = row[0]
        if value is None:
            batch.set_null(0)
        else:
            batch.set(0, str(value))

    def write_batch(self, cursor, statement: str, batch: InsertBatch) -> None:
        """Send all rows of the batch to the destination."""
        raise NotImplementedError

    @staticmethod
    def _passthrough(column: ColumnDescriptor, value: Any, batch: InsertBatch) -> Any:
        return value


class OracleBinder(ColumnBinder):
    """
    Oracle to Oracle binder.

    Values keep their native Oracle types. NUMBER is never narrowed, national
    character columns are bound as NVARCHAR, zoned timestamps and year-month
    intervals travel as canonical text, and LOBs are streamed into
    destination temporary LOBs.
    """

    engine = ENGINE_ORACLE

    INPUT_TYPES = {
        ColumnType.NUMBER: oracledb.DB_TYPE_NUMBER,
        ColumnType.TINYINT: oracledb.DB_TYPE_NUMBER,
        ColumnType.SMALLINT: oracledb.DB_TYPE_NUMBER,
        ColumnType.INTEGER: oracledb.DB_TYPE_NUMBER,
        ColumnType.BIGINT: oracledb.DB_TYPE_NUMBER,
        ColumnType.BINARY_FLOAT: oracledb.DB_TYPE_BINARY_FLOAT,
        ColumnType.BINARY_DOUBLE: oracledb.DB_TYPE_BINARY_DOUBLE,
        ColumnType.CHAR: oracledb.DB_TYPE_VARCHAR,
        ColumnType.VARCHAR: oracledb.DB_TYPE_VARCHAR,
        ColumnType.NCHAR: oracledb.DB_TYPE_NVARCHAR,
        ColumnType.NVARCHAR: oracledb.DB_TYPE_NVARCHAR,
        ColumnType.DATE: oracledb.DB_TYPE_DATE,
        ColumnType.TIMESTAMP: oracledb.DB_TYPE_TIMESTAMP,
        ColumnType.TIMESTAMP_TZ: oracledb.DB_TYPE_VARCHAR,
        ColumnType.TIMESTAMP_LTZ: oracledb.DB_TYPE_TIMESTAMP_LTZ,
        ColumnType.INTERVAL_YM: oracledb.DB_TYPE_VARCHAR,
        ColumnType.INTERVAL_DS: oracledb.DB_TYPE_INTERVAL_DS,
        ColumnType.RAW: oracledb.DB_TYPE_RAW,
        ColumnType.CLOB: oracledb.DB_TYPE_CLOB,
        ColumnType.NCLOB: oracledb.DB_TYPE_NCLOB,
        ColumnType.BLOB: oracledb.DB_TYPE_BLOB,
        ColumnType.XMLTYPE: oracledb.DB_TYPE_CLOB,
    }

    def _build_converters(self):
        converters = {column_type: self._passthrough for column_type in self.INPUT_TYPES}
        converters[ColumnType.CLOB] = self._lob
        converters[ColumnType.NCLOB] = self._lob
        converters[ColumnType.BLOB] = self._lob
        converters[ColumnType.XMLTYPE] = self._lob
        return converters

    def select_expression(self, column: ColumnDescriptor) -> str:
        name = f"{SOURCE_ALIAS}.{quote_identifier(column.name)}"
        if column.column_type is ColumnType.TIMESTAMP_TZ:
            return f"TO_CHAR({name}, '{_ORA_TSTZ_FORMAT}')"
        if column.column_type is ColumnType.INTERVAL_YM:
            return f"TO_CHAR({name})"
        return super().select_expression(column)

    def placeholder(self, column: Optional[ColumnDescriptor], position: int) -> str:
        if column is not None:
            if column.column_type is ColumnType.TIMESTAMP_TZ:
                return f"TO_TIMESTAMP_TZ(:{position}, '{_ORA_TSTZ_FORMAT}')"
            if column.column_type is ColumnType.INTERVAL_YM:
                return f"TO_YMINTERVAL(:{position})"
        return f":{position}"

    def input_type(self, column: Optional[ColumnDescriptor]) -> Any:
        if column is None:
            return oracledb.DB_TYPE_VARCHAR
        return self.INPUT_TYPES[column.column_type]

    def _lob(self, column: ColumnDescriptor, value: Any, batch: InsertBatch) -> Any:
        target = batch.connection.createlob(self.input_type(column))
        offset = 1
        for chunk in iter_lob_chunks(value, lob_chunk_size(column)):
            target.write(chunk, offset)
            offset += len(chunk)
        return target

    def write_batch(self, cursor, statement: str, batch: InsertBatch) -> None:
        cursor.setinputsizes(*batch.input_types)
        cursor.executemany(statement, batch.rows)


class PostgresBinder(ColumnBinder):
    """
    Oracle to PostgreSQL binder.

    Zero-scale NUMBER columns narrowed at classification time are bound as
    Python ints (smallint/integer/bigint on the destination), all other
    NUMBER values as Decimal. Zoned timestamps keep their offset, year-month
    intervals are rewritten in PostgreSQL interval syntax, NUL characters
    are stripped from character data.
    """

    engine = ENGINE_POSTGRES

    def _build_converters(self):
        converters = {column_type: self._integer for column_type in INTEGER_TYPES}
        converters.update({column_type: self._string for column_type in CHARACTER_TYPES})
        converters.update({
            ColumnType.NUMBER: self._number,
            ColumnType.BINARY_FLOAT: self._float,
            ColumnType.BINARY_DOUBLE: self._float,
            ColumnType.DATE: self._passthrough,
            ColumnType.TIMESTAMP: self._passthrough,
            ColumnType.TIMESTAMP_TZ: self._timestamp_tz,
            ColumnType.TIMESTAMP_LTZ: self._passthrough,
            ColumnType.INTERVAL_YM: self._interval_ym,
            ColumnType.INTERVAL_DS: self._passthrough,
            ColumnType.RAW: self._bytes,
            ColumnType.CLOB: self._text_lob,
            ColumnType.NCLOB: self._text_lob,
            ColumnType.BLOB: self._binary_lob,
            ColumnType.XMLTYPE: self._text_lob,
        })
        return converters

    def check_columns(self, columns: Sequence[ColumnDescriptor]) -> None:
        large = [
            column.name for column in columns
            if column.column_type in LOB_TYPES or column.column_type is ColumnType.XMLTYPE
        ]
        if large:
            logger.warning(
                f"LOB columns {', '.join(large)} are read in chunks but each value is held "
                f"whole in memory before it is sent to PostgreSQL"
            )

    def select_expression(self, column: ColumnDescriptor) -> str:
        name = f"{SOURCE_ALIAS}.{quote_identifier(column.name)}"
        if column.column_type is ColumnType.TIMESTAMP_TZ:
            return f"TO_CHAR({name}, '{_PG_TSTZ_FORMAT}')"
        if column.column_type is ColumnType.INTERVAL_YM:
            return f"TO_CHAR({name})"
        return super().select_expression(column)

    def placeholder(self, column: Optional[ColumnDescriptor], position: int) -> str:
        return "%s"

    @staticmethod
    def _number(column: ColumnDescriptor, value: Any, batch: InsertBatch) -> Decimal:
        if isinstance(value, Decimal):
            return value
        return Decimal(str(value))

    @staticmethod
    def _integer(column: ColumnDescriptor, value: Any, batch: InsertBatch) -> int:
        return int(value)

    @staticmethod
    def _float(column: ColumnDescriptor, value: Any, batch: InsertBatch) -> float:
        return float(value)

    @staticmethod
    def _string(column: ColumnDescriptor, value: Any, batch: InsertBatch) -> str:
        return strip_nul(value)

    @staticmethod
    def _bytes(column: ColumnDescriptor, value: Any, batch: InsertBatch) -> bytes:
        return bytes(value)

    @staticmethod
    def _timestamp_tz(column: ColumnDescriptor, value: Any, batch: InsertBatch) -> datetime:
        if isinstance(value, datetime):
            return value
        return datetime.strptime(value.strip(), _PY_TSTZ_FORMAT)

    @staticmethod
    def _interval_ym(column: ColumnDescriptor, value: Any, batch: InsertBatch) -> str:
        match = _INTERVAL_YM.match(str(value))
        if not match:
            raise ValueError(f"Unrecognized INTERVAL YEAR TO MONTH value '{value}' in column {column.name}")
        sign = "-" if match.group(1) == "-" else ""
        years, months = int(match.group(2)), int(match.group(3))
        return f"{sign}{years} years {sign}{months} months"

    @staticmethod
    def _text_lob(column: ColumnDescriptor, value: Any, batch: InsertBatch) -> str:
        # psycopg2 needs the whole parameter value; only the reads are chunked
        return strip_nul("".join(iter_lob_chunks(value, lob_chunk_size(column))))

    @staticmethod
    def _binary_lob(column: ColumnDescriptor, value: Any, batch: InsertBatch) -> bytes:
        return b"".join(iter_lob_chunks(value, lob_chunk_size(column)))

    def write_batch(self, cursor, statement: str, batch: InsertBatch) -> None:
        execute_batch(cursor, statement, batch.rows, page_size=max(1, len(batch.rows)))


BINDERS = {
    ENGINE_ORACLE: OracleBinder,
    ENGINE_POSTGRES: PostgresBinder,
}


def binder_for(engine: str) -> ColumnBinder:
    """
    Return the binder for a destination engine family.

    Raises:
        ValueError: If the engine has no binder
    """
    try:
        return BINDERS[engine]()
    except KeyError:
        raise ValueError(f"No column binder for destination engine '{engine}'") from None
