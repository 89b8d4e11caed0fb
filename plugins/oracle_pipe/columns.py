"""
Oracle Column Classification Module

This module classifies Oracle catalog column metadata into the semantic type
tags used by the column binders, including the narrowing of zero-scale
NUMBER columns to fixed-width integer tags.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Sequence
import logging

logger = logging.getLogger(__name__)


class ColumnType(Enum):
    """Semantic type tag of a source column."""

    NUMBER = "NUMBER"
    TINYINT = "TINYINT"
    SMALLINT = "SMALLINT"
    INTEGER = "INTEGER"
    BIGINT = "BIGINT"
    BINARY_FLOAT = "BINARY_FLOAT"
    BINARY_DOUBLE = "BINARY_DOUBLE"
    CHAR = "CHAR"
    VARCHAR = "VARCHAR"
    NCHAR = "NCHAR"
    NVARCHAR = "NVARCHAR"
    DATE = "DATE"
    TIMESTAMP = "TIMESTAMP"
    TIMESTAMP_TZ = "TIMESTAMP_TZ"
    TIMESTAMP_LTZ = "TIMESTAMP_LTZ"
    INTERVAL_YM = "INTERVAL_YM"
    INTERVAL_DS = "INTERVAL_DS"
    RAW = "RAW"
    CLOB = "CLOB"
    NCLOB = "NCLOB"
    BLOB = "BLOB"
    XMLTYPE = "XMLTYPE"
    OPAQUE = "OPAQUE"


INTEGER_TYPES = frozenset({
    ColumnType.TINYINT,
    ColumnType.SMALLINT,
    ColumnType.INTEGER,
    ColumnType.BIGINT,
})

LOB_TYPES = frozenset({
    ColumnType.CLOB,
    ColumnType.NCLOB,
    ColumnType.BLOB,
})

CHARACTER_TYPES = frozenset({
    ColumnType.CHAR,
    ColumnType.VARCHAR,
    ColumnType.NCHAR,
    ColumnType.NVARCHAR,
})

# Oracle DATA_TYPE values with a direct tag. TIMESTAMP% and INTERVAL% carry
# precision in the type name and are handled separately.
TYPE_MAPPING = {
    "DATE": ColumnType.DATE,
    "FLOAT": ColumnType.NUMBER,
    "NUMBER": ColumnType.NUMBER,
    "BINARY_FLOAT": ColumnType.BINARY_FLOAT,
    "BINARY_DOUBLE": ColumnType.BINARY_DOUBLE,
    "CHAR": ColumnType.CHAR,
    "NCHAR": ColumnType.NCHAR,
    "VARCHAR2": ColumnType.VARCHAR,
    "NVARCHAR2": ColumnType.NVARCHAR,
    "CLOB": ColumnType.CLOB,
    "NCLOB": ColumnType.NCLOB,
    "RAW": ColumnType.RAW,
    "BLOB": ColumnType.BLOB,
    "XMLTYPE": ColumnType.XMLTYPE,
}

# Upper bounds (exclusive) on NUMBER precision for each integer tag
INTEGER_NARROWING = (
    (3, ColumnType.TINYINT),
    (5, ColumnType.SMALLINT),
    (10, ColumnType.INTEGER),
    (19, ColumnType.BIGINT),
)


def narrow_number(precision: Optional[int], scale: Optional[int]) -> ColumnType:
    """
    Pick the smallest integer tag able to hold a NUMBER(precision, scale).

    Only zero-scale columns with a declared precision are narrowed; anything
    else stays arbitrary-precision NUMBER.

    Examples:
        >>> narrow_number(8, 0)
        <ColumnType.INTEGER: 'INTEGER'>
        >>> narrow_number(19, 0)
        <ColumnType.NUMBER: 'NUMBER'>
        >>> narrow_number(10, 2)
        <ColumnType.NUMBER: 'NUMBER'>
    """
    if precision is None or scale is None or scale != 0:
        return ColumnType.NUMBER
    for bound, column_type in INTEGER_NARROWING:
        if precision < bound:
            return column_type
    return ColumnType.NUMBER


def classify_type(
    data_type: str,
    precision: Optional[int] = None,
    scale: Optional[int] = None,
) -> ColumnType:
    """
    Map an Oracle DATA_TYPE to its semantic tag.

    Args:
        data_type: DATA_TYPE value from DBA_TAB_COLS
        precision: DATA_PRECISION (None when not declared)
        scale: DATA_SCALE (None when not declared)

    Returns:
        The semantic tag, ColumnType.OPAQUE for anything unsupported
    """
    oracle_type = (data_type or "").upper().strip()

    if oracle_type.startswith("TIMESTAMP"):
        if oracle_type.endswith("WITH LOCAL TIME ZONE"):
            return ColumnType.TIMESTAMP_LTZ
        if oracle_type.endswith("WITH TIME ZONE"):
            return ColumnType.TIMESTAMP_TZ
        return ColumnType.TIMESTAMP

    if oracle_type.startswith("INTERVAL"):
        if "TO MONTH" in oracle_type:
            return ColumnType.INTERVAL_YM
        return ColumnType.INTERVAL_DS

    column_type = TYPE_MAPPING.get(oracle_type)
    if column_type is None:
        return ColumnType.OPAQUE
    if oracle_type == "NUMBER":
        return narrow_number(precision, scale)
    return column_type


@dataclass(frozen=True)
class ColumnDescriptor:
    """
    Immutable description of one source column.

    Built once from catalog metadata and shared read-only by every worker.
    """

    name: str
    column_type: ColumnType
    data_type: str
    data_length: Optional[int] = None
    precision: Optional[int] = None
    scale: Optional[int] = None
    nullable: bool = True
    lob_chunk: int = 0

    @property
    def is_lob(self) -> bool:
        return self.column_type in LOB_TYPES

    @property
    def is_supported(self) -> bool:
        return self.column_type is not ColumnType.OPAQUE

    @classmethod
    def from_catalog_row(cls, row: Sequence[Any]) -> "ColumnDescriptor":
        """
        Build a descriptor from one row of the catalog query.

        Row layout: COLUMN_NAME, DATA_TYPE, DATA_LENGTH, DATA_PRECISION,
        DATA_SCALE, NULLABLE, COLUMN_ID, CHUNK.
        """
        name, data_type, data_length, precision, scale, nullable, _column_id, chunk = row
        column_type = classify_type(data_type, precision, scale)
        if column_type is ColumnType.OPAQUE:
            logger.warning(
                f"Datatype '{data_type}' for column '{name}' is not supported, "
                f"column will be excluded from the copy"
            )
        return cls(
            name=name,
            column_type=column_type,
            data_type=data_type,
            data_length=data_length,
            precision=precision,
            scale=scale,
            nullable=(nullable != "N"),
            lob_chunk=int(chunk) if chunk else 0,
        )

