"""
Utility functions for the table pipe.

This module provides SQL identifier validation and quoting helpers shared by
the configuration layer and the SQL synthesizer, and accessors for the error
codes carried by oracledb exceptions.
"""

import re
from typing import Optional

# Oracle allows $ and # in unquoted identifiers
_SIMPLE_IDENTIFIER = re.compile(r'^[A-Za-z_][A-Za-z0-9_$#]*$')


def validate_sql_identifier(identifier: str, identifier_type: str = "identifier") -> str:
    """
    Validate SQL identifiers supplied by the caller to prevent SQL injection.

    Schema, table and column names given by the caller are pasted into the
    generated statements, so they must be plain identifiers.

    Args:
        identifier: The identifier to validate
        identifier_type: Type description for error messages (e.g., "table name", "schema")

    Returns:
        The validated identifier (unchanged if valid)

    Raises:
        ValueError: If the identifier is invalid

    Rules:
        - Non-empty
        - Max 128 characters (Oracle 12.2+ limit)
        - Must start with letter or underscore
        - Can contain only alphanumeric characters, underscores, $ and #

    Examples:
        >>> validate_sql_identifier("EMP")
        'EMP'
        >>> validate_sql_identifier("SYS$LOG#2")
        'SYS$LOG#2'
        >>> validate_sql_identifier("drop; --")  # doctest: +SKIP
        ValueError: Invalid identifier 'drop; --': ...
    """
    if not identifier:
        raise ValueError(f"Invalid {identifier_type}: cannot be empty")

    if len(identifier) > 128:
        raise ValueError(
            f"Invalid {identifier_type}: exceeds maximum length of 128 characters "
            f"(got {len(identifier)} characters)"
        )

    if not _SIMPLE_IDENTIFIER.match(identifier):
        raise ValueError(
            f"Invalid {identifier_type} '{identifier}': must start with letter or underscore "
            "and contain only alphanumeric characters, underscores, '$' and '#'"
        )

    return identifier


def quote_identifier(identifier: str) -> str:
    """
    Render a catalog identifier for use in generated SQL.

    Simple upper-case identifiers (the Oracle dictionary form of unquoted
    names) are emitted unquoted so the target engine applies its own case
    folding (Oracle keeps upper case, PostgreSQL lower-cases). Anything else
    (mixed-case names created with quotes, spaces, reserved characters) is
    double-quoted verbatim with embedded quotes doubled.

    Examples:
        >>> quote_identifier("EMPNO")
        'EMPNO'
        >>> quote_identifier("Order Date")
        '"Order Date"'
        >>> quote_identifier("ename")
        '"ename"'
    """
    if _SIMPLE_IDENTIFIER.match(identifier) and identifier == identifier.upper():
        return identifier
    return '"' + identifier.replace('"', '""') + '"'


def qualified_name(owner: str, table: str) -> str:
    """
    Return OWNER.TABLE for caller-supplied names.

    Both parts are validated and left unquoted, matching how a DBA would
    type them; the engine folds their case.
    """
    validate_sql_identifier(owner, "schema name")
    validate_sql_identifier(table, "table name")
    return f"{owner}.{table}"


def oracle_error_code(error: BaseException) -> Optional[int]:
    """
    Return the ORA- error number carried by an oracledb exception.

    Examples:
        ORA-00942 -> 942; driver-side DPY- errors -> 0; other exceptions -> None
    """
    if error.args and hasattr(error.args[0], "code"):
        return error.args[0].code
    return None


def oracle_full_code(error: BaseException) -> Optional[str]:
    """Return the full error code ('ORA-00942', 'DPY-4005') of an oracledb exception."""
    if error.args and hasattr(error.args[0], "full_code"):
        return error.args[0].full_code
    return None
