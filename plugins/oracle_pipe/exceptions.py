"""
Exceptions raised by the table pipe.

Driver errors (oracledb.DatabaseError, psycopg2.Error) are not wrapped; they
propagate unchanged unless a more specific, correctable condition is known.
"""

from typing import Any, Dict, List, Optional


class PipeException(Exception):
    """
    Base exception for all pipe errors.

    All custom exceptions should inherit from this class.
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        """
        Initialize exception.

        Args:
            message: Human-readable error message
            details: Additional error context
        """
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for XCom/reporting."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }


class ConfigurationError(PipeException, ValueError):
    """
    Missing or invalid run configuration.

    Raised before any data is read, so no partial work exists.
    """


class PrivilegeError(PipeException):
    """
    The connected user lacks a grant on a catalog or introspection view.

    The message carries the exact grant statements a DBA has to run.
    """

    def __init__(self, message: str, grants: List[str], details: Optional[Dict[str, Any]] = None):
        self.grants = grants
        details = dict(details or {})
        details["grants"] = grants
        super().__init__(
            message=f"{message}. Please run as SYSDBA: {' '.join(grants)}",
            details=details,
        )


class PoolProvisioningError(PipeException):
    """
    A transient pool error persisted after re-provisioning the pool once.
    """


class PipeRunError(PipeException):
    """
    The run finished but at least one worker failed.
    """
