from enum import Enum
from typing import Any, Dict, List, Optional, Type


class ErrorCode(str, Enum):
    """Standardized error codes for table mapping failures."""
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    SCHEMA_VALIDATION_FAILED = "SCHEMA_VALIDATION_FAILED"
    UNKNOWN_FIELD = "UNKNOWN_FIELD"
    RELATION_NOT_FOUND = "RELATION_NOT_FOUND"
    UNSUPPORTED_RELATION_OPERATION = "UNSUPPORTED_RELATION_OPERATION"
    INVALID_QUERY_OPTION = "INVALID_QUERY_OPTION"
    UNIQUENESS_VIOLATION = "UNIQUENESS_VIOLATION"
    DB_EXECUTION_ERROR = "DB_EXECUTION_ERROR"


class TablemapError(Exception):
    """Base class for every error raised by tablemap.

    Attributes:
        message (str): A human-readable error message.
        details (Dict[str, Any]): Additional context or metadata.
    """

    error_code: ErrorCode = ErrorCode.DB_EXECUTION_ERROR

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigurationError(TablemapError):
    error_code = ErrorCode.CONFIGURATION_ERROR


class SchemaValidationError(TablemapError):
    """A record does not conform to its table schema."""

    error_code = ErrorCode.SCHEMA_VALIDATION_FAILED

    def __init__(self, message: str, errors: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message, {"errors": errors or []})
        self.errors = errors or []

    @property
    def fields(self) -> List[str]:
        return [error["field"] for error in self.errors]


class UnknownFieldError(TablemapError):
    error_code = ErrorCode.UNKNOWN_FIELD


class RelationNotFoundError(TablemapError):
    error_code = ErrorCode.RELATION_NOT_FOUND


class UnsupportedRelationOperationError(TablemapError):
    error_code = ErrorCode.UNSUPPORTED_RELATION_OPERATION


class InvalidQueryOptionError(TablemapError):
    error_code = ErrorCode.INVALID_QUERY_OPTION


class UniquenessViolationError(TablemapError):
    """Another record already holds the value of a unique field."""

    error_code = ErrorCode.UNIQUENESS_VIOLATION

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.table = self.details.get("table")
        self.field = self.details.get("field")
        self.value = self.details.get("value")


class DatabaseError(TablemapError):
    """Opaque failure reported by the storage backend."""

    error_code = ErrorCode.DB_EXECUTION_ERROR


_ERRORS_BY_CODE: Dict[ErrorCode, Type[TablemapError]] = {
    ErrorCode.CONFIGURATION_ERROR: ConfigurationError,
    ErrorCode.UNKNOWN_FIELD: UnknownFieldError,
    ErrorCode.RELATION_NOT_FOUND: RelationNotFoundError,
    ErrorCode.UNSUPPORTED_RELATION_OPERATION: UnsupportedRelationOperationError,
    ErrorCode.INVALID_QUERY_OPTION: InvalidQueryOptionError,
    ErrorCode.UNIQUENESS_VIOLATION: UniquenessViolationError,
    ErrorCode.DB_EXECUTION_ERROR: DatabaseError,
}


def error_for_code(
    code: ErrorCode, message: str, details: Optional[Dict[str, Any]] = None
) -> TablemapError:
    """Builds the exception matching an error code raised inside a query.

    Args:
        code (ErrorCode): The standardized error code.
        message (str): The error message.
        details (Optional[Dict[str, Any]]): Context attached to the error.

    Returns:
        TablemapError: The exception instance, not yet raised.
    """
    if code == ErrorCode.SCHEMA_VALIDATION_FAILED:
        return SchemaValidationError(message, (details or {}).get("errors"))
    return _ERRORS_BY_CODE.get(code, DatabaseError)(message, details)
