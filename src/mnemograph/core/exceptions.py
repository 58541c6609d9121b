"""
MnemoGraph Domain-Specific Exceptions
=====================================

This module defines a hierarchy of exceptions for consistent error handling
across the memory graph engine.

Exception Hierarchy:
    MnemoGraphError (base)
    ├── RecoverableError (transient, retry possible)
    │   └── TransientIOError
    ├── IrrecoverableError (permanent, requires intervention)
    │   ├── ConfigError
    │   ├── ValidationError
    │   ├── NotFoundError
    │   ├── ConstraintError
    │   ├── DataCorruptionError
    │   └── OperationCancelledError
    └── StorageError (mixed recoverability)

Usage Guidelines:
    - Return None for lookups that miss (get_node, get_edge)
    - Raise NotFoundError when a mutation targets a missing id
    - CRUD calls propagate; maintenance jobs catch and report via errors[]
    - Always include context in error messages
"""

from typing import Optional, Any
from enum import Enum
import sqlite3

# Offending values are echoed into the error context up to this length
MAX_VALUE_CHARS = 100


class ErrorCategory(Enum):
    """Categories for error classification."""
    STORAGE = "STORAGE"
    CONFIG = "CONFIG"
    VALIDATION = "VALIDATION"
    GRAPH = "GRAPH"
    SYSTEM = "SYSTEM"


def _merged(extra: Optional[dict], **base: Any) -> dict:
    """Identifying fields first, caller context on top."""
    if extra:
        base.update(extra)
    return base


class MnemoGraphError(Exception):
    """
    Base exception for all MnemoGraph errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code
        context: Additional context about the error
        recoverable: Whether the error is potentially recoverable
    """

    error_code: str = "MNEMO_GRAPH_ERROR"
    recoverable: bool = True
    category: ErrorCategory = ErrorCategory.SYSTEM

    def __init__(
        self,
        message: str,
        context: Optional[dict] = None,
        error_code: Optional[str] = None,
        recoverable: Optional[bool] = None
    ):
        super().__init__(message)
        self.message = message
        self.context = context or {}
        if error_code is not None:
            self.error_code = error_code
        if recoverable is not None:
            self.recoverable = recoverable

    def __str__(self) -> str:
        if self.context:
            return f"{self.message} | context={self.context}"
        return self.message

    def to_dict(self) -> dict:
        """Convert exception to a JSON-serialisable dictionary."""
        result = {
            "error": self.message,
            "code": self.error_code,
            "recoverable": self.recoverable,
        }
        if self.context:
            result["context"] = self.context
        return result


# =============================================================================
# Base Categories: Recoverable vs Irrecoverable
# =============================================================================

class RecoverableError(MnemoGraphError):
    """
    Base class for recoverable errors.

    These are transient errors that may succeed on retry:
    - Database locked by another writer
    - Busy timeouts
    """
    recoverable = True


class IrrecoverableError(MnemoGraphError):
    """
    Base class for irrecoverable errors.

    These are permanent errors that require intervention:
    - Invalid configuration
    - Constraint violations
    - Resource not found
    """
    recoverable = False


# =============================================================================
# Storage Errors
# =============================================================================

class StorageError(MnemoGraphError):
    """Base exception for storage-related errors."""
    error_code = "STORAGE_ERROR"
    category = ErrorCategory.STORAGE


class TransientIOError(RecoverableError, StorageError):
    """Raised when storage is temporarily unavailable (locked or busy)."""
    error_code = "TRANSIENT_IO_ERROR"

    def __init__(self, backend: str, operation: str, reason: str = "Storage temporarily unavailable",
                 context: Optional[dict] = None):
        super().__init__(f"[{backend}] {operation} failed: {reason}",
                         _merged(context, backend=backend, operation=operation))
        self.backend = backend
        self.operation = operation


class ConstraintError(IrrecoverableError, StorageError):
    """Raised when a uniqueness or referential constraint is violated."""
    error_code = "CONSTRAINT_ERROR"

    def __init__(self, resource_type: str, resource_id: str, reason: str = "Constraint violated",
                 context: Optional[dict] = None):
        super().__init__(f"{reason} for {resource_type} '{resource_id}'",
                         _merged(context, resource_type=resource_type, resource_id=resource_id))
        self.resource_type = resource_type
        self.resource_id = resource_id


class DataCorruptionError(IrrecoverableError, StorageError):
    """Raised when a stored row cannot be deserialized."""
    error_code = "DATA_CORRUPTION_ERROR"

    def __init__(self, resource_id: str, reason: str = "Data corruption detected", context: Optional[dict] = None):
        super().__init__(f"{reason} in row '{resource_id}'", _merged(context, resource_id=resource_id))
        self.resource_id = resource_id


# =============================================================================
# Configuration Errors
# =============================================================================

class ConfigError(IrrecoverableError):
    """Raised when engine configuration is invalid."""
    error_code = "CONFIG_ERROR"
    category = ErrorCategory.CONFIG

    def __init__(self, config_key: str, reason: str, context: Optional[dict] = None):
        super().__init__(f"Invalid config '{config_key}': {reason}", _merged(context, config_key=config_key))
        self.config_key = config_key
        self.reason = reason


# =============================================================================
# Validation Errors
# =============================================================================

class ValidationError(IrrecoverableError):
    """Raised when input data fails validation."""
    error_code = "VALIDATION_ERROR"
    category = ErrorCategory.VALIDATION

    def __init__(self, field: str, reason: str, value: Any = None, context: Optional[dict] = None):
        shown = {}
        if value is not None:
            text = str(value)
            shown["value"] = text if len(text) <= MAX_VALUE_CHARS else text[:MAX_VALUE_CHARS] + "..."
        super().__init__(f"Validation error for '{field}': {reason}",
                         _merged(context, field=field, reason=reason, **shown))
        self.field = field
        self.reason = reason
        self.value = value


# =============================================================================
# Not Found Errors
# =============================================================================

class NotFoundError(IrrecoverableError):
    """Raised when a mutation targets a node or edge that does not exist."""
    error_code = "NOT_FOUND_ERROR"
    category = ErrorCategory.GRAPH

    def __init__(self, resource_type: str, resource_id: str, context: Optional[dict] = None):
        super().__init__(f"{resource_type} '{resource_id}' not found",
                         _merged(context, resource_type=resource_type, resource_id=resource_id))
        self.resource_type = resource_type
        self.resource_id = resource_id


# =============================================================================
# Cancellation
# =============================================================================

class OperationCancelledError(IrrecoverableError):
    """Raised when a maintenance job observes a cancellation request."""
    error_code = "OPERATION_CANCELLED"

    def __init__(self, operation: str, context: Optional[dict] = None):
        super().__init__(f"{operation} cancelled", _merged(context, operation=operation))
        self.operation = operation


# =============================================================================
# Utility Functions
# =============================================================================

def wrap_storage_exception(backend: str, operation: str, exc: Exception,
                           resource_type: str = "row", resource_id: str = "?") -> StorageError:
    """
    Wrap a raw sqlite3 exception into an appropriate StorageError.

    Args:
        backend: Name of the storage backend (e.g., 'sqlite')
        operation: Name of the operation that failed
        exc: The original exception
        resource_type: Kind of entity the operation touched
        resource_id: Identifier of that entity, when known

    Returns:
        An appropriate StorageError subclass
    """
    exc_name = type(exc).__name__
    exc_msg = str(exc)

    if isinstance(exc, sqlite3.IntegrityError):
        return ConstraintError(resource_type, resource_id, exc_msg, {"operation": operation})

    # Lock contention is the transient case for an embedded store
    lowered = exc_msg.lower()
    if isinstance(exc, sqlite3.OperationalError) and ("locked" in lowered or "busy" in lowered):
        return TransientIOError(backend, operation, exc_msg)

    if "timeout" in lowered or "Timeout" in exc_name:
        return TransientIOError(backend, operation, exc_msg)

    return StorageError(
        f"[{backend}] {operation} failed: {exc_msg}",
        {"backend": backend, "operation": operation, "original_exception": exc_name}
    )


# =============================================================================
# Convenience Exports
# =============================================================================

__all__ = [
    # Base
    "MnemoGraphError",
    "RecoverableError",
    "IrrecoverableError",
    "ErrorCategory",
    # Storage
    "StorageError",
    "TransientIOError",
    "ConstraintError",
    "DataCorruptionError",
    # Config / validation
    "ConfigError",
    "ValidationError",
    # Graph
    "NotFoundError",
    "OperationCancelledError",
    # Utilities
    "wrap_storage_exception",
]
