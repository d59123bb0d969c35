"""Core runtime error types.

The runtime is fail-closed: it rejects registrations it cannot prove valid.
These exception types are mapped to HTTP responses in the API layer.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable


class CadenceRuntimeError(Exception):
    """Base class for runtime errors."""


class ConfigError(CadenceRuntimeError):
    """Missing or invalid runtime configuration."""


class InvalidDefinitionError(CadenceRuntimeError):
    def __init__(self, message: str, details: Any | None = None):
        self.details = details
        super().__init__(message)


@dataclass(frozen=True)
class SchemaViolation:
    path: str
    message: str


class SchemaValidationError(InvalidDefinitionError):
    def __init__(self, kind: str, violations: Iterable[SchemaViolation]):
        self.kind = kind
        self.violations = list(violations)
        super().__init__(f"{kind} failed schema validation ({len(self.violations)} violation(s))")


class NotFoundError(CadenceRuntimeError):
    def __init__(self, resource_type: str, resource_id: str):
        self.resource_type = resource_type
        self.resource_id = resource_id
        super().__init__(f"{resource_type} not found: {resource_id}")


class ConflictError(CadenceRuntimeError):
    def __init__(self, message: str, details: Any | None = None):
        self.details = details
        super().__init__(message)


class StorageError(CadenceRuntimeError):
    """Persistence read/write failure."""


class ExecutionFailure(CadenceRuntimeError):
    """Raised by task bodies to report a failed run.

    Handled by the execution adapter's backoff policy; never propagated to
    the caller that registered the work.
    """

    def __init__(self, message: str = "task failed", *, retryable: bool = True):
        self.retryable = retryable
        super().__init__(message)
