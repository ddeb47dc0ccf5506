"""
Valora — Error taxonomy.

Handlers raise these; the Dispatch Registry turns everything except
OrchestrationLimitExceeded and EngineError into a failed OperationResult,
so the reasoning engine sees the failure instead of the caller.
"""

from __future__ import annotations

VALIDATION_ERROR = "VALIDATION_ERROR"
NOT_FOUND = "NOT_FOUND"
DATABASE_ERROR = "DATABASE_ERROR"
SEARCH_ERROR = "SEARCH_ERROR"
TECHNICAL_ERROR = "TECHNICAL_ERROR"
UNKNOWN_OPERATION = "UNKNOWN_OPERATION"
ENGINE_ERROR = "ENGINE_ERROR"
ORCHESTRATION_LIMIT = "ORCHESTRATION_LIMIT"


class ValoraError(Exception):
    """Base class for every error raised inside Valora."""

    code: str = TECHNICAL_ERROR


class ValidationError(ValoraError):
    """Bad operation arguments. Carries the individual problems."""

    code = VALIDATION_ERROR

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.errors = list(errors) if errors else [message]


class RecurrenceError(ValidationError):
    """Invalid frequency, interval or anchor field."""


class NotFoundError(ValoraError):
    """A record does not exist or belongs to another tenant."""

    code = NOT_FOUND


class StorageError(ValoraError):
    """Raised when a storage operation fails."""

    code = DATABASE_ERROR


class SearchError(ValoraError):
    """Raised when the vector search backend fails."""

    code = SEARCH_ERROR


class UnknownOperation(ValoraError):
    """The engine asked for an operation that was never registered."""

    code = UNKNOWN_OPERATION

    def __init__(self, name: str) -> None:
        super().__init__(f"Operation '{name}' is not registered")
        self.name = name


class EngineError(ValoraError):
    """The reasoning engine call itself failed. Fatal for the turn."""

    code = ENGINE_ERROR


class OrchestrationLimitExceeded(ValoraError):
    """The engine kept requesting operations past the iteration ceiling."""

    code = ORCHESTRATION_LIMIT

    def __init__(self, max_iterations: int) -> None:
        super().__init__(
            f"Maximum iterations ({max_iterations}) reached without a final answer"
        )
        self.max_iterations = max_iterations
