"""Custom exceptions for the bruin collection runner.

All bruin-specific exceptions inherit from BruinError for unified error handling.
Each exception carries a stable ErrorCode so reports and CI consumers can filter
on it, and preserves the original cause chain for debugging.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Stable, documented codes surfaced in reports."""

    NOT_A_COLLECTION = "NOT_A_COLLECTION"
    MALFORMED_DESCRIPTOR = "MALFORMED_DESCRIPTOR"
    CYCLIC_VARIABLE_REFERENCE = "CYCLIC_VARIABLE_REFERENCE"
    NETWORK_ERROR = "NETWORK_ERROR"
    ASSERTION_FAILURE = "ASSERTION_FAILURE"
    SCRIPT_ERROR = "SCRIPT_ERROR"
    ENVIRONMENT_NOT_FOUND = "ENVIRONMENT_NOT_FOUND"
    CONFIG_ERROR = "CONFIG_ERROR"
    RUNNER_ERROR = "RUNNER_ERROR"
    CANCELLED = "CANCELLED"


class BruinError(Exception):
    """Base exception for all bruin errors.

    Attributes:
        message: Human-readable error description
        context: Optional dictionary with additional debugging context
        original_error: Original exception that caused this error (if any)
    """

    code: ErrorCode = ErrorCode.RUNNER_ERROR

    def __init__(
        self,
        message: str,
        *args: object,
        context: dict[str, Any] | None = None,
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(message, *args)
        self.message = message
        self.context = context or {}
        self.original_error = original_error

    def __str__(self) -> str:
        """Return formatted error message with context if available."""
        base = self.message
        if self.context:
            ctx_str = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            base = f"{base} [{ctx_str}]"
        if self.original_error:
            base = f"{base} (caused by: {type(self.original_error).__name__}: {self.original_error})"
        return base

    def with_context(self, **kwargs: Any) -> "BruinError":
        """Add context to this error and return self for chaining."""
        self.context.update(kwargs)
        return self


class BruinConfigError(BruinError):
    """Raised when configuration is invalid or a config file cannot be loaded.

    Common causes:
    - Config or matrix file not found
    - Invalid YAML syntax
    - Invalid field values (e.g., timeout_seconds <= 0)
    """

    code = ErrorCode.CONFIG_ERROR


class NotACollectionError(BruinError):
    """Raised when a directory lacks the structural files of a collection.

    Fatal to that one collection's run; sibling collections are unaffected.
    """

    code = ErrorCode.NOT_A_COLLECTION

    def __init__(self, message: str, *args: object, path: str = "", **kwargs: Any) -> None:
        super().__init__(message, *args, **kwargs)
        self.path = path


class MalformedDescriptorError(BruinError):
    """Raised when request descriptor text cannot be parsed.

    ``field`` names the offending block or key (e.g. ``meta.seq``, ``assert``).
    Fatal to that descriptor only.
    """

    code = ErrorCode.MALFORMED_DESCRIPTOR

    def __init__(self, message: str, *args: object, field: str = "", **kwargs: Any) -> None:
        super().__init__(message, *args, **kwargs)
        self.field = field


class CyclicVariableReferenceError(BruinError):
    """Raised when variable substitution exceeds the maximum resolution depth."""

    code = ErrorCode.CYCLIC_VARIABLE_REFERENCE

    def __init__(self, message: str, *args: object, variable: str = "", **kwargs: Any) -> None:
        super().__init__(message, *args, **kwargs)
        self.variable = variable


class ScriptError(BruinError):
    """Raised when a pre-request or post-response hook cannot be executed."""

    code = ErrorCode.SCRIPT_ERROR


class EnvironmentNotFoundError(BruinError):
    """Raised when the requested environment does not exist in a collection."""

    code = ErrorCode.ENVIRONMENT_NOT_FOUND


class BruinRunnerError(BruinError):
    """Raised when a run cannot be started (e.g. no targets, bad arguments)."""

    code = ErrorCode.RUNNER_ERROR
