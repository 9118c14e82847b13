"""
Structured error types for jobspine.

Every failure the dispatch core can raise is a ``JobSpineError`` carrying a
category, an explicit retry flag, and structured context, so the ticking loop
can decide between "abort this tick" and "skip this entry" without string
matching on messages.

Manifesto:
    - **Typed hierarchy:** store outages, corrupt entries, and bad cron
      definitions are different types with different handling
    - **Explicit retry semantics:** only ``TransientError`` is retryable
    - **Rich context:** set name, queue, member, and definition travel with
      the error into the structured log
    - **Error chaining:** the driver exception is kept as ``cause``

Architecture:
    ::

        ┌──────────────────────────────────────────────────────────────┐
        │                        JobSpineError                          │
        │      (category, retryable, context, cause)                    │
        ├──────────────────────────────────────────────────────────────┤
        │                                                               │
        │  TransientError        ParseError          CronError          │
        │  (retryable=True)      (PARSE)             (VALIDATION)       │
        │       │                    │                    │             │
        │  StoreUnavailable      MalformedEnvelope   InvalidExpression  │
        │  (STORAGE)                                 NoMatchFound       │
        └──────────────────────────────────────────────────────────────┘

Handling rules:
    ``StoreUnavailable`` aborts the current ``run_once`` call and propagates.
    ``MalformedEnvelope`` and ``CronError`` are per-entry: the entry is
    reported and skipped, sibling entries keep being processed.

Examples:
    >>> err = StoreUnavailable("redis timed out").with_context(set_name="retry")
    >>> err.retryable
    True
    >>> err.to_dict()["context"]
    {'set_name': 'retry'}
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories for classification and log routing."""

    # Infrastructure errors (usually transient)
    NETWORK = "NETWORK"
    STORAGE = "STORAGE"

    # Data errors
    PARSE = "PARSE"
    VALIDATION = "VALIDATION"

    # Internal errors
    INTERNAL = "INTERNAL"


@dataclass
class ErrorContext:
    """Structured metadata attached to an error.

    Attributes:
        set_name: Time-ordered set being processed (``scheduled``, ``retry``, ...)
        queue: Immediate queue involved
        member: Raw stored member text (truncated by callers when logging)
        definition: Periodic definition name
        metadata: Additional key-value pairs
    """

    set_name: str | None = None
    queue: str | None = None
    member: str | None = None
    definition: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["set_name", "queue", "member", "definition"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class JobSpineError(Exception):
    """Base exception for all jobspine errors.

    Subclasses set ``default_category`` and ``default_retryable`` so that
    callers rarely need to pass them explicitly.
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> JobSpineError:
        """Add context to this error (fluent API).

        Usage:
            raise MalformedEnvelope("missing 'queue'").with_context(
                set_name="retry",
                member=raw,
            )
        """
        for key, value in kwargs.items():
            if hasattr(self.context, key):
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# TRANSIENT ERRORS
# =============================================================================


class TransientError(JobSpineError):
    """Temporary error that may succeed on the next tick."""

    default_category = ErrorCategory.NETWORK
    default_retryable = True


class StoreUnavailable(TransientError):
    """The shared store could not be reached or timed out.

    Never means "entry not found": callers abort the current unit of work.
    """

    default_category = ErrorCategory.STORAGE


# =============================================================================
# DATA ERRORS
# =============================================================================


class ParseError(JobSpineError):
    """Stored data could not be parsed."""

    default_category = ErrorCategory.PARSE
    default_retryable = False


class MalformedEnvelope(ParseError):
    """A job envelope or periodic definition failed to encode or decode."""


class CronError(JobSpineError):
    """Base class for cron expression failures."""

    default_category = ErrorCategory.VALIDATION
    default_retryable = False


class InvalidExpression(CronError):
    """Cron expression has the wrong shape, bad syntax, or out-of-range values."""

    def __init__(self, message: str, *, expression: str | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.expression = expression

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.expression is not None:
            result["expression"] = self.expression
        return result


class NoMatchFound(CronError):
    """Cron expression has no occurrence inside the search horizon."""


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "JobSpineError",
    "TransientError",
    "StoreUnavailable",
    "ParseError",
    "MalformedEnvelope",
    "CronError",
    "InvalidExpression",
    "NoMatchFound",
]
