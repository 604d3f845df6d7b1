"""
Errors - Exception taxonomy for the row pipeline

Every pipeline failure carries an ErrorKind so that row-level failures can be
reported as ``"<kind>: <message>"`` in the row's error message, and so that the
worker task protocol can transport failures as plain strings.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2026-01-12
"""

from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorKind(str, Enum):
    """Closed set of failure kinds."""
    TIMEOUT = "timeout"
    WORKER_CRASH = "worker_crash"
    QUEUE_FULL = "queue_full"
    INVALID_MERGE = "invalid_merge"
    PARSE_FAILURE = "parse_failure"
    EQUIVALENCE_SERVICE = "equivalence_service_error"
    CACHE_CORRUPT = "cache_corrupt"
    PERSISTED_STATE_CORRUPT = "persisted_state_corrupt"
    RECOGNITION = "recognition_error"
    ROW_NOT_FOUND = "row_not_found"
    INVALID_ROW_UPDATE = "invalid_row_update"
    TILING = "tiling_error"
    CANCELLED = "cancelled"
    INTERNAL = "internal_error"


class InkrowError(Exception):
    """Base class for all inkrow errors."""

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(self, message: str = "", **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context

    def describe(self) -> str:
        """Human-readable message prefixed by the error kind."""
        if self.message:
            return f"{self.kind.value}: {self.message}"
        return self.kind.value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "context": {k: str(v) for k, v in self.context.items()},
        }


class Timeout(InkrowError):
    """An awaited operation exceeded its deadline."""
    kind = ErrorKind.TIMEOUT


class WorkerCrash(InkrowError):
    """A recognition worker faulted twice on the same task."""
    kind = ErrorKind.WORKER_CRASH


class QueueFull(InkrowError):
    """The worker pool queue is at capacity."""
    kind = ErrorKind.QUEUE_FULL


class InvalidMerge(InkrowError):
    """Merged fragments do not form a well-formed expression."""
    kind = ErrorKind.INVALID_MERGE

    def __init__(self, message: str = "", text: str = "", errors: Optional[List[str]] = None):
        super().__init__(message, text=text)
        self.text = text
        self.errors = list(errors or [])


class ParseFailure(InkrowError):
    """The syntax validator rejected an expression."""
    kind = ErrorKind.PARSE_FAILURE


class EquivalenceServiceError(InkrowError):
    """The equivalence service failed or returned an unusable answer."""
    kind = ErrorKind.EQUIVALENCE_SERVICE


class CacheCorrupt(InkrowError):
    """A persisted cache entry could not be decoded."""
    kind = ErrorKind.CACHE_CORRUPT


class PersistedStateCorrupt(InkrowError):
    """A persisted document payload failed validation."""
    kind = ErrorKind.PERSISTED_STATE_CORRUPT


class RecognitionError(InkrowError):
    """
    Recognition-level failure reported by a recognition service.

    ``reason`` distinguishes a model error from malformed output.
    """
    kind = ErrorKind.RECOGNITION

    MODEL_ERROR = "model_error"
    MALFORMED_OUTPUT = "malformed_output"

    def __init__(self, message: str = "", reason: str = MODEL_ERROR, **context: Any):
        super().__init__(message, reason=reason, **context)
        self.reason = reason


class RecognitionFailed(RecognitionError):
    """A recognition error persisted after the local retry."""


class RowNotFound(InkrowError, KeyError):
    """Unknown row id."""
    kind = ErrorKind.ROW_NOT_FOUND

    def __str__(self) -> str:
        return self.message


class InvalidRowUpdate(InkrowError, ValueError):
    """Malformed row update payload or illegal status transition."""
    kind = ErrorKind.INVALID_ROW_UPDATE


class TilingError(InkrowError, ValueError):
    """Content cannot be tiled for the given row band."""
    kind = ErrorKind.TILING


class RowCancelled(InkrowError):
    """The row's recognition cycle was cancelled."""
    kind = ErrorKind.CANCELLED


class RowRecognitionError(InkrowError):
    """
    A row failed recognition because one of its tiles failed.

    The failing tile error is kept in ``cause`` and its kind is reused.
    """

    def __init__(self, row_id: str, cause: InkrowError):
        super().__init__(cause.message, row_id=row_id)
        self.row_id = row_id
        self.cause = cause
        self.kind = cause.kind
