"""Error taxonomy shared by the batching services and stores."""

from __future__ import annotations

from typing import Any


class BatchingError(Exception):
    """Base class for every failure surfaced by the batching engine."""

    code = "error"
    retryable = False

    def __init__(self, message: str, **metadata: Any) -> None:
        super().__init__(message)
        self.message = message
        self.metadata = metadata


class ValidationError(BatchingError):
    """Bad input or exceeded capacity."""

    code = "validation"


class IncompatibilityError(BatchingError):
    """The order set failed the compatibility check."""

    code = "incompatible"

    def __init__(self, reason: str, score: float = 0.0, **metadata: Any) -> None:
        super().__init__(reason, score=score, **metadata)
        self.reason = reason
        self.score = score


class NoCandidateError(BatchingError):
    """No eligible driver or order was found."""

    code = "no_candidate"


class ConflictError(BatchingError):
    """A conditional write lost against a concurrent mutation."""

    code = "conflict"
    retryable = True


class StoreError(BatchingError):
    """Transient persistence or network failure."""

    code = "store"
    retryable = True


class StateError(BatchingError):
    """The operation is not valid for the current status."""

    code = "state"
