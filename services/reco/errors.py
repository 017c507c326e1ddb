"""
Error taxonomy for the recommendation core.

Only validation failures and exhausted retries cross a component boundary.
Transient failures are retried inside the component that owns the call.
Stale cached data is an accepted condition and has no exception type.
"""

from __future__ import annotations


class RecoError(Exception):
    """Base class for all recommendation-core errors."""


class ValidationError(RecoError):
    """Bad caller input. Rejected immediately, never retried."""


class DimensionMismatch(ValidationError):
    """Vector length does not match the dimension registered for its model."""

    def __init__(self, model_id: str, expected: int, actual: int) -> None:
        super().__init__(
            f"model {model_id!r} expects {expected}-dim vectors, got {actual}"
        )
        self.model_id = model_id
        self.expected = expected
        self.actual = actual


class TransientError(RecoError):
    """Timeout, rate limit or other retryable failure."""


class PermanentProviderError(RecoError):
    """The provider rejected the content. Reported once, never retried."""


class ResourceExhausted(RecoError):
    """A pool or queue is full. The caller should back off and retry later."""
