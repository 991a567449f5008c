"""
Exception types for the practice funnel.

Only validation and remote failures are expected at runtime; both are
recovered inside the pipeline. InvariantViolation marks programming defects.
"""


class FunnelError(Exception):
    """Base class for practice funnel errors."""
    pass


class QuestionValidationError(FunnelError):
    """Raised when a candidate question fails structural validation."""

    def __init__(self, reason: str, payload: object | None = None):
        super().__init__(reason)
        self.reason = reason
        self.payload = payload


class GenerationError(FunnelError):
    """Raised when the generation service fails or returns garbage."""
    pass


class RemoteStoreError(FunnelError):
    """Raised when a remote store (seen, bank, mastery) is unreachable."""
    pass


class InvariantViolation(FunnelError):
    """Raised when an internal invariant is broken (a bug, never user-facing)."""
    pass
