"""
Error taxonomy for the coordination layer.

Only contract violations (malformed queries, use after dispose) propagate to
callers. Collaborator failures are absorbed by coordinators and surfaced as
``last_error`` strings; batch item failures are recorded, never raised.
"""

from typing import Optional


class CoordinatorError(Exception):
    """Base exception for coordinator errors."""
    def __init__(self, message: str, code: Optional[str] = None):
        self.message = message
        self.code = code
        super().__init__(message)


class CollaboratorUnavailable(CoordinatorError):
    """Raised when a data collaborator call fails (network, timeout, backend)."""
    def __init__(self, message: str, source: str, code: Optional[str] = None):
        self.source = source
        super().__init__(f"[{source}] {message}", code)


class RateLimitError(CollaboratorUnavailable):
    """Raised when the backend rate limit is hit."""
    pass


class QueryDescriptorError(CoordinatorError, ValueError):
    """Raised for malformed filter, sort or pagination parameters."""
    pass


class CoordinatorDisposedError(CoordinatorError):
    """Raised when an action is invoked on a torn-down coordinator."""
    pass
