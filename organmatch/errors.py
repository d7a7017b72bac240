"""
Error taxonomy for the matching engine.

InvalidInput and IllegalTransition are caller errors and are never retried.
DuplicateMatch is expected during matching and is skipped locally.
PersistenceFailure wraps storage errors raised by the registry.
"""

from typing import List, Optional


class MatchingError(Exception):
    """Base class for all matching engine errors."""
    pass


class InvalidInput(MatchingError):
    """Raised when a donor or recipient snapshot is missing or malformed."""

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = errors or []


class IllegalTransition(MatchingError):
    """Raised when a match status change is not allowed from its current status."""

    def __init__(self, current: str, requested: str, reason: Optional[str] = None):
        message = f"Cannot move match from '{current}' to '{requested}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.current = current
        self.requested = requested
        self.reason = reason


class NotFound(MatchingError):
    """Raised when a match, donor or recipient does not exist."""
    pass


class DuplicateMatch(MatchingError):
    """Raised when a (donor, recipient) pair already has a match."""

    def __init__(self, donor_id: int, recipient_id: int):
        super().__init__(f"Match already exists for donor {donor_id} and recipient {recipient_id}")
        self.donor_id = donor_id
        self.recipient_id = recipient_id


class PersistenceFailure(MatchingError):
    """Raised when the storage layer fails."""
    pass
