"""
Exception hierarchy for Study Buddy.
"""

from typing import Optional


class StudyBuddyError(Exception):
    """Base exception for all Study Buddy errors."""
    pass


class InvalidInputError(StudyBuddyError):
    """Raised when a request is missing fields or carries malformed values."""
    pass


class InvalidFeedbackError(InvalidInputError):
    """Raised when a feedback submission lacks the payload its source requires."""
    pass


class UnauthorizedError(StudyBuddyError):
    """Raised when the caller identity is missing or does not own the resource."""
    pass


class UpstreamUnavailableError(StudyBuddyError):
    """Raised when an LLM provider or the datastore is unreachable or timed out."""

    def __init__(self, message: str, retry_after: Optional[int] = None):
        super().__init__(message)
        self.retry_after = retry_after


class StorageError(UpstreamUnavailableError):
    """Raised when a relational store operation fails."""
    pass


class LLMError(UpstreamUnavailableError):
    """Raised when every configured LLM provider fails."""
    pass


class ValidationTimeoutError(StudyBuddyError):
    """Raised when response validation exceeds its time budget."""
    pass


class StageHealthCriticalError(StudyBuddyError):
    """Raised when overall stage health is critical."""
    pass


class SessionError(StudyBuddyError):
    """Raised when a monitored session operation fails."""
    pass


class SafetyError(StudyBuddyError):
    """Base exception for privacy and compliance errors."""
    pass


class ConsentRequiredError(SafetyError):
    """Raised when user consent is required but not granted."""
    pass
