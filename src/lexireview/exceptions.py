"""Exceptions raised at the edges of the review engine."""
from typing import Optional


class LexiReviewError(Exception):
    """Base class for errors raised by this package."""


class ConfigError(LexiReviewError, ValueError):
    """Raised when a generator configuration is unusable."""


class TransportError(LexiReviewError):
    """Raised when the generator could not be reached or answered with an error status."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class ResponseFormatError(LexiReviewError):
    """Raised when the generator answered successfully but without usable content."""


class GenerationCancelled(LexiReviewError):
    """Raised inside the orchestrator when the caller cancels a generation call."""
