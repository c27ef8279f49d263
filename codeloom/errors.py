from __future__ import annotations


class CodeloomError(Exception):
    """Base class for every failure this package raises on purpose."""


class ValidationError(CodeloomError, ValueError):
    """Malformed course/curriculum data (import JSON, unknown language)."""


class ConfigurationError(CodeloomError):
    """A server-side setting (usually an API key) is missing."""


class RuntimeUnavailable(CodeloomError):
    """An execution runtime is not loaded (yet, or at all)."""


class ExecutionFault(CodeloomError):
    """User code faulted or could not be run to completion."""


class UpstreamError(CodeloomError):
    """The AI service failed or answered with something unusable."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class UpstreamQuotaExceeded(UpstreamError):
    """Rate limit / quota exhaustion on the AI service."""
