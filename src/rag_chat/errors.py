"""Exception types shared across the chat engine."""

from __future__ import annotations


class AdmissionError(Exception):
    """A request rejected before any stream starts; rendered as an HTTP error."""

    status_code = 400
    code = "BAD_REQUEST"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class InvalidChatRequest(AdmissionError):
    status_code = 400
    code = "INVALID_REQUEST"


class DomainBlocked(AdmissionError):
    status_code = 403
    code = "DOMAIN_BLOCKED"

    def __init__(self, message: str = "Domain not allowed") -> None:
        super().__init__(message)


class RateLimited(AdmissionError):
    status_code = 429
    code = "RATE_LIMITED"

    def __init__(self, window_seconds: int) -> None:
        super().__init__(f"Rate limit exceeded. Try again in {window_seconds} seconds.")
        self.window_seconds = window_seconds


class EmbeddingError(RuntimeError):
    """The cloud embedding API returned a non-success response."""


class UpstreamError(RuntimeError):
    """A provider stream terminated with an error event."""
