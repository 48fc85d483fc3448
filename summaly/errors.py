"""
Errors raised by the retrieval pipeline.
Every failure is raised at the point of detection and propagates to the caller.
"""
from typing import Optional


class SummalyError(Exception):
    """Base class for all retrieval errors."""


class InvalidURLError(SummalyError):
    def __init__(self, url: str, reason: str):
        self.url = url
        self.reason = reason
        super().__init__(f"Invalid URL {url!r}: {reason}")


class StatusError(SummalyError):
    """Raised for any non-2xx response."""

    def __init__(self, status_code: int, reason: str = ''):
        self.status_code = status_code
        self.reason = reason
        super().__init__(f"{status_code} {reason}".strip())


class TypeRejectedError(SummalyError):
    def __init__(self, content_type: Optional[str]):
        self.content_type = content_type
        super().__init__(f"Rejected by type filter {content_type}")


class SizeExceededError(SummalyError):
    """Raised when the declared or transferred body size exceeds the limit."""

    def __init__(self, limit: int, size: int, declared: bool = False):
        self.limit = limit
        self.size = size
        self.declared = declared
        where = 'declared' if declared else 'transferred'
        super().__init__(f"maxSize exceeded ({size} > {limit}) on response ({where})")


class MissingContentLengthError(SummalyError):
    def __init__(self):
        super().__init__("content-length required")


class FetchTimeoutError(SummalyError, TimeoutError):
    """Raised when the response or the operation deadline expires."""

    def __init__(self, phase: str, timeout: float):
        self.phase = phase
        self.timeout = timeout
        super().__init__(f"{phase} timeout after {timeout}s")


class TransportError(SummalyError):
    """Network-level failure reported by the HTTP client."""

    def __init__(self, url: str, cause: Exception):
        self.url = url
        self.cause = cause
        super().__init__(f"Connection error for {url}: {cause}")
