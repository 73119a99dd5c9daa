"""Custom exceptions for chatcoord."""

from typing import Optional


class ChatCoordError(Exception):
    """Base exception for chatcoord."""
    pass


class PlatformError(ChatCoordError):
    """A call to the chat platform failed."""

    def __init__(self, message: str, error_code: str = "", operation: str = ""):
        super().__init__(message)
        self.error_code = error_code
        self.operation = operation


class ThrottledError(PlatformError):
    """Platform admission limit hit (HTTP 429 / ``ratelimited``)."""

    def __init__(
        self,
        message: str,
        retry_after: Optional[float] = None,
        operation: str = ""
    ):
        super().__init__(message, error_code="ratelimited", operation=operation)
        self.retry_after = retry_after


class TransientError(PlatformError):
    """Network failure or platform 5xx / generic API error."""
    pass


class AuthorizationError(PlatformError):
    """Missing scope, revoked or invalid credential."""
    pass


class StoreError(ChatCoordError):
    """Shared store operation failed."""
    pass


class ParseError(ChatCoordError):
    """Stored JSON or state record could not be decoded."""
    pass


class ShutdownError(PlatformError):
    """A rate-limiter wait was interrupted because the process is stopping."""

    def __init__(self, message: str = "Shutting down", operation: str = ""):
        super().__init__(message, error_code="shutting_down", operation=operation)
