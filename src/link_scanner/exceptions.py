"""
Exception classes for the link scanner.

All exceptions inherit from LinkScannerError and provide structured
error information with codes, messages, and optional details.
"""

from typing import Optional


class LinkScannerError(Exception):
    """Base exception for all link scanner errors."""

    def __init__(
        self,
        code: str,
        message: str,
        details: Optional[dict] = None,
    ) -> None:
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"

    def to_dict(self) -> dict:
        """Convert exception to dictionary for serialization."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class ConfigurationError(LinkScannerError):
    """Raised when required configuration (such as the API key) is missing or invalid."""

    pass


class ProtocolError(LinkScannerError):
    """Raised when a remote payload is malformed or missing expected fields."""

    pass


class RemoteTrackingError(LinkScannerError):
    """Raised when a write to the remote intelligence API fails.

    Always handled inside the tracking store, which falls back to local storage.
    """

    pass


class PersistenceError(LinkScannerError):
    """Raised when local storage operations fail (file I/O, unknown local record)."""

    pass


class TamperingError(PersistenceError):
    """Raised when HMAC validation fails, indicating data tampering."""

    pass
