"""
Enumeration types for the link scanner.

These enums provide type-safe constants for scan states, remote lookup
outcomes, error codes, and configuration options throughout the system.
"""

from enum import Enum


class ScanStatus(Enum):
    """Classification state of a normalized URL."""

    UNSCANNED = "unscanned"
    SCANNING = "scanning"
    MALICIOUS = "malicious"
    SUSPICIOUS = "suspicious"
    CLEAN = "clean"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        """True for states that end a scan (including error)."""
        return self in (
            ScanStatus.MALICIOUS,
            ScanStatus.SUSPICIOUS,
            ScanStatus.CLEAN,
            ScanStatus.ERROR,
        )

    @property
    def is_threat(self) -> bool:
        """True for states that trigger auto-tracking."""
        return self in (ScanStatus.MALICIOUS, ScanStatus.SUSPICIOUS)


class LogLevel(Enum):
    """Logging severity levels."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class LookupStatus(Enum):
    """Outcome of a URL report lookup."""

    FOUND = "found"
    NOT_FOUND = "not_found"
    ERROR = "error"


class ApiErrorCode(Enum):
    """Error codes for VirusTotal API operations."""

    NETWORK_ERROR = "network_error"
    TIMEOUT = "timeout"
    PARSE_ERROR = "parse_error"
    RATE_LIMITED = "rate_limited"
    UNAUTHORIZED = "unauthorized"
    SERVER_ERROR = "server_error"
    UNEXPECTED_STATUS = "unexpected_status"
    NOT_CONFIGURED = "not_configured"


class ItemType(Enum):
    """Kind of identifier stored in a collection."""

    URL = "url"
    FILE = "file"


class TickOutcome(Enum):
    """What a single scheduler tick did."""

    IDLE = "idle"
    DISABLED = "disabled"
    RATE_LIMITED = "rate_limited"
    CLASSIFIED = "classified"
    SUBMITTED = "submitted"
    FAILED = "failed"
    DISCARDED = "discarded"
