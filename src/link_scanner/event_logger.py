"""
Event Logger module for the link scanner.

Every component reports through one EventLogger. Entries are kept in memory
and written to a stream as JSON lines, text lines, or both. API keys and
other secrets are replaced before an entry is stored or written.
"""

import json
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, TextIO

from link_scanner.enums import LogLevel


_LEVEL_ORDER = {
    LogLevel.DEBUG: 0,
    LogLevel.INFO: 1,
    LogLevel.WARN: 2,
    LogLevel.ERROR: 3,
}

_FORMATS = ("json", "text", "both")


@dataclass
class LogEntry:
    timestamp: str
    level: LogLevel
    component: str
    message: str
    data: dict = field(default_factory=dict)


class EventLogger:
    """
    Structured logger shared by all scanner components.

    Entries below `min_level` are dropped. A key is treated as secret when
    its lowercased name contains any of SENSITIVE_KEYS, so `X-Apikey` and
    `access_token` are both masked.
    """

    SENSITIVE_KEYS = frozenset({
        'api_key', 'apikey', 'x-apikey', 'token', 'secret', 'password',
        'auth', 'credential', 'private_key',
    })

    MASK_VALUE = "***MASKED***"

    def __init__(
        self,
        output_format: str = "text",
        output_stream: Optional[TextIO] = None,
        min_level: LogLevel = LogLevel.INFO,
    ):
        if output_format not in _FORMATS:
            raise ValueError(f"Unsupported log format {output_format!r}, expected one of {_FORMATS}")

        self._format = output_format
        self._stream = output_stream if output_stream is not None else sys.stderr
        self._min_level = min_level
        self._history: list[LogEntry] = []

    @classmethod
    def from_config(
        cls,
        output_format: str = "text",
        level: str = "info",
        debug: bool = False,
        output_stream: Optional[TextIO] = None,
    ) -> "EventLogger":
        """Build a logger from logging settings; the debug flag forces DEBUG."""
        if debug:
            min_level = LogLevel.DEBUG
        else:
            try:
                min_level = LogLevel(level.lower())
            except ValueError:
                min_level = LogLevel.INFO
        return cls(output_format=output_format, output_stream=output_stream, min_level=min_level)

    @property
    def output_format(self) -> str:
        return self._format

    @property
    def min_level(self) -> LogLevel:
        return self._min_level

    @property
    def entries(self) -> list[LogEntry]:
        return list(self._history)

    def is_enabled_for(self, level: LogLevel) -> bool:
        return _LEVEL_ORDER[level] >= _LEVEL_ORDER[self._min_level]

    def log(
        self,
        level: LogLevel,
        component: str,
        message: str,
        data: Optional[dict] = None,
    ) -> Optional[LogEntry]:
        """
        Record and write one entry.

        Returns:
            The stored LogEntry, or None when `level` is below the minimum
        """
        if not self.is_enabled_for(level):
            return None

        entry = LogEntry(
            timestamp=datetime.now(timezone.utc).isoformat(),
            level=level,
            component=component,
            message=message,
            data=self.mask_sensitive_data(data or {}),
        )
        self._history.append(entry)
        self._write(entry)
        return entry

    def log_error(
        self,
        component: str,
        message: str,
        error: Optional[BaseException] = None,
        url: Optional[str] = None,
        http_status_code: Optional[int] = None,
        additional_data: Optional[dict] = None,
    ) -> Optional[LogEntry]:
        """
        Log at ERROR level with the failure context merged into the data.

        Exceptions contribute their type name and message, plus `code` when
        they carry one (all LinkScannerError subclasses do).
        """
        context = dict(additional_data or {})
        if error is not None:
            context.update(error_type=type(error).__name__, error_message=str(error))
            code = getattr(error, "code", None)
            if code is not None:
                context["error_code"] = code
        if url is not None:
            context["url"] = url
        if http_status_code is not None:
            context["http_status_code"] = http_status_code
        return self.log(LogLevel.ERROR, component, message, context)

    def mask_sensitive_data(self, data: dict) -> dict:
        """Return a copy of `data` with secret values replaced at any depth."""
        if not isinstance(data, dict):
            return data
        return self._mask(data)

    def _is_sensitive(self, key: Any) -> bool:
        name = str(key).lower()
        return any(marker in name for marker in self.SENSITIVE_KEYS)

    def _mask(self, value: Any) -> Any:
        if isinstance(value, dict):
            return {
                key: self.MASK_VALUE if self._is_sensitive(key) else self._mask(item)
                for key, item in value.items()
            }
        if isinstance(value, (list, tuple)):
            return [self._mask(item) for item in value]
        return value

    def _write(self, entry: LogEntry) -> None:
        lines = []
        if self._format != "text":
            lines.append(self.format_json(entry))
        if self._format != "json":
            lines.append(self.format_text(entry))
        for line in lines:
            print(line, file=self._stream)
        self._stream.flush()

    def format_json(self, entry: LogEntry) -> str:
        """Format a log entry as a single JSON line."""
        return json.dumps(
            {
                "timestamp": entry.timestamp,
                "level": entry.level.value,
                "component": entry.component,
                "message": entry.message,
                "data": entry.data,
            },
            ensure_ascii=False,
            default=str,
        )

    def format_text(self, entry: LogEntry) -> str:
        """Format a log entry as `[TIMESTAMP] LEVEL [COMPONENT] MESSAGE {data}`."""
        line = f"[{entry.timestamp}] {entry.level.value.upper()} [{entry.component}] {entry.message}"
        if entry.data:
            line += " " + json.dumps(entry.data, ensure_ascii=False, default=str)
        return line

    def clear_entries(self) -> None:
        self._history.clear()

class LogMixin:
    """Helpers for components holding an optional `_logger` and a component name."""

    _logger: Optional[EventLogger] = None
    COMPONENT = "LinkScanner"

    def _log_debug(self, message: str, data: Optional[dict] = None) -> None:
        if self._logger:
            self._logger.log(LogLevel.DEBUG, self.COMPONENT, message, data)

    def _log_info(self, message: str, data: Optional[dict] = None) -> None:
        if self._logger:
            self._logger.log(LogLevel.INFO, self.COMPONENT, message, data)

    def _log_warn(self, message: str, data: Optional[dict] = None) -> None:
        if self._logger:
            self._logger.log(LogLevel.WARN, self.COMPONENT, message, data)

    def _log_error(
        self,
        message: str,
        error: Optional[BaseException] = None,
        data: Optional[dict] = None,
    ) -> None:
        if self._logger:
            self._logger.log_error(self.COMPONENT, message, error=error, additional_data=data)
