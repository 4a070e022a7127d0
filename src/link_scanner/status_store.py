"""
In-memory scan status cache keyed by normalized URL.

The single source of truth for "have we already classified this URL".
An absent entry means `unscanned`; every other state is stored explicitly.
"""

from typing import Iterator, Optional

from .enums import ScanStatus
from .models import ScanResult, StatusEntry


class ScanStatusStore:
    """Maps normalized URLs to their current status and last result."""

    def __init__(self) -> None:
        self._entries: dict[str, StatusEntry] = {}

    def get(self, url: str) -> Optional[StatusEntry]:
        return self._entries.get(url)

    def status_of(self, url: str) -> ScanStatus:
        entry = self._entries.get(url)
        return entry.status if entry is not None else ScanStatus.UNSCANNED

    def result_of(self, url: str) -> Optional[ScanResult]:
        entry = self._entries.get(url)
        return entry.result if entry is not None else None

    def set(
        self,
        url: str,
        status: ScanStatus,
        result: Optional[ScanResult] = None,
    ) -> StatusEntry:
        """
        Store a status for a URL.

        Setting UNSCANNED removes the entry, since absence is how the store
        represents that state.
        """
        entry = StatusEntry(status=status, result=result)
        if status is ScanStatus.UNSCANNED:
            self._entries.pop(url, None)
        else:
            self._entries[url] = entry
        return entry

    def discard(self, url: str) -> bool:
        return self._entries.pop(url, None) is not None

    def is_terminal(self, url: str) -> bool:
        return self.status_of(url).is_terminal

    def urls_with_status(self, status: ScanStatus) -> list[str]:
        return [url for url, entry in self._entries.items() if entry.status is status]

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, url: object) -> bool:
        return url in self._entries

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._entries))

    def __len__(self) -> int:
        return len(self._entries)
