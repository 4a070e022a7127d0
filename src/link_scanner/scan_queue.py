"""
FIFO of normalized URLs awaiting remote classification.

Membership is tracked in a set alongside the deque so duplicate checks
are constant time. Dedup against scan status is the orchestrator's job;
the queue only guarantees a URL is never present twice.
"""

from collections import deque
from typing import Optional


class ScanQueue:
    """First-in first-out queue with unique entries."""

    def __init__(self) -> None:
        self._order: deque[str] = deque()
        self._members: set[str] = set()

    def enqueue(self, url: str) -> bool:
        """Append a URL. Returns False if it is already queued."""
        if url in self._members:
            return False
        self._order.append(url)
        self._members.add(url)
        return True

    def push_front(self, url: str) -> bool:
        """Put a URL at the head so it is popped next. Returns False if already queued."""
        if url in self._members:
            return False
        self._order.appendleft(url)
        self._members.add(url)
        return True

    def pop(self) -> Optional[str]:
        """Remove and return the oldest URL, or None if the queue is empty."""
        if not self._order:
            return None
        url = self._order.popleft()
        self._members.discard(url)
        return url

    def peek(self) -> Optional[str]:
        return self._order[0] if self._order else None

    def remove(self, url: str) -> bool:
        if url not in self._members:
            return False
        self._order.remove(url)
        self._members.discard(url)
        return True

    def snapshot(self) -> list[str]:
        return list(self._order)

    def clear(self) -> None:
        self._order.clear()
        self._members.clear()

    def __contains__(self, url: object) -> bool:
        return url in self._members

    def __len__(self) -> int:
        return len(self._order)

    def __bool__(self) -> bool:
        return bool(self._order)
