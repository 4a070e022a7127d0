"""
Fan-out of scan results to every live occurrence of a URL.

Couples the status store and the occurrence registry: a status change is
written to the store first and then delivered synchronously to each live
site, and a site that joins after a URL is resolved receives the cached
answer immediately.
"""

from typing import Callable, Hashable, Optional

from .enums import ScanStatus
from .event_logger import EventLogger, LogMixin
from .models import ScanResult
from .occurrences import OccurrenceRegistry
from .status_store import ScanStatusStore


# sink(site, url, status, result)
StatusSink = Callable[[Hashable, str, ScanStatus, Optional[ScanResult]], None]


class FanoutDispatcher(LogMixin):
    """Delivers status changes to registered presentation sites."""

    COMPONENT = "FanoutDispatcher"

    def __init__(
        self,
        sink: StatusSink,
        store: Optional[ScanStatusStore] = None,
        registry: Optional[OccurrenceRegistry] = None,
        logger: Optional[EventLogger] = None,
    ) -> None:
        """
        Initialize the dispatcher.

        Args:
            sink: Callback invoked once per live site for each delivery
            store: Status store to read and update
            registry: Occurrence registry holding the sites
            logger: Optional event logger
        """
        self._sink = sink
        self._store = store if store is not None else ScanStatusStore()
        self._registry = registry if registry is not None else OccurrenceRegistry(logger=logger)
        self._logger = logger

    @property
    def store(self) -> ScanStatusStore:
        return self._store

    @property
    def registry(self) -> OccurrenceRegistry:
        return self._registry

    def record_occurrence(self, url: str, site: Hashable) -> bool:
        """
        Register a site for a URL and replay a cached terminal status to it.

        Returns:
            True if a cached status was delivered to the site
        """
        self._registry.add(url, site)

        entry = self._store.get(url)
        if entry is None or not entry.status.is_terminal:
            return False

        self._deliver(site, url, entry.status, entry.result)
        return True

    def set_status(
        self,
        url: str,
        status: ScanStatus,
        result: Optional[ScanResult] = None,
    ) -> int:
        """
        Update the store, then notify every live site registered for the URL.

        Stale sites are pruned during the same pass. A failing sink call for
        one site is logged and does not stop delivery to the others.

        Returns:
            Number of sites notified
        """
        self._store.set(url, status, result)

        notified = 0
        for site in self._registry.live_sites(url):
            self._deliver(site, url, status, result)
            notified += 1

        self._log_debug(
            "Status delivered",
            {"url": url, "status": status.value, "sites": notified},
        )
        return notified

    def _deliver(
        self,
        site: Hashable,
        url: str,
        status: ScanStatus,
        result: Optional[ScanResult],
    ) -> None:
        try:
            self._sink(site, url, status, result)
        except Exception as e:
            self._log_error(
                "Status sink failed for site",
                error=e,
                data={"url": url, "status": status.value},
            )
