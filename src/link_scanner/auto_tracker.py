"""
Auto-tracking of threats into the first collection and graph.

When a URL is classified malicious or suspicious and the matching toggle
is on, the URL is added to the first registered collection, and a
self-relationship tagged with the status is added to the first registered
graph. Tracking is best effort: every failure is logged and swallowed.
"""

from typing import Callable, Optional

from .config import AutoTrackConfig
from .enums import ItemType, ScanStatus
from .event_logger import EventLogger, LogMixin
from .models import AddResult, TrackingOutcome
from .tracking_store import TrackingStore


class AutoTracker(LogMixin):
    """Pushes threat classifications into the tracking store."""

    COMPONENT = "AutoTracker"

    def __init__(
        self,
        tracking_store: TrackingStore,
        flags: Callable[[], AutoTrackConfig],
        logger: Optional[EventLogger] = None,
    ) -> None:
        """
        Initialize the auto-tracker.

        Args:
            tracking_store: Store receiving the items
            flags: Returns the current toggles; read on every classification
            logger: Optional event logger
        """
        self._tracking_store = tracking_store
        self._flags = flags
        self._logger = logger

    async def track(self, url: str, status: ScanStatus) -> TrackingOutcome:
        """
        Track a classified URL if it is a threat and tracking is enabled.

        Returns:
            What was written; fields are None when nothing was attempted or
            the attempt failed
        """
        if not status.is_threat:
            return TrackingOutcome()

        try:
            flags = self._flags()
        except Exception as e:
            self._log_error("Could not read auto-track settings", error=e)
            return TrackingOutcome()

        collection_result: Optional[AddResult] = None
        graph_result: Optional[AddResult] = None

        if flags.collections_enabled:
            collection_result = await self._track_collection(url)

        if flags.graphs_enabled:
            graph_result = await self._track_graph(url, status)

        return TrackingOutcome(collection=collection_result, graph=graph_result)

    async def _track_collection(self, url: str) -> Optional[AddResult]:
        try:
            collections = self._tracking_store.list_collections()
            if not collections:
                return None
            first = collections[0]
            result = await self._tracking_store.add_item(first.id, url, ItemType.URL)
            self._log_info(
                "Auto-tracked URL in collection",
                {"url": url, "collection_id": result.record_id, "added": result.added},
            )
            return result
        except Exception as e:
            self._log_error("Auto-tracking to collection failed", error=e, data={"url": url})
            return None

    async def _track_graph(self, url: str, status: ScanStatus) -> Optional[AddResult]:
        try:
            graphs = self._tracking_store.list_graphs()
            if not graphs:
                return None
            first = graphs[0]
            result = await self._tracking_store.add_relationship(first.id, url, url, status.value)
            self._log_info(
                "Auto-tracked URL in graph",
                {"url": url, "graph_id": result.record_id, "added": result.added},
            )
            return result
        except Exception as e:
            self._log_error("Auto-tracking to graph failed", error=e, data={"url": url})
            return None
