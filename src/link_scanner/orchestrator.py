"""
Scan Orchestrator for the link scanner.

This module provides the orchestration layer that owns all scan state for
one process. It integrates:
- URL normalization and the ignore policy
- The status store, occurrence registry and result fan-out
- The deduplicating scan queue, drained one URL per scheduler tick
- Rate limiting of remote calls
- The VirusTotal lookup/submit protocol and result classification
- Auto-tracking of threats into collections and graphs

All state lives on the instance; `start()` registers the drain task and
`stop()` clears everything and discards results of calls still in flight.
"""

import asyncio
import time
from typing import Callable, Hashable, Optional

import httpx

from .auto_tracker import AutoTracker
from .classifier import build_scan_result, classify_result
from .config import AutoTrackConfig, ScannerConfig
from .enums import LookupStatus, ScanStatus, TickOutcome
from .event_logger import EventLogger, LogMixin
from .exceptions import ConfigurationError, ProtocolError
from .fanout import FanoutDispatcher, StatusSink
from .models import ScanResult
from .occurrences import OccurrenceRegistry
from .persistence import KeyValueStore
from .rate_limiter import RateLimiter
from .scan_queue import ScanQueue
from .scheduler import Scheduler
from .settings import load_auto_track, normalize_threshold
from .status_store import ScanStatusStore
from .tracking_store import TrackingStore
from .url_normalizer import UrlNormalizer
from .virustotal_client import VirusTotalClient


DRAIN_TASK_NAME = "drain-queue"


def _discard_status(site: Hashable, url: str, status: ScanStatus, result: Optional[ScanResult]) -> None:
    pass


class ScanOrchestrator(LogMixin):
    """
    Main orchestrator for URL scans.

    Occurrences come in through `observe()`; results go out through the
    status sink, once per live site. Remote calls happen only inside
    `process_next()`, one URL per call.
    """

    COMPONENT = "ScanOrchestrator"

    def __init__(
        self,
        config: ScannerConfig,
        sink: Optional[StatusSink] = None,
        client: Optional[VirusTotalClient] = None,
        store: Optional[KeyValueStore] = None,
        tracking_store: Optional[TrackingStore] = None,
        logger: Optional[EventLogger] = None,
        normalizer: Optional[UrlNormalizer] = None,
        clock: Callable[[], float] = time.monotonic,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """
        Initialize the scan orchestrator.

        Args:
            config: Scanner configuration
            sink: Receives (site, url, status, result) for every delivery
            client: VirusTotal client (built from config.api if omitted)
            store: Persistence primitive for tracking records and toggles
            tracking_store: Collections/graphs store (built from `store` if omitted)
            logger: Optional event logger
            normalizer: URL normalizer (default ignore policy if omitted)
            clock: Monotonic clock in seconds, used for rate accounting
            transport: httpx transport for the default client
        """
        self._config = config
        self._logger = logger
        self._clock = clock
        self._store = store

        self._normalizer = normalizer or UrlNormalizer()
        self._status_store = ScanStatusStore()
        self._registry = OccurrenceRegistry(logger=logger)
        self._fanout = FanoutDispatcher(
            sink or _discard_status,
            store=self._status_store,
            registry=self._registry,
            logger=logger,
        )
        self._queue = ScanQueue()
        self._rate_limiter = RateLimiter(config.rate_limit)
        self._scheduler = Scheduler(logger=logger)

        self._client = client or VirusTotalClient.from_config(
            config.api, transport=transport, logger=logger
        )

        if tracking_store is None and store is not None:
            tracking_store = TrackingStore(store, client=self._client, logger=logger)
        self._tracking_store = tracking_store
        self._auto_tracker = (
            AutoTracker(tracking_store, flags=self._auto_track_flags, logger=logger)
            if tracking_store is not None else None
        )

        self._in_flight: set[str] = set()
        self._pending_requeue: dict[str, asyncio.TimerHandle] = {}
        # looked up as not found, submission deferred by the rate limit
        self._awaiting_submit: set[str] = set()
        self._epoch = 0
        self._started = False

    async def __aenter__(self) -> "ScanOrchestrator":
        """Async context manager entry."""
        self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.aclose()

    # ------------------------------------------------------------------
    # Lifecycle

    @property
    def active(self) -> bool:
        """Scanning happens only when enabled and an API key is configured."""
        return self._config.enabled and self._config.has_api_key

    def start(self) -> None:
        """Register the queue drain task. Missing configuration is logged, not raised."""
        if self._started:
            return
        self._started = True

        if not self._config.has_api_key:
            error = ConfigurationError(
                code="missing_api_key",
                message="No VirusTotal API key configured; scanning is disabled",
            )
            self._log_warn(error.message, error.to_dict())
        elif not self._config.enabled:
            self._log_info("Scanning is disabled")

        if self._scheduler.get_task(DRAIN_TASK_NAME) is None:
            self._scheduler.every(
                DRAIN_TASK_NAME,
                self._config.scheduler.tick_seconds,
                self.process_next,
            )

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Start and drive the scheduler until stopped."""
        self.start()
        await self._scheduler.run(stop_event)

    def stop(self) -> None:
        """
        Halt the scheduler, cancel re-queue timers and clear all scan state.

        Calls already in flight complete, but their results are discarded.
        """
        self._scheduler.stop()
        self._epoch += 1
        self._pending_requeue.clear()
        self._in_flight.clear()
        self._awaiting_submit.clear()
        self._queue.clear()
        self._status_store.clear()
        self._registry.clear()
        self._started = False
        self._log_info("Scanner stopped")

    async def aclose(self) -> None:
        self.stop()
        await self._client.close()

    # ------------------------------------------------------------------
    # Occurrence source and user actions

    def observe(self, raw_url: str, site: Hashable) -> Optional[str]:
        """
        Handle a URL becoming visible at a presentation site.

        Ignored URLs are dropped. A cached terminal status is replayed to the
        site immediately; an unseen URL is queued when auto-scan is on.

        Returns:
            The normalized URL, or None if the URL was ignored
        """
        url = self._normalizer.prepare(raw_url)
        if url is None:
            self._log_debug("Ignoring URL", {"url": raw_url})
            return None

        self._fanout.record_occurrence(url, site)

        if self._config.auto_scan and self._status_store.status_of(url) is ScanStatus.UNSCANNED:
            self.enqueue(url)
        return url

    def request_scan(self, raw_url: str, site: Optional[Hashable] = None) -> Optional[str]:
        """
        User-initiated scan. Retries URLs in the error state; terminal
        verdicts are replayed rather than rescanned.
        """
        url = self._normalizer.prepare(raw_url)
        if url is None:
            return None
        if site is not None:
            self._fanout.record_occurrence(url, site)
        self.enqueue(url)
        return url

    def request_rescan(self, raw_url: str) -> Optional[str]:
        """Forget the cached verdict for a URL and queue it again."""
        url = self._normalizer.prepare(raw_url)
        if url is None:
            return None
        if url in self._queue or url in self._in_flight or url in self._pending_requeue:
            return url
        self._status_store.discard(url)
        self.enqueue(url)
        return url

    def on_navigation(self) -> int:
        """
        Reset signal from the occurrence source.

        Drops detached sites so occurrences re-emitted for the new view
        register cleanly. Returns the number of registrations removed.
        """
        removed = self._registry.prune()
        self._log_debug("Navigation reset", {"pruned_sites": removed})
        return removed

    def enqueue(self, url: str) -> bool:
        """
        Queue a normalized URL and mark it scanning.

        No-op when scanning is inactive, when the URL is queued, in flight or
        waiting on a delayed re-queue, or when it already has a non-error
        verdict.
        """
        if not self.active:
            return False
        if url in self._queue or url in self._in_flight or url in self._pending_requeue:
            return False

        status = self._status_store.status_of(url)
        if status.is_terminal and status is not ScanStatus.ERROR:
            return False

        self._queue.enqueue(url)
        self._fanout.set_status(url, ScanStatus.SCANNING)
        self._log_debug("Queued URL", {"url": url, "queue_length": len(self._queue)})
        return True

    # ------------------------------------------------------------------
    # Queue processing

    async def process_next(self) -> TickOutcome:
        """
        Run one scheduler tick: pop at most one URL and classify it.

        Every remote call is admitted by the rate limiter first. When a lookup
        comes back not found but the window is full, the URL goes back to the
        head of the queue and the next admitted tick submits it without a
        second lookup.

        Returns:
            What the tick did
        """
        if not self.active:
            return TickOutcome.DISABLED
        if not self._queue:
            return TickOutcome.IDLE

        admission = self._rate_limiter.check(self._clock())
        if not admission.allowed:
            self._log_debug(
                "Rate limited, deferring",
                {"wait_seconds": round(admission.wait_seconds, 2), "queue_length": len(self._queue)},
            )
            return TickOutcome.RATE_LIMITED

        url = self._queue.pop()
        epoch = self._epoch
        self._in_flight.add(url)

        try:
            if url in self._awaiting_submit:
                self._awaiting_submit.discard(url)
                return await self._submit(url, epoch)
            return await self._dispatch(url, epoch)
        except Exception as e:
            self._log_error("Scan dispatch failed", error=e, data={"url": url})
            if epoch != self._epoch:
                return TickOutcome.DISCARDED
            self._fanout.set_status(url, ScanStatus.ERROR)
            return TickOutcome.FAILED
        finally:
            if epoch == self._epoch:
                self._in_flight.discard(url)

    async def _dispatch(self, url: str, epoch: int) -> TickOutcome:
        lookup = await self._client.lookup_url(url)
        self._rate_limiter.record_call(self._clock())

        if epoch != self._epoch:
            return TickOutcome.DISCARDED

        if lookup.status is LookupStatus.FOUND:
            return await self._classify(url, lookup.payload)

        if lookup.status is LookupStatus.NOT_FOUND:
            admission = self._rate_limiter.check(self._clock())
            if not admission.allowed:
                self._awaiting_submit.add(url)
                self._queue.push_front(url)
                self._log_debug(
                    "Rate limited, deferring submission",
                    {"url": url, "wait_seconds": round(admission.wait_seconds, 2)},
                )
                return TickOutcome.RATE_LIMITED
            return await self._submit(url, epoch)

        message = lookup.error.message if lookup.error else "lookup failed"
        self._log_error(
            "URL lookup failed",
            data={
                "url": url,
                "http_status_code": lookup.http_status_code,
                "error_code": lookup.error.code.value if lookup.error else None,
                "message": message,
            },
        )
        self._fanout.set_status(url, ScanStatus.ERROR)
        return TickOutcome.FAILED

    async def _classify(self, url: str, payload: object) -> TickOutcome:
        try:
            result = build_scan_result(url, payload, report_link=self._client.report_link(url))
        except ProtocolError as e:
            self._log_error("Malformed analysis payload", error=e, data={"url": url})
            self._fanout.set_status(url, ScanStatus.ERROR)
            return TickOutcome.FAILED

        status = classify_result(result, normalize_threshold(self._config.threshold))
        self._fanout.set_status(url, status, result)
        self._log_info(
            "URL classified",
            {
                "url": url,
                "status": status.value,
                "malicious": result.malicious,
                "suspicious": result.suspicious,
                "total_engines": result.total_engines,
            },
        )

        if self._auto_tracker is not None and status.is_threat:
            await self._auto_tracker.track(url, status)
        return TickOutcome.CLASSIFIED

    async def _submit(self, url: str, epoch: int) -> TickOutcome:
        self._log_info("URL not yet analyzed, submitting", {"url": url})
        response = await self._client.submit_url(url)
        self._rate_limiter.record_call(self._clock())

        if epoch != self._epoch:
            return TickOutcome.DISCARDED

        if not response.ok:
            self._log_error(
                "URL submission failed",
                data={
                    "url": url,
                    "http_status_code": response.http_status_code,
                    "message": response.error.message if response.error else None,
                },
            )
            self._fanout.set_status(url, ScanStatus.ERROR)
            return TickOutcome.FAILED

        delay = self._config.scheduler.requeue_delay_seconds
        self._pending_requeue[url] = self._scheduler.call_later(
            delay, lambda: self._requeue(url, epoch)
        )
        self._log_debug("Re-queue scheduled", {"url": url, "delay_seconds": delay})
        return TickOutcome.SUBMITTED

    def _requeue(self, url: str, epoch: int) -> None:
        if epoch != self._epoch:
            return
        self._pending_requeue.pop(url, None)
        if self.active and self._status_store.status_of(url) is ScanStatus.SCANNING:
            self._queue.enqueue(url)

    def _auto_track_flags(self) -> AutoTrackConfig:
        if self._store is not None:
            return load_auto_track(self._store, self._config.auto_track)
        return self._config.auto_track

    # ------------------------------------------------------------------
    # Accessors

    def status_of(self, raw_url: str) -> ScanStatus:
        return self._status_store.status_of(self._normalizer.normalize(raw_url))

    @property
    def pending_requeues(self) -> list[str]:
        return list(self._pending_requeue)

    @property
    def in_flight(self) -> set[str]:
        return set(self._in_flight)

    @property
    def config(self) -> ScannerConfig:
        return self._config

    @property
    def normalizer(self) -> UrlNormalizer:
        return self._normalizer

    @property
    def status_store(self) -> ScanStatusStore:
        return self._status_store

    @property
    def registry(self) -> OccurrenceRegistry:
        return self._registry

    @property
    def fanout(self) -> FanoutDispatcher:
        return self._fanout

    @property
    def queue(self) -> ScanQueue:
        return self._queue

    @property
    def rate_limiter(self) -> RateLimiter:
        return self._rate_limiter

    @property
    def scheduler(self) -> Scheduler:
        return self._scheduler

    @property
    def client(self) -> VirusTotalClient:
        return self._client

    @property
    def tracking_store(self) -> Optional[TrackingStore]:
        return self._tracking_store
