"""
Property-based tests for result fan-out.

Covers the status store, the occurrence registry and the dispatcher that
couples them: every live site of a URL receives each status change exactly
once, unrelated sites receive nothing, late joiners get the cached answer,
and detached sites are dropped.
"""

from typing import Optional

from hypothesis import given, settings
from hypothesis import strategies as st

from link_scanner.enums import ScanStatus
from link_scanner.event_logger import EventLogger
from link_scanner.fanout import FanoutDispatcher
from link_scanner.models import ScanResult
from link_scanner.occurrences import OccurrenceRegistry, Site
from link_scanner.status_store import ScanStatusStore


class MockSite:
    """A presentation site that can be detached."""

    def __init__(self, name: str) -> None:
        self.name = name
        self.attached = True

    def is_attached(self) -> bool:
        return self.attached

    def __repr__(self) -> str:
        return f"MockSite({self.name!r})"


class RecordingSink:
    """Status sink that records every delivery."""

    def __init__(self, failing_sites: Optional[set] = None) -> None:
        self.deliveries: list[tuple] = []
        self.failing_sites = failing_sites or set()

    def __call__(self, site, url, status, result) -> None:
        if site in self.failing_sites:
            raise RuntimeError(f"render failed for {site}")
        self.deliveries.append((site, url, status, result))

    def for_site(self, site) -> list[tuple]:
        return [d for d in self.deliveries if d[0] is site]


def make_result(url: str, status: ScanStatus = ScanStatus.CLEAN) -> ScanResult:
    malicious = 1 if status is ScanStatus.MALICIOUS else 0
    return ScanResult(
        url=url,
        malicious=malicious,
        suspicious=0,
        harmless=70,
        total_engines=80,
        malicious_engines=("EngineA",) if malicious else (),
        last_scan=1700000000,
        report_link="https://www.virustotal.com/gui/url/x",
    )


terminal_status = st.sampled_from([
    ScanStatus.MALICIOUS, ScanStatus.SUSPICIOUS, ScanStatus.CLEAN, ScanStatus.ERROR,
])


class TestStatusStore:
    """Tests for the status cache."""

    def test_absent_entry_is_unscanned(self) -> None:
        store = ScanStatusStore()
        assert store.status_of("https://a.test/") is ScanStatus.UNSCANNED
        assert store.result_of("https://a.test/") is None
        assert "https://a.test/" not in store

    @given(status=terminal_status)
    @settings(max_examples=100)
    def test_set_and_reset(self, status: ScanStatus) -> None:
        store = ScanStatusStore()
        url = "https://a.test/"
        store.set(url, status, make_result(url, status))

        assert store.status_of(url) is status
        assert store.is_terminal(url)
        assert store.urls_with_status(status) == [url]

        store.set(url, ScanStatus.UNSCANNED)
        assert url not in store
        assert len(store) == 0


class TestOccurrenceRegistry:
    """Tests for the many-to-many URL/site association."""

    def test_registration_is_set_like(self) -> None:
        registry = OccurrenceRegistry()
        site = MockSite("s")
        assert registry.add("https://a.test/", site)
        assert not registry.add("https://a.test/", site)
        assert registry.count("https://a.test/") == 1
        assert isinstance(site, Site)

    @given(attached=st.lists(st.booleans(), min_size=1, max_size=10))
    @settings(max_examples=100)
    def test_prune_drops_detached_sites(self, attached: list[bool]) -> None:
        registry = OccurrenceRegistry()
        sites = []
        for i, flag in enumerate(attached):
            site = MockSite(str(i))
            registry.add(f"https://host{i % 3}.test/", site)
            site.attached = flag
            sites.append(site)

        removed = registry.prune()

        assert removed == attached.count(False)
        remaining = [s for url in registry.urls() for s in registry.sites_for(url)]
        assert sorted(s.name for s in remaining) == sorted(
            s.name for s in sites if s.attached
        )

    def test_plain_handles_count_as_live(self) -> None:
        registry = OccurrenceRegistry()
        registry.add("https://a.test/", "message-1")
        assert registry.live_sites("https://a.test/") == ["message-1"]


class TestFanoutCompleteness:
    """
    Tests that every live site of a URL sees each status exactly once.

    *For any* number of sites showing one URL and any terminal status, the
    sink is called once per live site and never for sites of other URLs.
    """

    @given(site_count=st.integers(min_value=1, max_value=10), status=terminal_status)
    @settings(max_examples=100)
    def test_each_site_notified_once(self, site_count: int, status: ScanStatus) -> None:
        sink = RecordingSink()
        dispatcher = FanoutDispatcher(sink)
        url = "https://shared.test/x"
        sites = [MockSite(str(i)) for i in range(site_count)]
        unrelated = MockSite("other")

        for site in sites:
            dispatcher.record_occurrence(url, site)
        dispatcher.record_occurrence("https://other.test/", unrelated)

        result = make_result(url, status)
        notified = dispatcher.set_status(url, status, result)

        assert notified == site_count
        for site in sites:
            assert sink.for_site(site) == [(site, url, status, result)]
        assert sink.for_site(unrelated) == []

    def test_three_sites_then_late_joiner(self) -> None:
        """Three sites get the clean verdict; a fourth added later gets it on registration."""
        sink = RecordingSink()
        dispatcher = FanoutDispatcher(sink)
        url = "https://evil.test/x"
        sites = [MockSite(n) for n in ("a", "b", "c")]
        for site in sites:
            dispatcher.record_occurrence(url, site)

        result = make_result(url)
        dispatcher.set_status(url, ScanStatus.CLEAN, result)

        late = MockSite("d")
        assert dispatcher.record_occurrence(url, late)
        assert sink.for_site(late) == [(late, url, ScanStatus.CLEAN, result)]
        assert len(sink.deliveries) == 4

    def test_non_terminal_status_not_replayed(self) -> None:
        sink = RecordingSink()
        dispatcher = FanoutDispatcher(sink)
        url = "https://evil.test/x"
        dispatcher.set_status(url, ScanStatus.SCANNING)

        assert not dispatcher.record_occurrence(url, MockSite("late"))
        assert sink.deliveries == []

    def test_detached_site_skipped_and_pruned(self) -> None:
        sink = RecordingSink()
        dispatcher = FanoutDispatcher(sink)
        url = "https://evil.test/x"
        gone = MockSite("gone")
        kept = MockSite("kept")
        dispatcher.record_occurrence(url, gone)
        dispatcher.record_occurrence(url, kept)
        gone.attached = False

        assert dispatcher.set_status(url, ScanStatus.MALICIOUS) == 1
        assert sink.for_site(gone) == []
        assert dispatcher.registry.sites_for(url) == [kept]

    def test_failing_sink_does_not_block_other_sites(self) -> None:
        broken = MockSite("broken")
        healthy = MockSite("healthy")
        sink = RecordingSink(failing_sites={broken})
        logger = EventLogger(output_stream=_NullStream())
        dispatcher = FanoutDispatcher(sink, logger=logger)
        url = "https://evil.test/x"
        dispatcher.record_occurrence(url, broken)
        dispatcher.record_occurrence(url, healthy)

        dispatcher.set_status(url, ScanStatus.SUSPICIOUS)

        assert len(sink.for_site(healthy)) == 1
        assert dispatcher.store.status_of(url) is ScanStatus.SUSPICIOUS
        errors = [e for e in logger.entries if e.message == "Status sink failed for site"]
        assert len(errors) == 1
        assert errors[0].data["error_type"] == "RuntimeError"

    def test_raising_liveness_check_drops_only_that_site(self) -> None:
        broken = BrokenSite()
        healthy = MockSite("healthy")
        sink = RecordingSink()
        logger = EventLogger(output_stream=_NullStream())
        dispatcher = FanoutDispatcher(sink, registry=OccurrenceRegistry(logger=logger), logger=logger)
        url = "https://evil.test/x"
        dispatcher.record_occurrence(url, broken)
        dispatcher.record_occurrence(url, healthy)

        assert dispatcher.set_status(url, ScanStatus.MALICIOUS) == 1

        assert sink.for_site(healthy) == [(healthy, url, ScanStatus.MALICIOUS, None)]
        assert sink.for_site(broken) == []
        assert dispatcher.registry.sites_for(url) == [healthy]
        warnings = [e for e in logger.entries if e.message == "Liveness check failed, dropping site"]
        assert len(warnings) == 1
        assert warnings[0].data["error_type"] == "RuntimeError"


class BrokenSite:
    """A site whose liveness check raises."""

    def is_attached(self) -> bool:
        raise RuntimeError("site handle is gone")


class _NullStream:
    def write(self, text: str) -> int:
        return len(text)

    def flush(self) -> None:
        pass
