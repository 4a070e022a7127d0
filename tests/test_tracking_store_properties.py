"""
Tests for local-first collections and graphs.

Uses MemoryStore for persistence and the fake VirusTotal API for the
intelligence endpoints. Checks capability-driven creation, idempotent
membership, unordered relationship dedup, fallback to local mirrors when a
remote write fails, and deletion semantics.
"""

import asyncio
import tempfile
from datetime import datetime, timezone
from pathlib import Path

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from link_scanner.enums import ItemType, ScanStatus
from link_scanner.exceptions import PersistenceError
from link_scanner.models import Capability, LocalPlan, LocalRef, RemotePlan, RemoteRef
from link_scanner.persistence import JsonFileStore, MemoryStore
from link_scanner.settings import COLLECTIONS_KEY, STORE_NAMESPACE
from link_scanner.tracking_store import TrackingStore
from link_scanner.virustotal_client import VirusTotalClient

from fake_virustotal import FakeVirusTotal


FIXED_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


def fixed_clock() -> datetime:
    return FIXED_TIME


def make_tracking(fake=None, store=None, api_key: str = "test-key") -> TrackingStore:
    client = None
    if fake is not None:
        client = VirusTotalClient(api_key, transport=fake.transport)
    return TrackingStore(store if store is not None else MemoryStore(), client=client, clock=fixed_clock)


url_strategy = st.builds(
    lambda host, n: f"https://{host}/{n}",
    st.sampled_from(["a.test", "b.test", "c.test"]),
    st.integers(min_value=0, max_value=10),
)


class TestCapabilityPlanning:
    """Tests for the privilege check and creation plan."""

    def test_free_account_creates_locally_without_remote_create(self) -> None:
        fake = FakeVirusTotal(privilege_level="free")
        tracking = make_tracking(fake)

        collection = asyncio.run(tracking.create_collection("Threats"))

        assert collection.is_local
        assert collection.id == "local-1704067200000"
        assert fake.calls("POST", "/intelligence") == []
        assert len(fake.calls("GET", "/users/current")) == 1

    def test_missing_privilege_level_is_free(self) -> None:
        fake = FakeVirusTotal(privilege_level=None)
        tracking = make_tracking(fake)

        capability = asyncio.run(tracking.check_remote_capability())
        assert not capability.capable
        assert capability.level == "free"

    def test_failed_privilege_query_fails_closed(self) -> None:
        fake = FakeVirusTotal(privilege_level="enterprise")
        fake.status_overrides[("GET", "/users/current")] = 500
        tracking = make_tracking(fake)

        capability = asyncio.run(tracking.check_remote_capability())
        assert not capability.capable
        assert "API permissions check failed" in capability.message

    def test_no_client_is_local_only(self) -> None:
        tracking = make_tracking()
        capability = asyncio.run(tracking.check_remote_capability())
        assert not capability.capable
        assert isinstance(TrackingStore.plan_creation(capability), LocalPlan)

    @given(level=st.sampled_from(["premium", "enterprise", "vt_enterprise"]))
    @settings(max_examples=100)
    def test_non_free_levels_plan_remote(self, level: str) -> None:
        plan = TrackingStore.plan_creation(Capability(capable=True, level=level))
        assert isinstance(plan, RemotePlan)
        assert plan.level == level

    def test_enterprise_account_creates_remotely(self) -> None:
        fake = FakeVirusTotal(privilege_level="enterprise")
        tracking = make_tracking(fake)

        async def run_test():
            collection = await tracking.create_collection("Threats", "desc")
            graph = await tracking.create_graph("Links")
            return collection, graph

        collection, graph = asyncio.run(run_test())
        assert not collection.is_local
        assert collection.id == "remote-collection-1"
        assert not graph.is_local
        assert isinstance(tracking.resolve_collection(collection.id), RemoteRef)
        assert [c.id for c in tracking.list_collections()] == [collection.id]

    def test_remote_creation_failure_falls_back_to_local(self) -> None:
        fake = FakeVirusTotal(privilege_level="enterprise")
        fake.status_overrides[("POST", "/intelligence/collections")] = 403
        tracking = make_tracking(fake)

        collection = asyncio.run(tracking.create_collection("Threats"))

        assert collection.is_local
        assert isinstance(tracking.resolve_collection(collection.id), LocalRef)


class TestCollectionMembership:
    """
    Tests that collection membership is idempotent.

    *For any* sequence of adds, a collection holds each item exactly once,
    in order of first insertion.
    """

    @given(items=st.lists(url_strategy, min_size=1, max_size=20))
    @settings(max_examples=100)
    def test_local_adds_are_idempotent(self, items: list[str]) -> None:
        tracking = make_tracking()

        async def run_test():
            collection = await tracking.create_collection("Threats")
            results = [await tracking.add_item(collection.id, item) for item in items]
            return collection, results

        collection, results = asyncio.run(run_test())

        expected = list(dict.fromkeys(items))
        assert tracking.get_collection(collection.id).items == expected
        assert sum(1 for r in results if r.added) == len(expected)
        assert all(r.stored_locally and not r.fallback for r in results)

    def test_unknown_collection_raises(self) -> None:
        tracking = make_tracking()
        with pytest.raises(PersistenceError) as exc_info:
            asyncio.run(tracking.add_item("missing", "https://a.test/"))
        assert exc_info.value.code == "collection_not_found"

    def test_remove_item(self) -> None:
        tracking = make_tracking()

        async def run_test():
            collection = await tracking.create_collection("Threats")
            await tracking.add_item(collection.id, "https://a.test/")
            return collection

        collection = asyncio.run(run_test())
        assert tracking.remove_item(collection.id, "https://a.test/").items == []
        with pytest.raises(PersistenceError) as exc_info:
            tracking.remove_item(collection.id, "https://a.test/")
        assert exc_info.value.code == "item_not_found"
        with pytest.raises(PersistenceError):
            tracking.remove_item("missing", "https://a.test/")

    def test_remote_add_records_item_locally(self) -> None:
        fake = FakeVirusTotal(privilege_level="enterprise")
        tracking = make_tracking(fake)

        async def run_test():
            collection = await tracking.create_collection("Threats")
            result = await tracking.add_item(collection.id, "https://evil.test/")
            return collection, result

        collection, result = asyncio.run(run_test())
        assert not result.stored_locally
        assert result.added
        assert fake.collection_adds == [
            (collection.id, "urls", {"data": [{"type": "url", "url": "https://evil.test/"}]})
        ]
        assert tracking.get_collection(collection.id).items == ["https://evil.test/"]

    def test_rejected_file_add_retried_as_url(self) -> None:
        fake = FakeVirusTotal(privilege_level="enterprise")
        fake.status_overrides[("POST", "/files")] = 400
        tracking = make_tracking(fake)

        async def run_test():
            collection = await tracking.create_collection("Threats")
            return await tracking.add_item(collection.id, "https://evil.test/", ItemType.FILE)

        result = asyncio.run(run_test())
        assert not result.fallback
        assert [kind for _, kind, _ in fake.collection_adds] == ["urls"]
        assert len(fake.calls("POST", "/intelligence/collections/")) == 2

    def test_remote_add_failure_uses_local_mirror(self) -> None:
        fake = FakeVirusTotal(privilege_level="enterprise")
        fake.status_overrides[("POST", "/urls")] = 500
        tracking = make_tracking(fake)

        async def run_test():
            collection = await tracking.create_collection("Threats")
            first = await tracking.add_item(collection.id, "https://evil.test/1")
            second = await tracking.add_item(collection.id, "https://evil.test/2")
            return collection, first, second

        collection, first, second = asyncio.run(run_test())

        assert first.fallback and first.stored_locally
        assert first.record_id == second.record_id
        mirror = tracking.get_collection(first.record_id)
        assert mirror.is_local
        assert mirror.mirror_of == collection.id
        assert mirror.name == "Threats (local)"
        assert mirror.items == ["https://evil.test/1", "https://evil.test/2"]
        assert tracking.get_collection(collection.id).items == []


class TestGraphRelationships:
    """
    Tests that relationships are deduplicated on the unordered pair.

    *For any* sequence of (source, target) adds, a graph holds at most one
    relationship per unordered pair.
    """

    @given(pairs=st.lists(st.tuples(url_strategy, url_strategy), min_size=1, max_size=20))
    @settings(max_examples=100)
    def test_unordered_pair_dedup(self, pairs: list[tuple[str, str]]) -> None:
        tracking = make_tracking()

        async def run_test():
            graph = await tracking.create_graph("Links")
            for source, target in pairs:
                await tracking.add_relationship(graph.id, source, target, "malicious")
            return graph

        graph = asyncio.run(run_test())
        relationships = tracking.get_graph(graph.id).relationships

        keys = [frozenset((r.source, r.target)) for r in relationships]
        assert len(keys) == len(set(keys))
        assert set(keys) == {frozenset(p) for p in pairs}
        assert all(r.timestamp == FIXED_TIME.isoformat() for r in relationships)

    def test_reverse_pair_is_duplicate(self) -> None:
        tracking = make_tracking()

        async def run_test():
            graph = await tracking.create_graph("Links")
            first = await tracking.add_relationship(graph.id, "https://a.test/", "https://b.test/", "malicious")
            second = await tracking.add_relationship(graph.id, "https://b.test/", "https://a.test/", "malicious")
            return first, second

        first, second = asyncio.run(run_test())
        assert first.added
        assert not second.added

    def test_remote_relationship_has_no_local_timestamp(self) -> None:
        fake = FakeVirusTotal(privilege_level="enterprise")
        tracking = make_tracking(fake)

        async def run_test():
            graph = await tracking.create_graph("Links")
            await tracking.add_relationship(graph.id, "https://a.test/", "https://a.test/", "malicious")
            await tracking.add_relationship(graph.id, "https://a.test/", "https://a.test/", "malicious")
            return graph

        graph = asyncio.run(run_test())
        assert len(fake.relationship_adds) == 1
        [relationship] = tracking.get_graph(graph.id).relationships
        assert relationship.timestamp is None

    def test_remote_relationship_failure_uses_local_mirror(self) -> None:
        fake = FakeVirusTotal(privilege_level="enterprise")
        fake.status_overrides[("POST", "/relationships")] = 503
        tracking = make_tracking(fake)

        async def run_test():
            graph = await tracking.create_graph("Links")
            result = await tracking.add_relationship(graph.id, "https://a.test/", "https://b.test/", "suspicious")
            return graph, result

        graph, result = asyncio.run(run_test())
        assert result.fallback
        mirror = tracking.get_graph(result.record_id)
        assert mirror.mirror_of == graph.id
        assert len(mirror.relationships) == 1

    def test_unknown_graph_raises(self) -> None:
        tracking = make_tracking()
        with pytest.raises(PersistenceError) as exc_info:
            tracking.resolve_graph("missing")
        assert exc_info.value.code == "graph_not_found"


class TestDeletion:
    """Tests for deleting records from the local index."""

    def test_delete_local_and_remote(self) -> None:
        fake = FakeVirusTotal(privilege_level="enterprise")
        tracking = make_tracking(fake)
        remote = tracking.register_remote_collection("remote-1", "Remote")
        local = tracking._create_local_collection("Local")

        remote_result = tracking.delete_collection(remote.id)
        local_result = tracking.delete_collection(local.id)

        assert remote_result.removed and remote_result.remote_persists
        assert local_result.removed and not local_result.remote_persists
        assert tracking.list_collections() == []
        assert fake.requests == []

    def test_delete_unknown_id(self) -> None:
        tracking = make_tracking()
        result = tracking.delete_graph("missing")
        assert not result.removed
        assert not result.remote_persists

    def test_register_remote_is_idempotent(self) -> None:
        tracking = make_tracking()
        tracking.register_remote_graph("g1", "Graph")
        tracking.register_remote_graph("g1", "Graph renamed")
        assert [g.name for g in tracking.list_graphs()] == ["Graph"]


class TestStoredFormat:
    """Tests for the persisted record layout."""

    def test_records_survive_a_new_store_instance(self) -> None:
        store = MemoryStore()
        tracking = make_tracking(store=store)

        async def run_test():
            collection = await tracking.create_collection("Threats")
            await tracking.add_item(collection.id, "https://evil.test/")
            return collection

        collection = asyncio.run(run_test())

        reloaded = make_tracking(store=store)
        assert reloaded.get_collection(collection.id).items == ["https://evil.test/"]
        raw = store.get(STORE_NAMESPACE, COLLECTIONS_KEY)
        assert raw[0]["isLocal"] is True
        assert raw[0]["created"] == FIXED_TIME.isoformat()

    def test_legacy_item_objects_are_read(self) -> None:
        store = MemoryStore({
            STORE_NAMESPACE: {
                COLLECTIONS_KEY: [{
                    "id": "local-1",
                    "name": "Old",
                    "description": "",
                    "items": [{"url": "https://a.test/"}, "https://b.test/", "https://a.test/"],
                }]
            }
        })
        tracking = make_tracking(store=store)
        collection = tracking.get_collection("local-1")
        assert collection.is_local
        assert collection.items == ["https://a.test/", "https://b.test/"]

    def test_ids_are_unique_under_a_frozen_clock(self) -> None:
        tracking = make_tracking()

        async def run_test():
            return [await tracking.create_collection(f"c{i}") for i in range(3)]

        ids = [c.id for c in asyncio.run(run_test())]
        assert len(set(ids)) == 3

    def test_failed_write_is_not_reported_as_stored(self) -> None:
        """An add whose state file write fails is retried as a fresh add."""
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "state.json"
            tracking = make_tracking(store=JsonFileStore(path, "secret"))
            collection = asyncio.run(tracking.create_collection("Threats"))

            # A directory in place of the state file makes the next write fail
            path.unlink()
            path.mkdir()
            with pytest.raises(PersistenceError):
                asyncio.run(tracking.add_item(collection.id, "https://evil.test/"))
            assert tracking.get_collection(collection.id).items == []

            path.rmdir()
            result = asyncio.run(tracking.add_item(collection.id, "https://evil.test/"))

            assert result.added
            reloaded = make_tracking(store=JsonFileStore(path, "secret"))
            assert reloaded.get_collection(collection.id).items == ["https://evil.test/"]


class TestThreatCounts:
    """
    Tests for per-collection threat counts.

    *For any* assignment of statuses to a collection's items, the counts
    equal the number of malicious and suspicious items.
    """

    @given(statuses=st.lists(st.sampled_from(list(ScanStatus)), max_size=12))
    @settings(max_examples=100)
    def test_counts_match_statuses(self, statuses: list[ScanStatus]) -> None:
        tracking = make_tracking()
        items = [f"https://item{i}.test/" for i in range(len(statuses))]
        verdicts = dict(zip(items, statuses))

        async def run_test():
            collection = await tracking.create_collection("Threats")
            for item in items:
                await tracking.add_item(collection.id, item)
            return tracking.get_collection(collection.id)

        collection = asyncio.run(run_test())
        counts = TrackingStore.collection_threat_counts(collection, verdicts.__getitem__)

        assert counts == {
            "malicious": statuses.count(ScanStatus.MALICIOUS),
            "suspicious": statuses.count(ScanStatus.SUSPICIOUS),
        }

    def test_unscanned_items_are_not_counted(self) -> None:
        tracking = make_tracking()
        tracking.register_remote_collection("c1", "Remote")
        collection = tracking.get_collection("c1")

        counts = tracking.collection_threat_counts(collection, lambda item: ScanStatus.UNSCANNED)
        assert counts == {"malicious": 0, "suspicious": 0}
