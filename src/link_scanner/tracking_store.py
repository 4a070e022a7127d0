"""
Local-first store for collections and graphs of flagged items.

Records are persisted through a `KeyValueStore` under the `collections`
and `graphs` keys. Creation goes through an explicit capability check and
plan: only accounts with an enterprise privilege level attempt the remote
intelligence API, and any remote failure lands the record in local storage
instead. Remote records are registered locally too, so the local index
holds both kinds in registration order.

Local storage problems (unknown ids, write failures) are the only errors
that propagate to callers.
"""

from datetime import datetime, timezone
from typing import Any, Callable, Optional

from .enums import ItemType, ScanStatus
from .event_logger import EventLogger, LogMixin
from .exceptions import PersistenceError, RemoteTrackingError
from .models import (
    LOCAL_ID_PREFIX,
    AddResult,
    Capability,
    Collection,
    CreationPlan,
    DeletionResult,
    Graph,
    LocalPlan,
    LocalRef,
    Relationship,
    RemotePlan,
    RemoteRef,
    TrackingRef,
)
from .persistence import KeyValueStore
from .settings import COLLECTIONS_KEY, GRAPHS_KEY, STORE_NAMESPACE
from .virustotal_client import ApiResponse, VirusTotalClient


DEFAULT_COLLECTION_DESCRIPTION = "Malicious files detected by Discord VirusTotal Scanner"
DEFAULT_GRAPH_DESCRIPTION = "Malicious file relationships from Discord VirusTotal Scanner"

FREE_LEVEL = "free"


def _dig(payload: Any, *path: str) -> Any:
    for key in path:
        if not isinstance(payload, dict):
            return None
        payload = payload.get(key)
    return payload


def capability_from_response(response: ApiResponse) -> Capability:
    """Derive the account capability from a `GET /users/current` response."""
    if not response.ok:
        message = response.error.message if response.error else "unknown error"
        return Capability(capable=False, message=f"API permissions check failed: {message}")

    level = str(_dig(response.payload, "data", "attributes", "privileges", "level") or FREE_LEVEL)
    capable = level != FREE_LEVEL
    return Capability(
        capable=capable,
        level=level,
        message=(
            "Enterprise account detected" if capable
            else "Free account detected - collections and graphs may not be available"
        ),
    )


class TrackingStore(LogMixin):
    """Collections and graphs with remote-then-local creation."""

    COMPONENT = "TrackingStore"

    def __init__(
        self,
        store: KeyValueStore,
        client: Optional[VirusTotalClient] = None,
        logger: Optional[EventLogger] = None,
        clock: Optional[Callable[[], datetime]] = None,
        namespace: str = STORE_NAMESPACE,
    ) -> None:
        """
        Initialize the tracking store.

        Args:
            store: Persistence primitive holding the records
            client: VirusTotal client for the intelligence API (None means local only)
            logger: Optional event logger
            clock: Returns the current UTC time (for ids and timestamps)
            namespace: Persistence namespace
        """
        self._store = store
        self._client = client
        self._logger = logger
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._namespace = namespace

    # ------------------------------------------------------------------
    # Persistence

    def _load_collections(self) -> list[Collection]:
        raw = self._store.get(self._namespace, COLLECTIONS_KEY) or []
        return [Collection.from_dict(item) for item in raw if isinstance(item, dict) and "id" in item]

    def _save_collections(self, collections: list[Collection]) -> None:
        self._store.set(self._namespace, COLLECTIONS_KEY, [c.to_dict() for c in collections])

    def _load_graphs(self) -> list[Graph]:
        raw = self._store.get(self._namespace, GRAPHS_KEY) or []
        return [Graph.from_dict(item) for item in raw if isinstance(item, dict) and "id" in item]

    def _save_graphs(self, graphs: list[Graph]) -> None:
        self._store.set(self._namespace, GRAPHS_KEY, [g.to_dict() for g in graphs])

    def _now_iso(self) -> str:
        return self._clock().isoformat()

    def _new_local_id(self, taken: set[str]) -> str:
        stamp = int(self._clock().timestamp() * 1000)
        while f"{LOCAL_ID_PREFIX}{stamp}" in taken:
            stamp += 1
        return f"{LOCAL_ID_PREFIX}{stamp}"

    # ------------------------------------------------------------------
    # Queries

    def list_collections(self) -> list[Collection]:
        return self._load_collections()

    def list_graphs(self) -> list[Graph]:
        return self._load_graphs()

    def get_collection(self, collection_id: str) -> Optional[Collection]:
        return next((c for c in self._load_collections() if c.id == collection_id), None)

    def get_graph(self, graph_id: str) -> Optional[Graph]:
        return next((g for g in self._load_graphs() if g.id == graph_id), None)

    def resolve_collection(self, collection_id: str) -> TrackingRef:
        """
        Resolve a collection id to a local or remote reference.

        Raises:
            PersistenceError: If no collection with that id is registered
        """
        record = self.get_collection(collection_id)
        if record is None:
            raise PersistenceError(
                code="collection_not_found",
                message=f"Collection not found: {collection_id}",
                details={"collection_id": collection_id},
            )
        return LocalRef(record.id, record) if record.is_local else RemoteRef(record.id, record)

    def resolve_graph(self, graph_id: str) -> TrackingRef:
        """
        Resolve a graph id to a local or remote reference.

        Raises:
            PersistenceError: If no graph with that id is registered
        """
        record = self.get_graph(graph_id)
        if record is None:
            raise PersistenceError(
                code="graph_not_found",
                message=f"Graph not found: {graph_id}",
                details={"graph_id": graph_id},
            )
        return LocalRef(record.id, record) if record.is_local else RemoteRef(record.id, record)

    @staticmethod
    def collection_threat_counts(
        collection: Collection,
        status_of: Callable[[str], ScanStatus],
    ) -> dict[str, int]:
        """Count malicious and suspicious items given a status lookup."""
        counts = {"malicious": 0, "suspicious": 0}
        for item in collection.items:
            status = status_of(item)
            if status is ScanStatus.MALICIOUS:
                counts["malicious"] += 1
            elif status is ScanStatus.SUSPICIOUS:
                counts["suspicious"] += 1
        return counts

    # ------------------------------------------------------------------
    # Capability and planning

    async def check_remote_capability(self) -> Capability:
        """
        Query the account privilege level.

        Fails closed: no client, no key, an error response or an
        unexpected payload all report `capable=False`.
        """
        if self._client is None or not self._client.has_api_key:
            return Capability(capable=False, message="No VirusTotal API client configured")

        response = await self._client.get_current_user()
        capability = capability_from_response(response)
        if not response.ok:
            self._log_warn("API permissions check failed", {"error": capability.message})
        return capability

    @staticmethod
    def plan_creation(capability: Capability) -> CreationPlan:
        if capability.capable:
            return RemotePlan(level=capability.level)
        return LocalPlan(reason=capability.message or "Remote tracking unavailable")

    def _require_ok(self, response: ApiResponse, action: str) -> ApiResponse:
        if not response.ok:
            error = response.error
            raise RemoteTrackingError(
                code=error.code.value if error else "remote_error",
                message=f"Failed to {action}: {error.message if error else 'unknown error'}",
                details={"http_status_code": response.http_status_code},
            )
        return response

    def _remote_record_fields(self, response: ApiResponse, name: str, description: str) -> tuple:
        record_id = _dig(response.payload, "data", "id")
        if not isinstance(record_id, str) or not record_id:
            raise RemoteTrackingError(
                code="parse_error",
                message="Creation response is missing data.id",
            )
        attributes = _dig(response.payload, "data", "attributes")
        if not isinstance(attributes, dict):
            attributes = {}
        return (
            record_id,
            attributes.get("name") or name,
            attributes.get("description") or description,
        )

    # ------------------------------------------------------------------
    # Collections

    async def create_collection(self, name: str, description: str = "") -> Collection:
        """
        Create a collection remotely when the account allows it, else locally.

        Never raises for remote problems; the returned record is always valid.
        """
        description = description or DEFAULT_COLLECTION_DESCRIPTION
        plan = self.plan_creation(await self.check_remote_capability())

        if isinstance(plan, RemotePlan):
            try:
                response = self._require_ok(
                    await self._client.create_collection(name, description),
                    "create collection",
                )
                record_id, remote_name, remote_description = self._remote_record_fields(
                    response, name, description
                )
            except RemoteTrackingError as e:
                self._log_error("Remote collection creation failed, using local storage", error=e)
            else:
                self._log_info("Created remote collection", {"id": record_id, "name": remote_name})
                return self.register_remote_collection(record_id, remote_name, remote_description)
        else:
            self._log_debug("Creating collection locally", {"reason": plan.reason})

        return self._create_local_collection(name, description)

    def _create_local_collection(
        self,
        name: str,
        description: str = "",
        mirror_of: Optional[str] = None,
    ) -> Collection:
        collections = self._load_collections()
        collection = Collection(
            id=self._new_local_id({c.id for c in collections}),
            name=name,
            description=description or DEFAULT_COLLECTION_DESCRIPTION,
            items=[],
            is_local=True,
            created=self._now_iso(),
            mirror_of=mirror_of,
        )
        collections.append(collection)
        self._save_collections(collections)
        self._log_info("Created local collection", {"id": collection.id, "name": name})
        return collection

    def register_remote_collection(self, collection_id: str, name: str, description: str = "") -> Collection:
        """Register an existing remote collection in the local index (idempotent)."""
        collections = self._load_collections()
        for existing in collections:
            if existing.id == collection_id:
                return existing

        collection = Collection(
            id=collection_id,
            name=name,
            description=description,
            items=[],
            is_local=False,
            created=self._now_iso(),
        )
        collections.append(collection)
        self._save_collections(collections)
        return collection

    def _insert_item(self, collection_id: str, item: str) -> bool:
        collections = self._load_collections()
        for collection in collections:
            if collection.id == collection_id:
                if item in collection.items:
                    return False
                collection.items.append(item)
                self._save_collections(collections)
                return True
        raise PersistenceError(
            code="collection_not_found",
            message=f"Collection not found: {collection_id}",
            details={"collection_id": collection_id},
        )

    def _mirror_collection(self, remote: Collection) -> Collection:
        for collection in self._load_collections():
            if collection.is_local and collection.mirror_of == remote.id:
                return collection
        return self._create_local_collection(
            f"{remote.name} (local)",
            remote.description,
            mirror_of=remote.id,
        )

    async def add_item(
        self,
        collection_id: str,
        item: str,
        item_type: ItemType = ItemType.URL,
    ) -> AddResult:
        """
        Add an item to a collection.

        Local collections get an idempotent insert. Remote collections get
        the remote add (a rejected file add is retried once as a URL); if
        that fails the item is kept in a local mirror collection.

        Raises:
            PersistenceError: If the collection id is unknown
        """
        ref = self.resolve_collection(collection_id)

        if isinstance(ref, LocalRef):
            added = self._insert_item(ref.id, item)
            return AddResult(record_id=ref.id, stored_locally=True, added=added)

        try:
            await self._remote_add(ref.id, item, item_type)
        except RemoteTrackingError as e:
            self._log_error(
                "Remote collection add failed, falling back to local collection",
                error=e,
                data={"collection_id": ref.id},
            )
            mirror = self._mirror_collection(ref.record)
            added = self._insert_item(mirror.id, item)
            return AddResult(record_id=mirror.id, stored_locally=True, added=added, fallback=True)

        added = self._insert_item(ref.id, item)
        return AddResult(record_id=ref.id, stored_locally=False, added=added)

    async def _remote_add(self, collection_id: str, item: str, item_type: ItemType) -> None:
        if self._client is None:
            raise RemoteTrackingError(code="not_configured", message="No VirusTotal API client configured")

        response = await self._client.add_to_collection(collection_id, item, item_type)
        if not response.ok and item_type is ItemType.FILE:
            self._log_debug("File add rejected, retrying as URL", {"collection_id": collection_id})
            response = await self._client.add_to_collection(collection_id, item, ItemType.URL)
        self._require_ok(response, f"add {item_type.value} to collection")

    def remove_item(self, collection_id: str, item: str) -> Collection:
        """
        Remove an item from the local record of a collection.

        Raises:
            PersistenceError: If the collection or the item is missing
        """
        collections = self._load_collections()
        for collection in collections:
            if collection.id != collection_id:
                continue
            if item not in collection.items:
                raise PersistenceError(
                    code="item_not_found",
                    message=f"Item not found in collection {collection_id}: {item}",
                    details={"collection_id": collection_id, "item": item},
                )
            collection.items.remove(item)
            self._save_collections(collections)
            return collection
        raise PersistenceError(
            code="collection_not_found",
            message=f"Collection not found: {collection_id}",
            details={"collection_id": collection_id},
        )

    def delete_collection(self, collection_id: str) -> DeletionResult:
        """Remove a collection from the local index. The remote object is untouched."""
        collections = self._load_collections()
        remaining = [c for c in collections if c.id != collection_id]
        if len(remaining) == len(collections):
            return DeletionResult(removed=False, remote_persists=False)

        removed = next(c for c in collections if c.id == collection_id)
        self._save_collections(remaining)
        self._log_info("Deleted collection from local storage", {"id": collection_id})
        return DeletionResult(removed=True, remote_persists=not removed.is_local)

    # ------------------------------------------------------------------
    # Graphs

    async def create_graph(self, name: str, description: str = "") -> Graph:
        """Create a graph remotely when the account allows it, else locally."""
        description = description or DEFAULT_GRAPH_DESCRIPTION
        plan = self.plan_creation(await self.check_remote_capability())

        if isinstance(plan, RemotePlan):
            try:
                response = self._require_ok(
                    await self._client.create_graph(name, description),
                    "create graph",
                )
                record_id, remote_name, remote_description = self._remote_record_fields(
                    response, name, description
                )
            except RemoteTrackingError as e:
                self._log_error("Remote graph creation failed, using local storage", error=e)
            else:
                self._log_info("Created remote graph", {"id": record_id, "name": remote_name})
                return self.register_remote_graph(record_id, remote_name, remote_description)
        else:
            self._log_debug("Creating graph locally", {"reason": plan.reason})

        return self._create_local_graph(name, description)

    def _create_local_graph(
        self,
        name: str,
        description: str = "",
        mirror_of: Optional[str] = None,
    ) -> Graph:
        graphs = self._load_graphs()
        graph = Graph(
            id=self._new_local_id({g.id for g in graphs}),
            name=name,
            description=description or DEFAULT_GRAPH_DESCRIPTION,
            relationships=[],
            is_local=True,
            created=self._now_iso(),
            mirror_of=mirror_of,
        )
        graphs.append(graph)
        self._save_graphs(graphs)
        self._log_info("Created local graph", {"id": graph.id, "name": name})
        return graph

    def register_remote_graph(self, graph_id: str, name: str, description: str = "") -> Graph:
        """Register an existing remote graph in the local index (idempotent)."""
        graphs = self._load_graphs()
        for existing in graphs:
            if existing.id == graph_id:
                return existing

        graph = Graph(
            id=graph_id,
            name=name,
            description=description,
            relationships=[],
            is_local=False,
            created=self._now_iso(),
        )
        graphs.append(graph)
        self._save_graphs(graphs)
        return graph

    def _insert_relationship(self, graph_id: str, relationship: Relationship) -> bool:
        graphs = self._load_graphs()
        for graph in graphs:
            if graph.id == graph_id:
                if graph.has_pair(relationship.source, relationship.target):
                    return False
                graph.relationships.append(relationship)
                self._save_graphs(graphs)
                return True
        raise PersistenceError(
            code="graph_not_found",
            message=f"Graph not found: {graph_id}",
            details={"graph_id": graph_id},
        )

    def _mirror_graph(self, remote: Graph) -> Graph:
        for graph in self._load_graphs():
            if graph.is_local and graph.mirror_of == remote.id:
                return graph
        return self._create_local_graph(
            f"{remote.name} (local)",
            remote.description,
            mirror_of=remote.id,
        )

    async def add_relationship(
        self,
        graph_id: str,
        source: str,
        target: str,
        relationship_type: str,
    ) -> AddResult:
        """
        Add a relationship, idempotent on the unordered (source, target) pair.

        Local graphs stamp the relationship with the current time; remote
        graphs keep their own timestamps. A failed remote add is kept in a
        local mirror graph.

        Raises:
            PersistenceError: If the graph id is unknown
        """
        ref = self.resolve_graph(graph_id)

        if isinstance(ref, LocalRef):
            added = self._insert_relationship(
                ref.id,
                Relationship(source, target, relationship_type, timestamp=self._now_iso()),
            )
            return AddResult(record_id=ref.id, stored_locally=True, added=added)

        if ref.record.has_pair(source, target):
            return AddResult(record_id=ref.id, stored_locally=False, added=False)

        try:
            if self._client is None:
                raise RemoteTrackingError(code="not_configured", message="No VirusTotal API client configured")
            self._require_ok(
                await self._client.add_relationship(ref.id, source, target, relationship_type),
                "add relationship to graph",
            )
        except RemoteTrackingError as e:
            self._log_error(
                "Remote relationship add failed, falling back to local graph",
                error=e,
                data={"graph_id": ref.id},
            )
            mirror = self._mirror_graph(ref.record)
            added = self._insert_relationship(
                mirror.id,
                Relationship(source, target, relationship_type, timestamp=self._now_iso()),
            )
            return AddResult(record_id=mirror.id, stored_locally=True, added=added, fallback=True)

        added = self._insert_relationship(ref.id, Relationship(source, target, relationship_type))
        return AddResult(record_id=ref.id, stored_locally=False, added=added)

    def delete_graph(self, graph_id: str) -> DeletionResult:
        """Remove a graph from the local index. The remote object is untouched."""
        graphs = self._load_graphs()
        remaining = [g for g in graphs if g.id != graph_id]
        if len(remaining) == len(graphs):
            return DeletionResult(removed=False, remote_persists=False)

        removed = next(g for g in graphs if g.id == graph_id)
        self._save_graphs(remaining)
        self._log_info("Deleted graph from local storage", {"id": graph_id})
        return DeletionResult(removed=True, remote_persists=not removed.is_local)
