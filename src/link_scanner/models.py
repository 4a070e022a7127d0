"""
Data models for the link scanner.

This module defines the data structures used for scan results, status
entries, collections, graphs, and the local/remote tracking variants.
"""

from dataclasses import dataclass, field
from typing import Optional, Union

from .enums import ScanStatus


LOCAL_ID_PREFIX = "local-"


@dataclass(frozen=True)
class ScanResult:
    """Immutable classification data attached to a terminal status."""

    url: str
    malicious: int
    suspicious: int
    harmless: int
    total_engines: int
    malicious_engines: tuple[str, ...] = ()
    suspicious_engines: tuple[str, ...] = ()
    last_scan: Optional[int] = None  # epoch seconds
    report_link: str = ""

    def to_dict(self) -> dict:
        return {
            "url": self.url,
            "malicious": self.malicious,
            "suspicious": self.suspicious,
            "harmless": self.harmless,
            "total_engines": self.total_engines,
            "engines": {
                "malicious": list(self.malicious_engines),
                "suspicious": list(self.suspicious_engines),
            },
            "last_scan": self.last_scan,
            "report_link": self.report_link,
        }


@dataclass(frozen=True)
class StatusEntry:
    """Current status of a normalized URL and its last result."""

    status: ScanStatus
    result: Optional[ScanResult] = None


@dataclass
class Relationship:
    """An edge in a graph; `timestamp` is only set for local graphs."""

    source: str
    target: str
    type: str
    timestamp: Optional[str] = None

    def same_pair(self, source: str, target: str) -> bool:
        """Compare endpoints as an unordered pair."""
        return {self.source, self.target} == {source, target}

    def to_dict(self) -> dict:
        data = {"source": self.source, "target": self.target, "type": self.type}
        if self.timestamp is not None:
            data["timestamp"] = self.timestamp
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Relationship":
        return cls(
            source=data["source"],
            target=data["target"],
            type=data.get("type", ""),
            # Older records used "date"
            timestamp=data.get("timestamp", data.get("date")),
        )


@dataclass
class Collection:
    """A named, ordered, duplicate-free set of item identifiers."""

    id: str
    name: str
    description: str
    items: list[str] = field(default_factory=list)
    is_local: bool = True
    created: Optional[str] = None
    mirror_of: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "items": list(self.items),
            "isLocal": self.is_local,
            "created": self.created,
            "mirrorOf": self.mirror_of,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Collection":
        items = []
        for item in data.get("items") or []:
            # Some stored items are objects with a url field
            if isinstance(item, dict):
                item = item.get("url")
            if isinstance(item, str) and item not in items:
                items.append(item)
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            description=data.get("description", ""),
            items=items,
            is_local=bool(data.get("isLocal", str(data["id"]).startswith(LOCAL_ID_PREFIX))),
            created=data.get("created"),
            mirror_of=data.get("mirrorOf"),
        )


@dataclass
class Graph:
    """A named set of relationships between tracked items."""

    id: str
    name: str
    description: str
    relationships: list[Relationship] = field(default_factory=list)
    is_local: bool = True
    created: Optional[str] = None
    mirror_of: Optional[str] = None

    def has_pair(self, source: str, target: str) -> bool:
        return any(rel.same_pair(source, target) for rel in self.relationships)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "relationships": [rel.to_dict() for rel in self.relationships],
            "isLocal": self.is_local,
            "created": self.created,
            "mirrorOf": self.mirror_of,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Graph":
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            description=data.get("description", ""),
            relationships=[
                Relationship.from_dict(rel)
                for rel in data.get("relationships") or []
                if isinstance(rel, dict)
            ],
            is_local=bool(data.get("isLocal", str(data["id"]).startswith(LOCAL_ID_PREFIX))),
            created=data.get("created"),
            mirror_of=data.get("mirrorOf"),
        )


TrackingRecord = Union[Collection, Graph]


@dataclass(frozen=True)
class LocalRef:
    """A collection or graph that lives only in local storage."""

    id: str
    record: TrackingRecord


@dataclass(frozen=True)
class RemoteRef:
    """A collection or graph owned by the remote intelligence API."""

    id: str
    record: TrackingRecord


TrackingRef = Union[LocalRef, RemoteRef]


@dataclass(frozen=True)
class Capability:
    """Result of the account privilege check."""

    capable: bool
    level: str = "free"
    message: str = ""


@dataclass(frozen=True)
class LocalPlan:
    """Create the record in local storage only."""

    reason: str


@dataclass(frozen=True)
class RemotePlan:
    """Try the remote API first; fall back to local on any failure."""

    level: str


CreationPlan = Union[LocalPlan, RemotePlan]


@dataclass(frozen=True)
class AddResult:
    """Where an add operation landed."""

    record_id: str
    stored_locally: bool
    added: bool
    fallback: bool = False


@dataclass(frozen=True)
class DeletionResult:
    """Outcome of removing a collection or graph from the local index."""

    removed: bool
    remote_persists: bool


@dataclass(frozen=True)
class TrackingOutcome:
    """What auto-tracking wrote for one classification."""

    collection: Optional[AddResult] = None
    graph: Optional[AddResult] = None
