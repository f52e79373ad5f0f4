"""Session dependency graph data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

SCHEMA_VERSION = 1


def utc_now() -> str:
    """Current time as an ISO-8601 UTC timestamp."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class SessionRecord:
    """Lineage information for one conversation session."""

    session_id: str
    prefix_hashes: list[str] = field(default_factory=list)
    end_hash: str = ""
    parent_session: str | None = None  # Closest ancestor, if any
    children_sessions: list[str] = field(default_factory=list)
    leaf_session: str = ""
    leaf_distance: int | None = 0  # None means unknown, recompute
    message_count: int = 0
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        if not self.leaf_session:
            self.leaf_session = self.session_id

    @property
    def chain_length(self) -> int:
        return len(self.prefix_hashes)

    def is_prefix_of(self, other: SessionRecord) -> bool:
        """True if this chain is a strict, element-wise prefix of *other*'s."""
        n = len(self.prefix_hashes)
        if n == 0 or n >= len(other.prefix_hashes):
            return False
        return other.prefix_hashes[:n] == self.prefix_hashes

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "session_id": self.session_id,
            "prefix_hashes": list(self.prefix_hashes),
            "end_hash": self.end_hash,
            "children_sessions": list(self.children_sessions),
            "leaf_session": self.leaf_session,
            "leaf_distance": self.leaf_distance,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "message_count": self.message_count,
        }
        if self.parent_session is not None:
            data["parent_session"] = self.parent_session
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionRecord:
        """
        Build a record from its persisted form.

        Unknown keys are dropped. A record written without ``leaf_distance``
        gets ``None`` so the leaf resolver recomputes it.
        """
        prefix_hashes = [str(h) for h in data.get("prefix_hashes") or []]
        return cls(
            session_id=str(data["session_id"]),
            prefix_hashes=prefix_hashes,
            end_hash=data.get("end_hash") or (prefix_hashes[-1] if prefix_hashes else ""),
            parent_session=data.get("parent_session") or None,
            children_sessions=sorted(data.get("children_sessions") or []),
            leaf_session=data.get("leaf_session") or "",
            leaf_distance=data.get("leaf_distance"),
            message_count=int(data.get("message_count") or 0),
            created_at=data.get("created_at") or utc_now(),
            updated_at=data.get("updated_at") or utc_now(),
        )


@dataclass
class GraphMetadata:
    """Bookkeeping stored next to the session map."""

    schema_version: int = SCHEMA_VERSION
    created_at: str = field(default_factory=utc_now)
    last_updated: str = field(default_factory=utc_now)
    total_sessions: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema_version": self.schema_version,
            "created_at": self.created_at,
            "last_updated": self.last_updated,
            "total_sessions": self.total_sessions,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GraphMetadata:
        return cls(
            schema_version=int(data.get("schema_version", 0)),
            created_at=data.get("created_at") or utc_now(),
            last_updated=data.get("last_updated") or utc_now(),
            total_sessions=int(data.get("total_sessions", 0)),
        )


@dataclass
class GraphStore:
    """The whole persisted dependency graph."""

    sessions: dict[str, SessionRecord] = field(default_factory=dict)
    metadata: GraphMetadata = field(default_factory=GraphMetadata)
    # False when the document on disk had no metadata block
    has_metadata: bool = True

    @classmethod
    def empty(cls) -> GraphStore:
        return cls()

    def touch(self) -> None:
        """Refresh ``last_updated`` and ``total_sessions``."""
        self.metadata.last_updated = utc_now()
        self.metadata.total_sessions = len(self.sessions)

    def to_dict(self) -> dict[str, Any]:
        return {
            "sessions": {sid: record.to_dict() for sid, record in self.sessions.items()},
            "metadata": self.metadata.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GraphStore:
        """
        Parse a persisted document.

        Raises :class:`ValueError` if the document does not have the
        expected shape.
        """
        if not isinstance(data, dict):
            raise ValueError("Dependency graph document must be a JSON object")

        raw_sessions = data.get("sessions", {})
        if not isinstance(raw_sessions, dict):
            raise ValueError("'sessions' must be a JSON object")

        sessions: dict[str, SessionRecord] = {}
        for session_id, raw in raw_sessions.items():
            if not isinstance(raw, dict):
                raise ValueError(f"Session entry {session_id!r} must be a JSON object")
            raw.setdefault("session_id", session_id)
            sessions[session_id] = SessionRecord.from_dict(raw)

        raw_metadata = data.get("metadata")
        if raw_metadata is None:
            return cls(sessions=sessions, has_metadata=False)
        if not isinstance(raw_metadata, dict):
            raise ValueError("'metadata' must be a JSON object")
        return cls(sessions=sessions, metadata=GraphMetadata.from_dict(raw_metadata))


@dataclass
class GraphStats:
    """Summary numbers for the dependency forest."""

    session_count: int = 0
    tree_depth: int = 0
    leaf_count: int = 0
    root_count: int = 0
