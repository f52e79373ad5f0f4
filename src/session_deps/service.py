"""
SessionDepsService - enriches conversation lists with session lineage.

Given conversation summaries (``session_id`` + ``message_count``), the
service keeps a persisted graph of which sessions continue which, and
returns every conversation with its nearest ``leaf_session`` and the
content ``hash`` of its last message.

Work is incremental: only sessions whose message count changed are
re-read and re-hashed, and only the part of the graph they touch is
re-linked. Nothing here raises to the caller of :meth:`enhance`; failures
degrade to ``leaf_session = session_id`` and ``hash = ""``.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from typing import Any

from session_deps.config import SessionDepsConfig
from session_deps.errors import HistoryFetchError, MalformedMessageError, SessionDepsError
from session_deps.hashing import compute_chain, end_hash
from session_deps.history import ClaudeHistoryReader, HistoryReader
from session_deps.leaves import resolve_leaves
from session_deps.logging import get_logger
from session_deps.models import (
    SCHEMA_VERSION,
    GraphMetadata,
    GraphStats,
    GraphStore,
    SessionRecord,
    utc_now,
)
from session_deps.relationships import rebuild_relationships, resolve_relationships
from session_deps.store import JsonFileStore, create_graph_store

logger = get_logger("service")


def conversation_session_id(conversation: Mapping[str, Any]) -> str:
    """Session id of a conversation summary (``session_id`` or ``sessionId``)."""
    return str(conversation.get("session_id") or conversation.get("sessionId") or "")


def conversation_message_count(conversation: Mapping[str, Any]) -> int:
    """Message count of a conversation summary (``message_count`` or ``messageCount``)."""
    count = conversation.get("message_count")
    if count is None:
        count = conversation.get("messageCount", 0)
    return int(count or 0)


def _with_defaults(conversation: Mapping[str, Any]) -> dict[str, Any]:
    return {
        **conversation,
        "leaf_session": conversation_session_id(conversation),
        "hash": "",
    }


def _message_payload(entry: Any) -> Any:
    """Unwrap a transcript entry (``{"type", "message": {...}}``) to its message."""
    if isinstance(entry, Mapping) and isinstance(entry.get("message"), Mapping):
        return entry["message"]
    return entry


def _messages_of(details: Any) -> list[Any]:
    if isinstance(details, Mapping):
        return list(details.get("messages") or [])
    return list(getattr(details, "messages", None) or [])


class SessionDepsService:
    """
    Tracks continuation relationships between conversation sessions.

    Construct one instance at startup and pass it to whoever needs it.

    Example:
        service = SessionDepsService(SessionDepsConfig())
        await service.initialize()
        enriched = await service.enhance(conversations)
    """

    def __init__(
        self,
        config: SessionDepsConfig | None = None,
        store: JsonFileStore[GraphStore] | None = None,
        history_reader: HistoryReader | None = None,
    ) -> None:
        self.config = config or SessionDepsConfig()
        self.store = store or create_graph_store(
            self.config.db_path, timeout=self.config.store_timeout_seconds
        )
        self.history_reader = history_reader or ClaudeHistoryReader(self.config.history_dir)
        self._initialized = False

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """
        Prepare the dependency database.

        Creates the data directory, reads the existing graph (or starts an
        empty one) and brings its metadata up to date. Calling it again is
        a no-op. Raises :class:`SessionDepsError` if the database cannot be
        prepared.
        """
        if self._initialized:
            return

        logger.info("Initializing session dependencies database at %s", self.store.path)
        try:
            self.store.path.parent.mkdir(parents=True, exist_ok=True)
            graph = await self.store.update(self._ensure_metadata)
        except (SessionDepsError, OSError) as exc:
            logger.error("Failed to initialize session dependencies database: %s", exc)
            raise SessionDepsError(
                f"Session dependencies database initialization failed: {exc}"
            ) from exc

        self._initialized = True
        logger.info(
            "Session dependencies database ready (%d sessions, schema v%d)",
            len(graph.sessions),
            graph.metadata.schema_version,
        )

    @staticmethod
    def _ensure_metadata(graph: GraphStore) -> GraphStore:
        if not graph.has_metadata:
            graph.metadata = GraphMetadata()
            graph.has_metadata = True
            logger.info("Created missing metadata")

        if graph.metadata.schema_version < SCHEMA_VERSION:
            graph.metadata.schema_version = SCHEMA_VERSION
            logger.info("Migrated database to schema version %d", SCHEMA_VERSION)

        graph.touch()
        return graph

    # ------------------------------------------------------------------
    # Enhancement
    # ------------------------------------------------------------------

    async def enhance(self, conversations: list[Mapping[str, Any]]) -> list[dict[str, Any]]:
        """
        Return *conversations* with ``leaf_session`` and ``hash`` added.

        All caller fields are preserved. Sessions whose history could not be
        fetched or hashed get ``leaf_session = session_id`` and
        ``hash = ""``; if the graph itself cannot be read or written every
        conversation gets those defaults.
        """
        logger.debug("Enhancing %d conversations with dependency information", len(conversations))

        if not self._initialized:
            logger.debug("Service not initialized, returning conversations with defaults")
            return [_with_defaults(conv) for conv in conversations]

        try:
            graph, failed = await self._update_incremental(conversations)
        except Exception as exc:
            logger.error("Failed to enhance conversations: %s", exc, exc_info=True)
            return [_with_defaults(conv) for conv in conversations]

        enhanced: list[dict[str, Any]] = []
        for conv in conversations:
            session_id = conversation_session_id(conv)
            record = graph.sessions.get(session_id)
            if record is None or session_id in failed:
                enhanced.append(_with_defaults(conv))
            else:
                enhanced.append(
                    {**conv, "leaf_session": record.leaf_session, "hash": record.end_hash}
                )
        return enhanced

    async def _update_incremental(
        self, conversations: list[Mapping[str, Any]]
    ) -> tuple[GraphStore, set[str]]:
        """
        Bring the graph up to date with *conversations*.

        Returns the resulting graph and the ids whose history could not be
        used this time.
        """
        current = await self.store.read()

        counts: dict[str, int] = {}
        for conv in conversations:
            session_id = conversation_session_id(conv)
            if not session_id:
                continue
            count = conversation_message_count(conv)
            existing = current.sessions.get(session_id)
            if existing is None or existing.message_count != count:
                counts[session_id] = count

        if not counts:
            return current, set()

        logger.debug("Refreshing %d changed sessions", len(counts))
        chains, failed = await self._fetch_chains(list(counts))
        if not chains:
            return current, failed

        graph = await self.store.update(lambda data: self._apply_chains(data, chains, counts))
        return graph, failed

    async def _fetch_chains(self, session_ids: list[str]) -> tuple[dict[str, list[str]], set[str]]:
        semaphore = asyncio.Semaphore(max(1, self.config.max_concurrent_fetches))
        results = await asyncio.gather(
            *(self._fetch_chain(session_id, semaphore) for session_id in session_ids),
            return_exceptions=True,
        )

        chains: dict[str, list[str]] = {}
        failed: set[str] = set()
        for session_id, result in zip(session_ids, results):
            if isinstance(result, MalformedMessageError):
                logger.error(
                    "Cannot hash session %s: %s", session_id, result, exc_info=result
                )
                failed.add(session_id)
            elif isinstance(result, HistoryFetchError):
                logger.error("Failed to get session messages for %s: %s", session_id, result)
                failed.add(session_id)
            elif isinstance(result, BaseException):
                raise result
            else:
                chains[session_id] = result
        return chains, failed

    async def _fetch_chain(self, session_id: str, semaphore: asyncio.Semaphore) -> list[str]:
        async with semaphore:
            try:
                details = await asyncio.wait_for(
                    self.history_reader.get_conversation_details(session_id),
                    self.config.fetch_timeout_seconds,
                )
            except asyncio.TimeoutError as exc:
                raise HistoryFetchError(session_id, "timed out") from exc
            except HistoryFetchError:
                raise
            except Exception as exc:
                raise HistoryFetchError(session_id, str(exc)) from exc

        try:
            return compute_chain(_message_payload(m) for m in _messages_of(details))
        except MalformedMessageError as exc:
            exc.session_id = session_id
            raise

    @staticmethod
    def _apply_chains(
        graph: GraphStore,
        chains: dict[str, list[str]],
        counts: dict[str, int],
    ) -> GraphStore:
        """Store new chains, then re-link and re-leaf the touched subgraph."""
        now = utc_now()
        for session_id, chain in chains.items():
            record = graph.sessions.get(session_id)
            if record is None:
                record = SessionRecord(session_id=session_id, created_at=now)
                graph.sessions[session_id] = record
            record.prefix_hashes = chain
            record.end_hash = end_hash(chain)
            record.message_count = counts[session_id]
            record.updated_at = now

        changed = resolve_relationships(graph.sessions, chains)
        resolve_leaves(graph.sessions, changed)
        graph.touch()
        return graph

    # ------------------------------------------------------------------
    # Queries and maintenance
    # ------------------------------------------------------------------

    async def get_session_deps_info(self, session_id: str) -> SessionRecord | None:
        """Stored record for *session_id*, or ``None`` (also on read failure)."""
        try:
            graph = await self.store.read()
        except SessionDepsError as exc:
            logger.error("Failed to get session deps info for %s: %s", session_id, exc)
            return None
        return graph.sessions.get(session_id)

    async def get_stats(self) -> GraphStats:
        """Counts and depth of the dependency forest (zeros on read failure)."""
        try:
            graph = await self.store.read()
        except SessionDepsError as exc:
            logger.error("Failed to get stats: %s", exc)
            return GraphStats()

        sessions = graph.sessions
        depth: dict[str, int] = {}
        for session_id in sorted(sessions, key=lambda sid: sessions[sid].chain_length):
            parent_id = sessions[session_id].parent_session
            depth[session_id] = depth.get(parent_id, -1) + 1 if parent_id in sessions else 0

        return GraphStats(
            session_count=len(sessions),
            tree_depth=max(depth.values(), default=0),
            leaf_count=sum(1 for r in sessions.values() if not r.children_sessions),
            root_count=sum(1 for r in sessions.values() if r.parent_session is None),
        )

    async def rebuild(self) -> GraphStats:
        """Recompute every edge and leaf from the stored chains."""

        def _rebuild(graph: GraphStore) -> GraphStore:
            rebuild_relationships(graph.sessions)
            for record in graph.sessions.values():
                record.leaf_distance = None
            resolve_leaves(graph.sessions, list(graph.sessions))
            graph.touch()
            return graph

        graph = await self.store.update(_rebuild)
        logger.info("Rebuilt dependency graph for %d sessions", len(graph.sessions))
        return await self.get_stats()
