"""
Session Deps - lineage tracking for resumable conversation sessions.

When a conversation is resumed under a new session id, the new session
starts with an exact copy of the old one's messages. This package detects
those continuations through prefix hash chains, links every session to its
closest ancestor, and reports the most advanced (leaf) continuation of each
session so a UI can show a forest of sessions as single threads.

Example:
    from session_deps import SessionDepsConfig, SessionDepsService

    service = SessionDepsService(SessionDepsConfig())
    await service.initialize()

    enriched = await service.enhance(
        [{"session_id": "a1", "message_count": 4}, {"session_id": "b2", "message_count": 6}]
    )
    # [{"session_id": "a1", ..., "leaf_session": "b2", "hash": "..."}, ...]
"""

from session_deps.config import SessionDepsConfig, load_config
from session_deps.errors import (
    HistoryFetchError,
    MalformedMessageError,
    SessionDepsError,
    StoreReadError,
    StoreWriteError,
)
from session_deps.hashing import compute_chain, extract_message_for_hashing, serialize_message
from session_deps.history import ClaudeHistoryReader, ConversationDetails, HistoryReader
from session_deps.leaves import resolve_leaves
from session_deps.models import GraphMetadata, GraphStats, GraphStore, SessionRecord
from session_deps.relationships import find_parent, rebuild_relationships, resolve_relationships
from session_deps.service import SessionDepsService
from session_deps.store import JsonFileStore, create_graph_store

__version__ = "0.1.0"

__all__ = [
    # Service
    "SessionDepsService",
    # Config
    "SessionDepsConfig",
    "load_config",
    # Errors
    "HistoryFetchError",
    "MalformedMessageError",
    "SessionDepsError",
    "StoreReadError",
    "StoreWriteError",
    # Hashing
    "compute_chain",
    "extract_message_for_hashing",
    "serialize_message",
    # Graph
    "find_parent",
    "rebuild_relationships",
    "resolve_leaves",
    "resolve_relationships",
    # Models
    "GraphMetadata",
    "GraphStats",
    "GraphStore",
    "SessionRecord",
    # Collaborators
    "ClaudeHistoryReader",
    "ConversationDetails",
    "HistoryReader",
    "JsonFileStore",
    "create_graph_store",
]
