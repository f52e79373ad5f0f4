"""
Conversation history readers.

The resolver only needs one call from the surrounding application:
``get_conversation_details(session_id)``. :class:`ClaudeHistoryReader` is a
ready-made implementation over Claude transcript files, laid out as
``<projects_dir>/<project>/<session_id>.jsonl`` with one JSON entry per line.
"""

from __future__ import annotations

import asyncio
import glob
import json
from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from session_deps.errors import HistoryFetchError
from session_deps.logging import get_logger

logger = get_logger("history")

# Transcript entry types that carry conversation messages.
MESSAGE_ENTRY_TYPES = ("user", "assistant")


@dataclass
class ConversationDetails:
    """Full message history of one session."""

    messages: list[dict[str, Any]] = field(default_factory=list)
    summary: str = ""
    project_path: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class HistoryReader(Protocol):
    """Anything that can fetch a session's ordered message list."""

    async def get_conversation_details(self, session_id: str) -> ConversationDetails: ...


def _iter_entries(path: Path) -> Iterator[dict[str, Any]]:
    """Yield JSON objects from a JSONL file, skipping malformed lines."""
    with path.open("r", encoding="utf-8") as fh:
        for line in fh:
            stripped = line.strip()
            if not stripped:
                continue
            try:
                entry = json.loads(stripped)
            except json.JSONDecodeError:
                continue
            if isinstance(entry, dict):
                yield entry


def _is_message_entry(entry: dict[str, Any]) -> bool:
    return entry.get("type") in MESSAGE_ENTRY_TYPES and isinstance(entry.get("message"), dict)


class ClaudeHistoryReader:
    """Reads Claude JSONL transcripts from a projects directory."""

    def __init__(self, projects_dir: str | Path) -> None:
        self.projects_dir = Path(projects_dir)

    def find_session_file(self, session_id: str) -> Path | None:
        """Locate the transcript for *session_id*, or ``None``."""
        if not self.projects_dir.is_dir():
            return None
        for candidate in sorted(self.projects_dir.glob(f"*/{glob.escape(session_id)}.jsonl")):
            if candidate.is_file():
                return candidate
        return None

    async def get_conversation_details(self, session_id: str) -> ConversationDetails:
        return await asyncio.to_thread(self.load_details, session_id)

    def load_details(self, session_id: str) -> ConversationDetails:
        """
        Parse the transcript of *session_id*.

        Raises :class:`HistoryFetchError` if no transcript exists or it
        cannot be read.
        """
        path = self.find_session_file(session_id)
        if path is None:
            raise HistoryFetchError(session_id, "conversation not found")

        messages: list[dict[str, Any]] = []
        summary = ""
        project_path = ""
        model = ""
        try:
            for entry in _iter_entries(path):
                if entry.get("type") == "summary":
                    summary = entry.get("summary") or summary
                    continue
                if not _is_message_entry(entry):
                    continue
                messages.append(entry)
                project_path = project_path or entry.get("cwd") or ""
                model = entry["message"].get("model") or model
        except (OSError, UnicodeDecodeError) as exc:
            raise HistoryFetchError(session_id, str(exc)) from exc

        return ConversationDetails(
            messages=messages,
            summary=summary,
            project_path=project_path,
            metadata={"model": model, "file": str(path)},
        )

    def list_conversations(self) -> list[dict[str, Any]]:
        """
        Summarise every transcript under the projects directory.

        Returns dicts with ``session_id``, ``message_count``,
        ``project_path``, ``summary`` and ``updated_at`` (file mtime),
        most recently modified first. Unreadable files are skipped.
        """
        if not self.projects_dir.is_dir():
            return []

        conversations: list[dict[str, Any]] = []
        for path in self.projects_dir.glob("*/*.jsonl"):
            try:
                details = self.load_details(path.stem)
                updated_at = path.stat().st_mtime
            except (HistoryFetchError, OSError) as exc:
                logger.debug("Skipping transcript %s: %s", path, exc)
                continue
            conversations.append(
                {
                    "session_id": path.stem,
                    "message_count": len(details.messages),
                    "project_path": details.project_path,
                    "summary": details.summary,
                    "updated_at": updated_at,
                }
            )

        conversations.sort(key=lambda c: c["updated_at"], reverse=True)
        return conversations
