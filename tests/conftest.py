"""Shared pytest fixtures for session-deps tests."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import pytest

from session_deps.config import SessionDepsConfig
from session_deps.errors import HistoryFetchError
from session_deps.history import ConversationDetails
from session_deps.service import SessionDepsService


def transcript(*texts: str) -> list[dict[str, Any]]:
    """Build transcript entries alternating user/assistant turns."""
    entries = []
    for i, text in enumerate(texts):
        role = "user" if i % 2 == 0 else "assistant"
        entries.append(
            {
                "uuid": f"msg-{i}",
                "type": role,
                "message": {"role": role, "content": text},
                "timestamp": "2024-01-01T00:00:00Z",
            }
        )
    return entries


class FakeHistoryReader:
    """In-memory history reader that records every fetch."""

    def __init__(self) -> None:
        self.sessions: dict[str, list[dict[str, Any]]] = {}
        self.calls: list[str] = []
        self.failing: set[str] = set()
        self.delay: float = 0.0

    def add(self, session_id: str, *texts: str) -> None:
        self.sessions[session_id] = transcript(*texts)

    async def get_conversation_details(self, session_id: str) -> ConversationDetails:
        self.calls.append(session_id)
        if self.delay:
            await asyncio.sleep(self.delay)
        if session_id in self.failing or session_id not in self.sessions:
            raise HistoryFetchError(session_id, "conversation not found")
        return ConversationDetails(messages=list(self.sessions[session_id]))


def conversations(reader: FakeHistoryReader, *session_ids: str) -> list[dict[str, Any]]:
    """Conversation summaries for *session_ids* using the reader's message counts."""
    return [
        {
            "session_id": sid,
            "message_count": len(reader.sessions.get(sid, [])),
            "summary": f"Conversation {sid}",
        }
        for sid in session_ids
    ]


@pytest.fixture
def history_reader() -> FakeHistoryReader:
    return FakeHistoryReader()


@pytest.fixture
def config(tmp_path: Path) -> SessionDepsConfig:
    """Config rooted in a temporary directory."""
    return SessionDepsConfig(
        data_dir=tmp_path / "data",
        history_dir=tmp_path / "projects",
        fetch_timeout_seconds=2.0,
        store_timeout_seconds=2.0,
    )


@pytest.fixture
def service(config: SessionDepsConfig, history_reader: FakeHistoryReader) -> SessionDepsService:
    return SessionDepsService(config, history_reader=history_reader)
