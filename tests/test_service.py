"""Tests for SessionDepsService."""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import time
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from conftest import FakeHistoryReader, conversations
from session_deps.config import SessionDepsConfig
from session_deps.errors import SessionDepsError, StoreReadError, StoreWriteError
from session_deps.models import GraphStore, SessionRecord
from session_deps.service import SessionDepsService
from session_deps.store import create_graph_store


async def _graph(service: SessionDepsService) -> GraphStore:
    return await service.store.read()


def _by_id(enhanced: list[dict]) -> dict[str, dict]:
    return {c["session_id"]: c for c in enhanced}


class TestInitialize:
    """Tests for initialize()."""

    @pytest.mark.asyncio
    async def test_creates_database(self, service: SessionDepsService, config: SessionDepsConfig) -> None:
        await service.initialize()

        assert service.is_initialized
        data = json.loads(config.db_path.read_text())
        assert data["sessions"] == {}
        assert data["metadata"]["schema_version"] == 1
        assert data["metadata"]["total_sessions"] == 0

    @pytest.mark.asyncio
    async def test_idempotent(self, service: SessionDepsService, monkeypatch: pytest.MonkeyPatch) -> None:
        await service.initialize()
        update = AsyncMock()
        monkeypatch.setattr(service.store, "update", update)

        await service.initialize()

        update.assert_not_called()

    @pytest.mark.asyncio
    async def test_adds_missing_metadata(self, service: SessionDepsService, config: SessionDepsConfig) -> None:
        config.db_path.parent.mkdir(parents=True)
        config.db_path.write_text(json.dumps({"sessions": {}}))

        await service.initialize()

        data = json.loads(config.db_path.read_text())
        assert data["metadata"]["schema_version"] == 1

    @pytest.mark.asyncio
    async def test_migrates_old_schema(self, service: SessionDepsService, config: SessionDepsConfig) -> None:
        config.db_path.parent.mkdir(parents=True)
        config.db_path.write_text(json.dumps({"sessions": {}, "metadata": {"schema_version": 0}}))

        await service.initialize()

        assert (await _graph(service)).metadata.schema_version == 1

    @pytest.mark.asyncio
    async def test_failure_raises(self, config: SessionDepsConfig, history_reader: FakeHistoryReader) -> None:
        store = create_graph_store(config.db_path)
        store.update = AsyncMock(side_effect=StoreWriteError("disk full"))  # type: ignore[method-assign]
        service = SessionDepsService(config, store=store, history_reader=history_reader)

        with pytest.raises(SessionDepsError, match="initialization failed"):
            await service.initialize()
        assert not service.is_initialized


class TestHashes:
    """Hashes reported for enhanced conversations."""

    @pytest.mark.asyncio
    async def test_hash_matches_chain(self, service: SessionDepsService, history_reader: FakeHistoryReader) -> None:
        history_reader.add("session-1", "Hello", "Hi there!")
        await service.initialize()

        enhanced = await service.enhance(conversations(history_reader, "session-1"))

        hash1 = hashlib.sha256(b'{"role":"user","content":"Hello"}').hexdigest()
        hash2 = hashlib.sha256(
            (hash1 + '{"role":"assistant","content":"Hi there!"}').encode()
        ).hexdigest()
        assert enhanced[0]["hash"] == hash2
        assert history_reader.calls == ["session-1"]

        record = (await _graph(service)).sessions["session-1"]
        assert record.prefix_hashes == [hash1, hash2]
        assert record.message_count == 2

    @pytest.mark.asyncio
    async def test_different_sequences_differ(
        self, service: SessionDepsService, history_reader: FakeHistoryReader
    ) -> None:
        history_reader.add("A", "Message A")
        history_reader.add("B", "Message B")
        await service.initialize()

        enhanced = _by_id(await service.enhance(conversations(history_reader, "A", "B")))

        assert enhanced["A"]["hash"] != enhanced["B"]["hash"]
        assert enhanced["A"]["leaf_session"] == "A"
        assert enhanced["B"]["leaf_session"] == "B"

    @pytest.mark.asyncio
    async def test_caller_fields_are_preserved(
        self, service: SessionDepsService, history_reader: FakeHistoryReader
    ) -> None:
        history_reader.add("A", "Hello")
        await service.initialize()

        enhanced = await service.enhance(
            [{"sessionId": "A", "messageCount": 1, "projectPath": "/p", "custom_name": "x"}]
        )

        assert enhanced[0]["projectPath"] == "/p"
        assert enhanced[0]["custom_name"] == "x"
        assert enhanced[0]["leaf_session"] == "A"
        assert enhanced[0]["hash"]


class TestLineage:
    """Parent and leaf resolution through enhance()."""

    @pytest.mark.asyncio
    async def test_direct_parent(self, service: SessionDepsService, history_reader: FakeHistoryReader) -> None:
        history_reader.add("A", "Message 1", "Response 1")
        history_reader.add("B", "Message 1", "Response 1", "Message 2")
        await service.initialize()

        enhanced = _by_id(await service.enhance(conversations(history_reader, "A", "B")))

        graph = await _graph(service)
        assert graph.sessions["B"].parent_session == "A"
        assert graph.sessions["A"].children_sessions == ["B"]
        assert enhanced["A"]["leaf_session"] == "B"
        assert enhanced["B"]["leaf_session"] == "B"
        assert enhanced["A"]["hash"] != enhanced["B"]["hash"]

    @pytest.mark.asyncio
    async def test_gap(self, service: SessionDepsService, history_reader: FakeHistoryReader) -> None:
        history_reader.add("gap-A", "Message 1")
        history_reader.add("gap-B", "Message 1", "Response 1", "Message 2")
        await service.initialize()

        enhanced = _by_id(await service.enhance(conversations(history_reader, "gap-A", "gap-B")))

        assert enhanced["gap-A"]["leaf_session"] == "gap-B"
        assert (await _graph(service)).sessions["gap-B"].parent_session == "gap-A"

    @pytest.mark.asyncio
    async def test_closest_parent(self, service: SessionDepsService, history_reader: FakeHistoryReader) -> None:
        history_reader.add("A", "Message 1")
        history_reader.add("C", "Message 1", "Response 1")
        history_reader.add("B", "Message 1", "Response 1", "Message 2")
        await service.initialize()

        await service.enhance(conversations(history_reader, "A", "C", "B"))

        graph = await _graph(service)
        assert graph.sessions["B"].parent_session == "C"
        assert graph.sessions["C"].parent_session == "A"
        assert graph.sessions["A"].children_sessions == ["C"]

    @pytest.mark.asyncio
    async def test_nearest_leaf(self, service: SessionDepsService, history_reader: FakeHistoryReader) -> None:
        history_reader.add("A", "m1")
        history_reader.add("B", "m1", "r1")
        history_reader.add("C", "m1", "r1", "m2")
        history_reader.add("D", "m1", "other")
        await service.initialize()

        enhanced = _by_id(await service.enhance(conversations(history_reader, "A", "B", "C", "D")))

        assert enhanced["A"]["leaf_session"] == "D"
        assert enhanced["B"]["leaf_session"] == "C"
        assert enhanced["C"]["leaf_session"] == "C"
        assert enhanced["D"]["leaf_session"] == "D"

    @pytest.mark.asyncio
    async def test_sessions_arriving_across_calls(
        self, service: SessionDepsService, history_reader: FakeHistoryReader
    ) -> None:
        """A continuation seen first and its ancestor later still link up."""
        history_reader.add("root", "m1")
        history_reader.add("resumed", "m1", "r1", "m2")
        await service.initialize()

        first = await service.enhance(conversations(history_reader, "resumed"))
        assert first[0]["leaf_session"] == "resumed"

        second = _by_id(await service.enhance(conversations(history_reader, "root", "resumed")))

        assert second["root"]["leaf_session"] == "resumed"
        assert history_reader.calls == ["resumed", "root"]

    @pytest.mark.asyncio
    async def test_growing_session_moves_leaf(
        self, service: SessionDepsService, history_reader: FakeHistoryReader
    ) -> None:
        history_reader.add("A", "m1")
        history_reader.add("B", "m1", "r1")
        await service.initialize()
        await service.enhance(conversations(history_reader, "A", "B"))

        history_reader.add("C", "m1", "r1", "m2")
        enhanced = _by_id(await service.enhance(conversations(history_reader, "A", "B", "C")))

        assert enhanced["A"]["leaf_session"] == "C"
        assert enhanced["B"]["leaf_session"] == "C"


class TestIncremental:
    """Unchanged sessions are neither fetched nor rehashed."""

    @pytest.mark.asyncio
    async def test_second_call_fetches_nothing(
        self, service: SessionDepsService, history_reader: FakeHistoryReader
    ) -> None:
        history_reader.add("A", "m1")
        history_reader.add("B", "m1", "r1")
        await service.initialize()

        first = await service.enhance(conversations(history_reader, "A", "B"))
        history_reader.calls.clear()
        second = await service.enhance(conversations(history_reader, "A", "B"))

        assert history_reader.calls == []
        assert first == second

    @pytest.mark.asyncio
    async def test_only_changed_session_is_fetched(
        self, service: SessionDepsService, history_reader: FakeHistoryReader
    ) -> None:
        history_reader.add("A", "m1")
        history_reader.add("B", "m1", "r1")
        await service.initialize()
        await service.enhance(conversations(history_reader, "A", "B"))
        history_reader.calls.clear()

        history_reader.add("B", "m1", "r1", "m2")
        enhanced = _by_id(await service.enhance(conversations(history_reader, "A", "B")))

        assert history_reader.calls == ["B"]
        record = (await _graph(service)).sessions["B"]
        assert record.message_count == 3
        assert enhanced["B"]["hash"] == record.end_hash
        assert enhanced["A"]["leaf_session"] == "B"

    @pytest.mark.asyncio
    async def test_created_at_survives_updates(
        self, service: SessionDepsService, history_reader: FakeHistoryReader
    ) -> None:
        history_reader.add("A", "m1")
        await service.initialize()
        await service.enhance(conversations(history_reader, "A"))
        created = (await _graph(service)).sessions["A"].created_at

        history_reader.add("A", "m1", "r1")
        await service.enhance(conversations(history_reader, "A"))

        assert (await _graph(service)).sessions["A"].created_at == created

    @pytest.mark.asyncio
    async def test_thousand_unchanged_sessions(
        self, service: SessionDepsService, history_reader: FakeHistoryReader
    ) -> None:
        await service.initialize()

        def seed(graph: GraphStore) -> GraphStore:
            for i in range(1000):
                sid = f"session-{i}"
                graph.sessions[sid] = SessionRecord(
                    session_id=sid,
                    prefix_hashes=[f"hash-{i}"],
                    end_hash=f"hash-{i}",
                    message_count=i + 1,
                )
            graph.touch()
            return graph

        await service.store.update(seed)
        batch = [{"session_id": f"session-{i}", "message_count": i + 1} for i in range(1000)]

        start = time.perf_counter()
        enhanced = await service.enhance(batch)
        elapsed = time.perf_counter() - start

        assert history_reader.calls == []
        assert len(enhanced) == 1000
        assert enhanced[500]["hash"] == "hash-500"
        assert enhanced[500]["leaf_session"] == "session-500"
        assert elapsed < 2.0

    @pytest.mark.asyncio
    async def test_persists_across_instances(
        self, config: SessionDepsConfig, history_reader: FakeHistoryReader
    ) -> None:
        history_reader.add("persist-test", "Persistence test")
        first_service = SessionDepsService(config, history_reader=history_reader)
        await first_service.initialize()
        first = await first_service.enhance(conversations(history_reader, "persist-test"))
        history_reader.calls.clear()

        second_service = SessionDepsService(config, history_reader=history_reader)
        await second_service.initialize()
        second = await second_service.enhance(conversations(history_reader, "persist-test"))

        assert history_reader.calls == []
        assert second[0]["hash"] == first[0]["hash"]
        data = json.loads(config.db_path.read_text())
        assert data["sessions"]["persist-test"]["end_hash"] == first[0]["hash"]

    @pytest.mark.asyncio
    async def test_concurrent_calls_keep_every_session(
        self, service: SessionDepsService, history_reader: FakeHistoryReader
    ) -> None:
        for i in range(10):
            history_reader.add(f"s{i}", f"message {i}")
        history_reader.delay = 0.01
        await service.initialize()

        results = await asyncio.gather(
            *(service.enhance(conversations(history_reader, f"s{i}")) for i in range(10))
        )

        graph = await _graph(service)
        assert len(graph.sessions) == 10
        assert graph.metadata.total_sessions == 10
        for i, result in enumerate(results):
            assert result[0]["hash"] == graph.sessions[f"s{i}"].end_hash


class TestDegradation:
    """Failures degrade to default values instead of raising."""

    @pytest.mark.asyncio
    async def test_not_initialized_returns_defaults(
        self, service: SessionDepsService, history_reader: FakeHistoryReader
    ) -> None:
        history_reader.add("A", "m1")

        enhanced = await service.enhance(conversations(history_reader, "A"))

        assert enhanced[0]["leaf_session"] == "A"
        assert enhanced[0]["hash"] == ""
        assert history_reader.calls == []

    @pytest.mark.asyncio
    async def test_missing_history(
        self, service: SessionDepsService, history_reader: FakeHistoryReader, caplog: pytest.LogCaptureFixture
    ) -> None:
        history_reader.add("A", "m1")
        await service.initialize()

        with caplog.at_level(logging.ERROR, logger="session_deps"):
            enhanced = _by_id(
                await service.enhance(
                    [{"session_id": "missing", "message_count": 5}]
                    + conversations(history_reader, "A")
                )
            )

        assert enhanced["missing"]["leaf_session"] == "missing"
        assert enhanced["missing"]["hash"] == ""
        assert enhanced["A"]["hash"]
        assert "missing" not in (await _graph(service)).sessions
        assert "Failed to get session messages for missing" in caplog.text

    @pytest.mark.asyncio
    async def test_failed_session_is_retried(
        self, service: SessionDepsService, history_reader: FakeHistoryReader
    ) -> None:
        history_reader.add("A", "m1")
        history_reader.failing.add("A")
        await service.initialize()

        await service.enhance(conversations(history_reader, "A"))
        history_reader.failing.clear()
        enhanced = await service.enhance(conversations(history_reader, "A"))

        assert history_reader.calls == ["A", "A"]
        assert enhanced[0]["hash"]

    @pytest.mark.asyncio
    async def test_failure_on_known_session_keeps_record(
        self, service: SessionDepsService, history_reader: FakeHistoryReader
    ) -> None:
        history_reader.add("A", "m1")
        await service.initialize()
        await service.enhance(conversations(history_reader, "A"))
        before = (await _graph(service)).sessions["A"]

        history_reader.failing.add("A")
        enhanced = await service.enhance([{"session_id": "A", "message_count": 2}])

        assert enhanced[0]["hash"] == ""
        assert enhanced[0]["leaf_session"] == "A"
        assert (await _graph(service)).sessions["A"] == before

    @pytest.mark.asyncio
    async def test_malformed_message(
        self, service: SessionDepsService, history_reader: FakeHistoryReader, caplog: pytest.LogCaptureFixture
    ) -> None:
        history_reader.add("good", "m1")
        history_reader.sessions["bad"] = [
            {"type": "user", "message": {"role": "user", "content": {"unexpected": "shape"}}}
        ]
        await service.initialize()

        with caplog.at_level(logging.ERROR, logger="session_deps"):
            enhanced = _by_id(await service.enhance(conversations(history_reader, "good", "bad")))

        assert enhanced["bad"]["leaf_session"] == "bad"
        assert enhanced["bad"]["hash"] == ""
        assert enhanced["good"]["hash"]
        assert "Cannot hash session bad" in caplog.text

    @pytest.mark.asyncio
    async def test_fetch_timeout(
        self, config: SessionDepsConfig, history_reader: FakeHistoryReader
    ) -> None:
        config.fetch_timeout_seconds = 0.05
        history_reader.add("slow", "m1")
        history_reader.delay = 0.5
        service = SessionDepsService(config, history_reader=history_reader)
        await service.initialize()

        enhanced = await service.enhance(conversations(history_reader, "slow"))

        assert enhanced[0]["hash"] == ""
        assert enhanced[0]["leaf_session"] == "slow"

    @pytest.mark.asyncio
    async def test_reader_exception_is_contained(self, config: SessionDepsConfig) -> None:
        reader = AsyncMock()
        reader.get_conversation_details = AsyncMock(side_effect=PermissionError("denied"))
        service = SessionDepsService(config, history_reader=reader)
        await service.initialize()

        enhanced = await service.enhance([{"session_id": "A", "message_count": 1}])

        assert enhanced == [{"session_id": "A", "message_count": 1, "leaf_session": "A", "hash": ""}]

    @pytest.mark.asyncio
    async def test_store_read_failure(
        self, service: SessionDepsService, history_reader: FakeHistoryReader
    ) -> None:
        history_reader.add("A", "m1")
        await service.initialize()
        service.store.read = AsyncMock(side_effect=StoreReadError("unreadable"))  # type: ignore[method-assign]

        enhanced = await service.enhance(conversations(history_reader, "A"))

        assert enhanced == [
            {"session_id": "A", "message_count": 1, "summary": "Conversation A", "leaf_session": "A", "hash": ""}
        ]

    @pytest.mark.asyncio
    async def test_store_write_failure(
        self, service: SessionDepsService, history_reader: FakeHistoryReader
    ) -> None:
        history_reader.add("A", "m1")
        history_reader.add("B", "m1", "r1")
        await service.initialize()
        service.store.update = AsyncMock(side_effect=StoreWriteError("disk full"))  # type: ignore[method-assign]

        enhanced = _by_id(await service.enhance(conversations(history_reader, "A", "B")))

        assert enhanced["A"]["leaf_session"] == "A"
        assert enhanced["A"]["hash"] == ""
        assert enhanced["B"]["hash"] == ""

    @pytest.mark.asyncio
    async def test_recovers_from_corrupt_database(
        self, service: SessionDepsService, history_reader: FakeHistoryReader, config: SessionDepsConfig
    ) -> None:
        config.db_path.parent.mkdir(parents=True)
        config.db_path.write_text("invalid json content")
        history_reader.add("corruption-test", "Corruption test")

        await service.initialize()
        enhanced = await service.enhance(conversations(history_reader, "corruption-test"))

        assert enhanced[0]["leaf_session"] == "corruption-test"
        assert enhanced[0]["hash"] != ""


class TestQueries:
    """Tests for get_session_deps_info, get_stats and rebuild."""

    @pytest.mark.asyncio
    async def test_get_session_deps_info(
        self, service: SessionDepsService, history_reader: FakeHistoryReader
    ) -> None:
        history_reader.add("A", "m1")
        await service.initialize()
        await service.enhance(conversations(history_reader, "A"))

        record = await service.get_session_deps_info("A")

        assert record is not None
        assert record.message_count == 1
        assert await service.get_session_deps_info("unknown") is None

    @pytest.mark.asyncio
    async def test_get_session_deps_info_on_read_failure(self, service: SessionDepsService) -> None:
        service.store.read = AsyncMock(side_effect=StoreReadError("unreadable"))  # type: ignore[method-assign]
        assert await service.get_session_deps_info("A") is None

    @pytest.mark.asyncio
    async def test_get_stats(self, service: SessionDepsService, history_reader: FakeHistoryReader) -> None:
        history_reader.add("A", "m1")
        history_reader.add("B", "m1", "r1")
        history_reader.add("C", "m1", "r1", "m2")
        history_reader.add("D", "m1", "other")
        history_reader.add("X", "unrelated")
        await service.initialize()
        await service.enhance(conversations(history_reader, "A", "B", "C", "D", "X"))

        stats = await service.get_stats()

        assert stats.session_count == 5
        assert stats.tree_depth == 2
        assert stats.leaf_count == 3
        assert stats.root_count == 2

    @pytest.mark.asyncio
    async def test_get_stats_on_read_failure(self, service: SessionDepsService) -> None:
        service.store.read = AsyncMock(side_effect=StoreReadError("unreadable"))  # type: ignore[method-assign]
        stats = await service.get_stats()
        assert stats.session_count == 0

    @pytest.mark.asyncio
    async def test_rebuild_repairs_edges(
        self, service: SessionDepsService, history_reader: FakeHistoryReader
    ) -> None:
        history_reader.add("A", "m1")
        history_reader.add("B", "m1", "r1")
        await service.initialize()
        await service.enhance(conversations(history_reader, "A", "B"))

        def damage(graph: GraphStore) -> GraphStore:
            graph.sessions["A"].children_sessions = []
            graph.sessions["A"].leaf_session = "A"
            graph.sessions["B"].parent_session = None
            return graph

        await service.store.update(damage)
        stats = await service.rebuild()

        graph = await _graph(service)
        assert graph.sessions["B"].parent_session == "A"
        assert graph.sessions["A"].leaf_session == "B"
        assert stats.session_count == 2
        assert history_reader.calls == ["A", "B"]


def test_default_service_wiring(tmp_path: Path) -> None:
    """Without explicit collaborators the service uses the configured paths."""
    config = SessionDepsConfig(data_dir=tmp_path / "data", history_dir=tmp_path / "projects")
    service = SessionDepsService(config)

    assert service.store.path == tmp_path / "data" / "session-deps.json"
    assert service.history_reader.projects_dir == tmp_path / "projects"  # type: ignore[attr-defined]
