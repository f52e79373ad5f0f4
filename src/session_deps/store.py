"""
Transactional JSON document store.

One JSON file holds the whole document. ``update()`` runs
read -> updater -> write under an ``asyncio.Lock`` so concurrent callers in
the same event loop never interleave and lose each other's changes. Writes
go to a temporary file in the same directory and are moved into place with
``os.replace``, so readers only ever see a complete document.
"""

from __future__ import annotations

import asyncio
import json
import os
import tempfile
import threading
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any, Generic, TypeVar

from session_deps.errors import StoreReadError, StoreWriteError
from session_deps.logging import get_logger
from session_deps.models import GraphStore

logger = get_logger("store")

T = TypeVar("T")


class JsonFileStore(Generic[T]):
    """
    A single JSON document with atomic read-modify-write transactions.

    Args:
        path: Location of the JSON file.
        default: Factory for the value used when the file is missing or
            unreadable as JSON.
        loads: Converts the parsed JSON into ``T``. May raise
            :class:`ValueError` for documents of the wrong shape.
        dumps: Converts ``T`` back into JSON-serializable data.
        timeout: Seconds allowed for each read or update, ``None`` for no limit.
    """

    def __init__(
        self,
        path: str | Path,
        default: Callable[[], T],
        loads: Callable[[Any], T],
        dumps: Callable[[T], Any],
        timeout: float | None = None,
    ) -> None:
        self.path = Path(path)
        self._default = default
        self._loads = loads
        self._dumps = dumps
        self.timeout = timeout
        self._lock = asyncio.Lock()
        # Set when the transaction owning the in-flight write has timed out
        self._write_abandoned = threading.Event()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def read(self) -> T:
        """Return the current document."""
        try:
            return await asyncio.wait_for(asyncio.to_thread(self._read_sync), self.timeout)
        except asyncio.TimeoutError as exc:
            raise StoreReadError(f"Timed out reading {self.path}") from exc

    async def update(self, updater: Callable[[T], T]) -> T:
        """
        Apply *updater* to the latest on-disk state and persist the result.

        Returns the value that was written. A write that exceeds the timeout
        is abandoned before it replaces the file, and the lock is held until
        its worker thread has finished, so a later transaction can never be
        overwritten by it.
        """
        async with self._lock:
            current = await self.read()
            updated = updater(current)

            self._write_abandoned.clear()
            write = asyncio.create_task(asyncio.to_thread(self._write_sync, updated))
            try:
                await asyncio.wait_for(asyncio.shield(write), self.timeout)
            except asyncio.TimeoutError as exc:
                self._write_abandoned.set()
                (outcome,) = await asyncio.gather(write, return_exceptions=True)
                if outcome is None:
                    logger.warning("Slow write to %s committed after the timeout", self.path)
                    return updated
                raise StoreWriteError(f"Timed out writing {self.path}") from exc
            return updated

    # ------------------------------------------------------------------
    # File I/O (runs in a worker thread)
    # ------------------------------------------------------------------

    def _read_sync(self) -> T:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return self._default()
        except OSError as exc:
            raise StoreReadError(f"Cannot read {self.path}: {exc}") from exc

        try:
            return self._loads(json.loads(text))
        except (json.JSONDecodeError, ValueError, KeyError, TypeError) as exc:
            backup = self._quarantine()
            logger.error(
                "Corrupt document at %s (%s); moved to %s and starting from defaults",
                self.path,
                exc,
                backup,
            )
            return self._default()

    def _quarantine(self) -> Path | None:
        """Move an unreadable file aside so the next write starts clean."""
        backup = self.path.with_name(f"{self.path.name}.corrupt-{int(time.time())}")
        try:
            os.replace(self.path, backup)
        except OSError as exc:
            logger.warning("Could not move corrupt file %s aside: %s", self.path, exc)
            return None
        return backup

    def _write_sync(self, value: T) -> None:
        try:
            data = json.dumps(self._dumps(value), indent=2, ensure_ascii=False)
        except (TypeError, ValueError) as exc:
            raise StoreWriteError(f"Cannot serialize document for {self.path}: {exc}") from exc

        tmp_path: Path | None = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                mode="w",
                encoding="utf-8",
                delete=False,
                dir=str(self.path.parent),
                prefix=self.path.name + ".tmp.",
            ) as fh:
                tmp_path = Path(fh.name)
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            if self._write_abandoned.is_set():
                raise StoreWriteError(f"Write to {self.path} abandoned after timeout")
            os.replace(tmp_path, self.path)
            tmp_path = None
        except OSError as exc:
            raise StoreWriteError(f"Cannot write {self.path}: {exc}") from exc
        finally:
            if tmp_path is not None and tmp_path.exists():
                tmp_path.unlink()


def create_graph_store(path: str | Path, timeout: float | None = None) -> JsonFileStore[GraphStore]:
    """Store for the session dependency graph at *path*."""
    return JsonFileStore(
        path,
        default=GraphStore.empty,
        loads=GraphStore.from_dict,
        dumps=GraphStore.to_dict,
        timeout=timeout,
    )
