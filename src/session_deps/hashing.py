"""
Prefix hash chains over conversation messages.

Each message is reduced to ``{"role", "content"}`` and serialized as compact
JSON. The chain accumulates SHA-256 digests so that ``chain[i]`` depends on
every message from 0 to *i*::

    chain[0] = sha256("" + serialize(m0))
    chain[i] = sha256(chain[i - 1] + serialize(mi))

Only ``text`` blocks contribute to list-shaped content; tool calls, tool
results and images are left out because they are not stable across resumed
sessions.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Iterable, Mapping
from typing import Any

from session_deps.errors import MalformedMessageError


def extract_message_for_hashing(message: Any, index: int = 0) -> dict[str, str]:
    """
    Reduce *message* to the fields that take part in hashing.

    Raises :class:`MalformedMessageError` for shapes that cannot be
    serialized deterministically.
    """
    if not isinstance(message, Mapping):
        raise MalformedMessageError(index, f"expected a mapping, got {type(message).__name__}")

    role = message.get("role") or "unknown"
    if not isinstance(role, str):
        raise MalformedMessageError(index, f"role must be a string, got {type(role).__name__}")

    content = message.get("content")
    if content is None:
        text = ""
    elif isinstance(content, str):
        text = content
    elif isinstance(content, list):
        parts: list[str] = []
        for block in content:
            if not isinstance(block, Mapping):
                raise MalformedMessageError(
                    index, f"content block must be a mapping, got {type(block).__name__}"
                )
            if block.get("type") != "text":
                continue
            block_text = block.get("text") or ""
            if not isinstance(block_text, str):
                raise MalformedMessageError(index, "text block carries non-string text")
            parts.append(block_text)
        text = "".join(parts)
    else:
        raise MalformedMessageError(
            index, f"unsupported content type {type(content).__name__}"
        )

    return {"role": role, "content": text}


def serialize_message(message: Any, index: int = 0) -> str:
    """Serialize *message* with a fixed key order and no whitespace."""
    data = extract_message_for_hashing(message, index)
    return json.dumps(data, ensure_ascii=False, separators=(",", ":"))


def compute_chain(messages: Iterable[Any]) -> list[str]:
    """Return the prefix hash chain for *messages* (empty input, empty chain)."""
    hashes: list[str] = []
    previous = ""
    for index, message in enumerate(messages):
        payload = previous + serialize_message(message, index)
        previous = hashlib.sha256(payload.encode("utf-8", "surrogatepass")).hexdigest()
        hashes.append(previous)
    return hashes


def end_hash(chain: list[str]) -> str:
    """Last hash of *chain*, or ``""`` for an empty session."""
    return chain[-1] if chain else ""
