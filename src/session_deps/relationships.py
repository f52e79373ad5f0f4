"""
Parent/child relationships between sessions.

Session B is a continuation of session A when A's prefix hash chain is a
strict, element-wise prefix of B's. B's parent is the candidate with the
longest chain (the closest ancestor). Gaps are allowed: a one-message
session can directly parent a three-message session.

Records live in a ``session_id -> SessionRecord`` map and point at each
other by id only.
"""

from __future__ import annotations

from bisect import insort
from collections.abc import Iterable

from session_deps.logging import get_logger
from session_deps.models import SessionRecord

logger = get_logger("relationships")

Sessions = dict[str, SessionRecord]


def build_end_hash_index(sessions: Sessions) -> dict[str, list[str]]:
    """
    Map each ``end_hash`` to the sorted ids of sessions ending with it.

    Empty sessions are left out: they are never anyone's ancestor.
    """
    index: dict[str, list[str]] = {}
    for session_id, record in sessions.items():
        if record.end_hash:
            index.setdefault(record.end_hash, []).append(session_id)
    for ids in index.values():
        ids.sort()
    return index


def build_root_index(sessions: Sessions) -> dict[str, list[str]]:
    """Map the first hash of every parentless, non-empty session to its ids."""
    index: dict[str, list[str]] = {}
    for session_id, record in sessions.items():
        if record.parent_session is None and record.prefix_hashes:
            index.setdefault(record.prefix_hashes[0], []).append(session_id)
    return index


def find_parent(
    record: SessionRecord,
    sessions: Sessions,
    index: dict[str, list[str]],
) -> str | None:
    """
    Return the id of *record*'s closest ancestor, or ``None``.

    Prefix positions are probed from the longest strict prefix down, so the
    first verified hit is the closest ancestor. Two sessions with the same
    chain can only tie through a hash collision or a duplicated transcript;
    the smaller id wins and a warning is logged.
    """
    chain = record.prefix_hashes
    for position in range(len(chain) - 2, -1, -1):
        ids = index.get(chain[position])
        if not ids:
            continue

        candidates = [
            candidate_id
            for candidate_id in ids
            if candidate_id != record.session_id
            and sessions[candidate_id].is_prefix_of(record)
        ]
        if not candidates:
            continue

        if len(candidates) > 1:
            logger.warning(
                "Ambiguous parent for session %s: %s share prefix length %d, choosing %s",
                record.session_id,
                candidates,
                position + 1,
                candidates[0],
            )
        return candidates[0]

    return None


def link_parent(sessions: Sessions, session_id: str, parent_id: str | None) -> bool:
    """
    Point *session_id* at *parent_id*, moving it between children lists.

    Returns ``True`` if the parent changed.
    """
    record = sessions[session_id]
    old_parent_id = record.parent_session
    if old_parent_id == parent_id:
        return False

    if old_parent_id is not None and old_parent_id in sessions:
        siblings = sessions[old_parent_id].children_sessions
        if session_id in siblings:
            siblings.remove(session_id)

    record.parent_session = parent_id
    if parent_id is not None:
        children = sessions[parent_id].children_sessions
        if session_id not in children:
            insort(children, session_id)
    return True


def _detach(sessions: Sessions, session_id: str, changed: set[str]) -> set[str]:
    """Unlink *session_id* from its parent and children; return the orphans."""
    record = sessions[session_id]
    if record.parent_session is not None:
        changed.add(record.parent_session)
    link_parent(sessions, session_id, None)

    orphans: set[str] = set()
    for child_id in list(record.children_sessions):
        if child_id in sessions:
            link_parent(sessions, child_id, None)
            orphans.add(child_id)
    # Drop dangling ids left behind by a damaged store.
    record.children_sessions = []
    changed.update(orphans)
    return orphans


def resolve_relationships(sessions: Sessions, dirty: Iterable[str]) -> set[str]:
    """
    Re-establish edges after the chains of *dirty* sessions changed.

    *sessions* must already hold the new chains. Only the dirty sessions,
    their former children and existing sessions that gain a closer ancestor
    among the dirty set are re-parented; everything else keeps its edges.

    Returns the ids whose parent or children changed.
    """
    dirty_ids = sorted(
        (sid for sid in set(dirty) if sid in sessions),
        key=lambda sid: (sessions[sid].chain_length, sid),
    )
    changed: set[str] = set(dirty_ids)
    pending: set[str] = set(dirty_ids)

    for session_id in dirty_ids:
        pending |= _detach(sessions, session_id, changed)

    index = build_end_hash_index(sessions)
    roots = build_root_index(sessions)

    # A session that extends a dirty session's new chain currently hangs off
    # that session's parent (or is a root with the same first message).
    for session_id in dirty_ids:
        record = sessions[session_id]
        if not record.prefix_hashes:
            continue
        parent_id = find_parent(record, sessions, index)
        if parent_id is not None:
            neighbours = sessions[parent_id].children_sessions
        else:
            neighbours = roots.get(record.prefix_hashes[0], [])
        for other_id in neighbours:
            if other_id != session_id and record.is_prefix_of(sessions[other_id]):
                pending.add(other_id)

        # Children of a session with the same chain may now prefer this one.
        for twin_id in index.get(record.end_hash, []):
            twin = sessions[twin_id]
            if twin_id != session_id and twin.prefix_hashes == record.prefix_hashes:
                pending.update(c for c in twin.children_sessions if c in sessions)

    for session_id in sorted(pending, key=lambda sid: (sessions[sid].chain_length, sid)):
        record = sessions[session_id]
        old_parent_id = record.parent_session
        parent_id = find_parent(record, sessions, index) if record.prefix_hashes else None
        if link_parent(sessions, session_id, parent_id):
            changed.add(session_id)
            if old_parent_id is not None:
                changed.add(old_parent_id)
            if parent_id is not None:
                changed.add(parent_id)

    logger.debug(
        "Resolved relationships for %d dirty sessions (%d re-parented candidates, %d changed)",
        len(dirty_ids),
        len(pending),
        len(changed),
    )
    return {sid for sid in changed if sid in sessions}


def rebuild_relationships(sessions: Sessions) -> set[str]:
    """Recompute every edge from scratch. Returns all session ids."""
    for record in sessions.values():
        record.parent_session = None
        record.children_sessions = []

    index = build_end_hash_index(sessions)
    for session_id in sorted(sessions):
        record = sessions[session_id]
        if record.prefix_hashes:
            link_parent(sessions, session_id, find_parent(record, sessions, index))

    return set(sessions)
