"""
Nearest-leaf resolution.

A session's leaf is itself when it has no children, otherwise the leaf
reachable through ``children_sessions`` at the smallest edge distance.
Equal distances are broken by the lexicographically smallest leaf id.

Children always have strictly longer chains than their parent, so walking
sessions by descending chain length visits every child before its parent.
"""

from __future__ import annotations

from collections.abc import Iterable

from session_deps.logging import get_logger
from session_deps.models import SessionRecord

logger = get_logger("leaves")

Sessions = dict[str, SessionRecord]


def collect_affected(sessions: Sessions, seeds: Iterable[str]) -> set[str]:
    """
    Expand *seeds* to every session whose leaf may have changed.

    That is the seeds and all their ancestors, plus any descendant whose
    ``leaf_distance`` is unknown (records written by an older version).
    """
    targets: set[str] = set()
    for seed in seeds:
        current: str | None = seed
        while current is not None and current in sessions and current not in targets:
            targets.add(current)
            current = sessions[current].parent_session

    stack = list(targets)
    while stack:
        record = sessions[stack.pop()]
        for child_id in record.children_sessions:
            child = sessions.get(child_id)
            if child is not None and child_id not in targets and child.leaf_distance is None:
                targets.add(child_id)
                stack.append(child_id)

    return targets


def nearest_leaf(record: SessionRecord, sessions: Sessions) -> tuple[str, int]:
    """Pick ``(leaf_session, leaf_distance)`` for *record* from its children."""
    best: tuple[int, str] | None = None
    for child_id in record.children_sessions:
        child = sessions.get(child_id)
        if child is None:
            continue
        candidate = ((child.leaf_distance or 0) + 1, child.leaf_session or child_id)
        if best is None or candidate < best:
            best = candidate

    if best is None:
        return record.session_id, 0
    return best[1], best[0]


def resolve_leaves(sessions: Sessions, seeds: Iterable[str]) -> set[str]:
    """
    Recompute ``leaf_session`` for *seeds* and their ancestors.

    Returns the ids whose leaf or distance changed.
    """
    targets = collect_affected(sessions, seeds)
    order = sorted(targets, key=lambda sid: (-sessions[sid].chain_length, sid))

    changed: set[str] = set()
    for session_id in order:
        record = sessions[session_id]
        leaf_id, distance = nearest_leaf(record, sessions)
        if leaf_id != record.leaf_session or distance != record.leaf_distance:
            record.leaf_session = leaf_id
            record.leaf_distance = distance
            changed.add(session_id)

    logger.debug("Resolved leaves for %d sessions (%d changed)", len(targets), len(changed))
    return changed
