"""Exceptions raised by the session dependency resolver."""

from __future__ import annotations


class SessionDepsError(Exception):
    """Base class for all session dependency errors."""


class HistoryFetchError(SessionDepsError):
    """The message history of a session could not be retrieved."""

    def __init__(self, session_id: str, reason: str = "") -> None:
        self.session_id = session_id
        self.reason = reason
        message = f"Failed to fetch history for session {session_id!r}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class StoreReadError(SessionDepsError):
    """The persisted dependency graph could not be read."""


class StoreWriteError(SessionDepsError):
    """The update transaction on the dependency graph could not be committed."""


class MalformedMessageError(SessionDepsError):
    """A message has a shape that cannot be serialized for hashing."""

    def __init__(self, index: int, reason: str, session_id: str | None = None) -> None:
        self.index = index
        self.reason = reason
        self.session_id = session_id
        where = f"message {index}"
        if session_id:
            where = f"{where} of session {session_id!r}"
        super().__init__(f"Malformed {where}: {reason}")
