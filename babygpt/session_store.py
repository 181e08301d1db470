from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from typing import Dict, Optional

from .flows import Flow


@dataclass(frozen=True)
class Session:
    """Per-conversation routing state."""
    conversation_id: str
    active_flow: Optional[Flow] = None
    turn_count: int = 0
    updated_at: float = field(default_factory=time.time)

    def with_flow(self, flow: Optional[Flow]) -> "Session":
        """Return a copy switched to `flow` with the turn counter reset."""
        return replace(self, active_flow=flow, turn_count=0, updated_at=time.time())

    def next_turn(self) -> "Session":
        """Return a copy with the turn counter advanced by one."""
        return replace(self, turn_count=self.turn_count + 1, updated_at=time.time())


class SessionView:
    """Read-only window onto a SessionStore, handed to components that must not write."""

    def __init__(self, store: "SessionStore") -> None:
        self._store = store

    def get(self, conversation_id: str) -> Optional[Session]:
        return self._store.get(conversation_id)


class SessionStore:
    """Process-lifetime session storage keyed by conversation id."""

    def __init__(self, max_sessions: Optional[int] = None) -> None:
        """Purpose: Initialize an empty in-memory session map.
        Inputs/Outputs: Input is an optional max_sessions cap; no return.
        Side Effects / State: Allocates the session cache.
        Dependencies: Session dataclass.
        Failure Modes: None.
        If Removed: The router cannot remember which flow a chat is in.
        Testing Notes: Verify set/get/delete and pruning with a low cap.
        """
        self._max_sessions = max_sessions
        self._sessions: Dict[str, Session] = {}

    def get(self, conversation_id: str) -> Optional[Session]:
        return self._sessions.get(conversation_id)

    def get_or_create(self, conversation_id: str) -> Session:
        """Return the stored session, creating and storing a blank one on first contact."""
        session = self._sessions.get(conversation_id)
        if session is None:
            session = Session(conversation_id=conversation_id)
            self.set(session)
        return session

    def set(self, session: Session) -> None:
        """Purpose: Store the session for its conversation id, replacing any previous one.
        Inputs/Outputs: Input is a Session; no return value.
        Side Effects / State: Mutates the cache and may prune old sessions.
        Dependencies: Uses _prune_sessions.
        Failure Modes: None.
        If Removed: Flow selections and turn counts are never remembered.
        Testing Notes: Set twice for the same id and verify a single entry remains.
        """
        # At most one session per conversation id; later writes replace earlier ones.
        self._sessions[session.conversation_id] = session
        self._prune_sessions()

    def delete(self, conversation_id: str) -> bool:
        return self._sessions.pop(conversation_id, None) is not None

    def view(self) -> SessionView:
        return SessionView(self)

    def __len__(self) -> int:
        return len(self._sessions)

    def _prune_sessions(self) -> bool:
        """Purpose: Enforce max_sessions by dropping least recently updated sessions.
        Inputs/Outputs: No inputs; returns True if any sessions were removed.
        Side Effects / State: Mutates the session cache.
        Dependencies: Uses _max_sessions and updated_at ordering.
        Failure Modes: None; no-op when max_sessions is unset or not exceeded.
        If Removed: The session map grows without bound for the process lifetime.
        Testing Notes: Set a low max_sessions and verify pruning order.
        """
        # Remove least-recent sessions when above the configured cap.
        if not self._max_sessions or self._max_sessions <= 0:
            return False
        if len(self._sessions) <= self._max_sessions:
            return False

        ordered = sorted(self._sessions.values(), key=lambda s: s.updated_at, reverse=True)
        keep_ids = {session.conversation_id for session in ordered[: self._max_sessions]}
        removed = [conversation_id for conversation_id in list(self._sessions) if conversation_id not in keep_ids]
        for conversation_id in removed:
            self._sessions.pop(conversation_id, None)
        return bool(removed)
