"""Base protocol for session stores.

A store keeps serialized session snapshots (plain dicts produced by
``serializer.serialize_session``) keyed by session id. Each session has a
single writer: the SessionManager only saves a session from its in-flight
turn.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable


@dataclass
class SessionInfo:
    """Summary of a stored session, for listings."""
    session_id: str
    lifecycle: str
    model: Optional[str]
    agent: Optional[str]
    created_at: Optional[str]
    updated_at: Optional[str]
    message_count: int

    @classmethod
    def from_snapshot(cls, snapshot: Dict[str, Any]) -> 'SessionInfo':
        return cls(
            session_id=snapshot["session_id"],
            lifecycle=snapshot.get("lifecycle", "idle"),
            model=snapshot.get("model"),
            agent=snapshot.get("agent"),
            created_at=snapshot.get("created_at"),
            updated_at=snapshot.get("updated_at"),
            message_count=len(snapshot.get("messages", [])),
        )


@runtime_checkable
class SessionStore(Protocol):
    """Protocol for session persistence backends."""

    def save(self, snapshot: Dict[str, Any]) -> None:
        """Persist ``snapshot``, replacing any earlier snapshot of the same session.

        Raises:
            PersistenceError: The snapshot could not be written.
        """
        ...

    def load(self, session_id: str) -> Optional[Dict[str, Any]]:
        """Return the stored snapshot, or None if the session is unknown."""
        ...

    def list(self) -> List[SessionInfo]:
        """Summaries of all stored sessions, most recently updated first."""
        ...

    def delete(self, session_id: str) -> bool:
        """Remove a session. Returns False if it was not stored."""
        ...
