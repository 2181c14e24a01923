"""In-memory session store for tests and embedding."""

import copy
import threading
from typing import Any, Dict, List, Optional

from .base import SessionInfo


class InMemorySessionStore:
    """Keeps deep copies of snapshots in a dict."""

    def __init__(self):
        self._snapshots: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def save(self, snapshot: Dict[str, Any]) -> None:
        with self._lock:
            self._snapshots[snapshot["session_id"]] = copy.deepcopy(snapshot)

    def load(self, session_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            snapshot = self._snapshots.get(session_id)
            return copy.deepcopy(snapshot) if snapshot is not None else None

    def list(self) -> List[SessionInfo]:
        with self._lock:
            infos = [SessionInfo.from_snapshot(s) for s in self._snapshots.values()]
        return sorted(infos, key=lambda i: i.updated_at or "", reverse=True)

    def delete(self, session_id: str) -> bool:
        with self._lock:
            return self._snapshots.pop(session_id, None) is not None

    def __len__(self) -> int:
        return len(self._snapshots)
