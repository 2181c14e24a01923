"""File-based session store.

One JSON file per session, ``<session_dir>/<session_id>.json``. Writes go to
a temporary file in the same directory which is then moved over the target
with ``os.replace``, so a reader never sees a half-written snapshot.

Environment Variables:
    CONDUCTOR_SESSION_DIR: Default directory (default: ~/.conductor/sessions)
"""

import json
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from ...errors import PersistenceError
from .base import SessionInfo

logger = logging.getLogger(__name__)

_SAFE_ID = re.compile(r'^[A-Za-z0-9][A-Za-z0-9._-]*$')


def default_session_dir() -> Path:
    configured = os.environ.get('CONDUCTOR_SESSION_DIR')
    if configured:
        return Path(configured).expanduser()
    return Path.home() / '.conductor' / 'sessions'


class FileSessionStore:
    """Persists snapshots as JSON files under ``session_dir``."""

    def __init__(self, session_dir: Optional[Union[str, Path]] = None):
        self._dir = Path(session_dir).expanduser() if session_dir else default_session_dir()

    @property
    def session_dir(self) -> Path:
        return self._dir

    def _path(self, session_id: str) -> Optional[Path]:
        if not _SAFE_ID.match(session_id):
            return None
        return self._dir / f"{session_id}.json"

    def save(self, snapshot: Dict[str, Any]) -> None:
        session_id = snapshot.get("session_id", "")
        path = self._path(session_id)
        if path is None:
            raise PersistenceError(session_id, f"Session id {session_id!r} is not a valid file name")

        tmp_name = None
        try:
            self._dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{session_id}.", suffix=".tmp", dir=self._dir)
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(snapshot, f, indent=2, ensure_ascii=False)
            os.replace(tmp_name, path)
        except (OSError, TypeError, ValueError) as exc:
            if tmp_name is not None and os.path.exists(tmp_name):
                try:
                    os.unlink(tmp_name)
                except OSError:
                    pass
            raise PersistenceError(session_id, f"Failed to write {path}: {exc}") from exc

        logger.debug("Saved session %s to %s", session_id, path)

    def load(self, session_id: str) -> Optional[Dict[str, Any]]:
        path = self._path(session_id)
        if path is None or not path.exists():
            return None
        with open(path, 'r', encoding='utf-8') as f:
            return json.load(f)

    def list(self) -> List[SessionInfo]:
        if not self._dir.is_dir():
            return []
        infos = []
        for path in self._dir.glob('*.json'):
            try:
                with open(path, 'r', encoding='utf-8') as f:
                    infos.append(SessionInfo.from_snapshot(json.load(f)))
            except (OSError, ValueError, KeyError) as exc:
                logger.warning("Skipping unreadable session file %s: %s", path, exc)
        return sorted(infos, key=lambda i: i.updated_at or "", reverse=True)

    def delete(self, session_id: str) -> bool:
        path = self._path(session_id)
        if path is None or not path.exists():
            return False
        path.unlink()
        return True
