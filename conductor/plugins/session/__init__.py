"""Session persistence: store protocol, stores and snapshot serializer.

Usage:
    from conductor.plugins.session import FileSessionStore, serialize_session

    store = FileSessionStore("/var/lib/conductor/sessions")
    store.save(serialize_session(session))
"""

from .base import SessionInfo, SessionStore
from .file_store import FileSessionStore, default_session_dir
from .memory_store import InMemorySessionStore
from .serializer import (
    FORMAT_VERSION,
    deserialize_message,
    deserialize_segment,
    deserialize_session,
    serialize_message,
    serialize_segment,
    serialize_session,
)

__all__ = [
    'FORMAT_VERSION',
    'FileSessionStore',
    'InMemorySessionStore',
    'SessionInfo',
    'SessionStore',
    'default_session_dir',
    'deserialize_message',
    'deserialize_segment',
    'deserialize_session',
    'serialize_message',
    'serialize_segment',
    'serialize_session',
]
