"""Session serialization utilities.

Converts sessions, messages and segments to and from plain dicts that can be
written as JSON. The snapshot layout is versioned by ``FORMAT_VERSION``;
``serialize_session(deserialize_session(s)) == s`` holds for every valid
snapshot ``s``.
"""

from typing import Any, Dict, List

from ...errors import HistoryInvariantError, SnapshotError
from ...session import Session, SessionLifecycle
from ..model_provider.types import (
    CodeBlockSegment,
    Message,
    Role,
    Segment,
    TextSegment,
    ToolCallSegment,
    ToolResultSegment,
)

FORMAT_VERSION = 1


def serialize_segment(segment: Segment) -> Dict[str, Any]:
    if isinstance(segment, TextSegment):
        return {"type": "text", "text": segment.text}
    if isinstance(segment, CodeBlockSegment):
        return {"type": "code", "language": segment.language, "content": segment.content}
    if isinstance(segment, ToolCallSegment):
        return {
            "type": "tool_call",
            "name": segment.name,
            "arguments": segment.arguments,
            "call_id": segment.call_id,
        }
    if isinstance(segment, ToolResultSegment):
        return {
            "type": "tool_result",
            "call_id": segment.call_id,
            "name": segment.name,
            "payload": segment.payload,
            "success": segment.success,
            "condition": segment.condition,
        }
    raise TypeError(f"Cannot serialize segment of type {type(segment).__name__}")


def deserialize_segment(data: Dict[str, Any]) -> Segment:
    """Rebuild a segment from its tagged dict.

    Raises:
        SnapshotError: Unknown tag or missing fields.
    """
    kind = data.get("type")
    try:
        if kind == "text":
            return TextSegment(data["text"])
        if kind == "code":
            return CodeBlockSegment(language=data["language"], content=data["content"])
        if kind == "tool_call":
            arguments = data["arguments"]
            if not isinstance(arguments, dict):
                raise SnapshotError(f"tool_call '{data.get('call_id')}' arguments must be an object")
            return ToolCallSegment(name=data["name"], arguments=arguments, call_id=data["call_id"])
        if kind == "tool_result":
            return ToolResultSegment(
                call_id=data["call_id"],
                payload=data["payload"],
                success=bool(data["success"]),
                name=data["name"],
                condition=data["condition"],
            )
    except KeyError as exc:
        raise SnapshotError(f"Segment of type '{kind}' is missing field {exc}")
    raise SnapshotError(f"Unknown segment type: {kind!r}")


def serialize_message(message: Message) -> Dict[str, Any]:
    return {
        "message_id": message.message_id,
        "role": message.role.value,
        "timestamp": message.timestamp,
        "parent_id": message.parent_id,
        "partial": message.partial,
        "segments": [serialize_segment(s) for s in message.segments],
    }


def deserialize_message(data: Dict[str, Any]) -> Message:
    try:
        role = Role(data["role"])
    except KeyError:
        raise SnapshotError("Message is missing its role")
    except ValueError:
        raise SnapshotError(f"Unknown message role: {data['role']!r}")

    for key in ("message_id", "timestamp"):
        if not data.get(key):
            raise SnapshotError(f"{role.value} message is missing field '{key}'")
    if not isinstance(data.get("segments"), list):
        raise SnapshotError(f"{role.value} message is missing field 'segments'")

    return Message(
        role=role,
        segments=tuple(deserialize_segment(s) for s in data["segments"]),
        parent_id=data.get("parent_id"),
        partial=bool(data.get("partial", False)),
        message_id=data["message_id"],
        timestamp=data["timestamp"],
    )


def serialize_history(messages: List[Message]) -> List[Dict[str, Any]]:
    return [serialize_message(m) for m in messages]


def deserialize_history(data: List[Dict[str, Any]]) -> List[Message]:
    return [deserialize_message(m) for m in data]


def serialize_session(session: Session) -> Dict[str, Any]:
    """Snapshot of ``session`` as a JSON-compatible dict."""
    return {
        "format_version": FORMAT_VERSION,
        "session_id": session.session_id,
        "lifecycle": session.lifecycle.value,
        "model": session.model,
        "agent": session.agent,
        "scratch": dict(session.scratch),
        "created_at": session.created_at,
        "updated_at": session.updated_at,
        "messages": serialize_history(session.messages),
    }


def deserialize_session(data: Dict[str, Any]) -> Session:
    """Rebuild a Session from a snapshot.

    Raises:
        SnapshotError: Wrong version, missing fields, unknown tags, or a
            history that breaks the tool-call pairing rule.
    """
    if not isinstance(data, dict):
        raise SnapshotError(f"Snapshot must be a dict, got {type(data).__name__}")
    version = data.get("format_version")
    if version != FORMAT_VERSION:
        raise SnapshotError(f"Unsupported snapshot format_version: {version!r}")
    if not data.get("session_id"):
        raise SnapshotError("Snapshot has no session_id")
    try:
        lifecycle = SessionLifecycle(data.get("lifecycle", SessionLifecycle.IDLE.value))
    except ValueError:
        raise SnapshotError(f"Unknown lifecycle: {data.get('lifecycle')!r}")

    session = Session(
        session_id=data["session_id"],
        model=data.get("model"),
        agent=data.get("agent"),
        scratch=dict(data.get("scratch") or {}),
        created_at=data.get("created_at"),
    )
    try:
        session.extend(deserialize_history(data.get("messages", [])))
    except HistoryInvariantError as exc:
        raise SnapshotError(f"Invalid history: {exc}")

    session.lifecycle = lifecycle
    session.updated_at = data.get("updated_at") or session.updated_at
    return session
