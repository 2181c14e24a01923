"""Rendering events for the CLI/TUI collaborator.

``SessionManager.prompt()`` yields these while a turn runs. Events are
JSON-serializable dataclasses; segments are carried in their snapshot form
(see ``plugins/session/serializer.py``) so a renderer never needs the core's
types.

Event Flow:
    SegmentAppendedEvent  one per segment of every appended message
    ToolStartedEvent      a tool call begins executing
    ToolCompletedEvent    a tool call produced its result
    ConditionEvent        a condition was recorded (hook error, cancel, ...)
    SessionIdleEvent      the turn ended; always the last event
"""

import json
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .plugins.model_provider.types import utc_now


class EventType(str, Enum):
    SEGMENT_APPENDED = "segment.appended"
    TOOL_STARTED = "tool.started"
    TOOL_COMPLETED = "tool.completed"
    CONDITION = "condition"
    SESSION_IDLE = "session.idle"


@dataclass
class Event:
    """Base class for all events."""
    type: EventType
    session_id: str = ""
    timestamp: str = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        d = asdict(self)
        if isinstance(d.get('type'), EventType):
            d['type'] = d['type'].value
        return d

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


@dataclass
class SegmentAppendedEvent(Event):
    """A segment of a newly appended message."""
    type: EventType = field(default=EventType.SEGMENT_APPENDED)
    message_id: str = ""
    role: str = ""
    index: int = 0
    segment: Dict[str, Any] = field(default_factory=dict)
    partial: bool = False


@dataclass
class ToolStartedEvent(Event):
    type: EventType = field(default=EventType.TOOL_STARTED)
    call_id: str = ""
    tool_name: str = ""
    arguments: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolCompletedEvent(Event):
    type: EventType = field(default=EventType.TOOL_COMPLETED)
    call_id: str = ""
    tool_name: str = ""
    success: bool = True
    condition: Optional[str] = None


@dataclass
class ConditionEvent(Event):
    """A condition code plus the human-readable text recorded in history."""
    type: EventType = field(default=EventType.CONDITION)
    condition: str = ""
    message: str = ""
    fatal: bool = False


@dataclass
class SessionIdleEvent(Event):
    """The turn ended. ``state`` is the terminal turn state."""
    type: EventType = field(default=EventType.SESSION_IDLE)
    state: str = "idle"
    text: str = ""
    conditions: List[str] = field(default_factory=list)
    iterations: int = 0
    prompt_tokens: int = 0
    output_tokens: int = 0
    tools_invoked: List[str] = field(default_factory=list)
    wall_time: float = 0.0


_EVENT_CLASSES: Dict[str, type] = {
    EventType.SEGMENT_APPENDED.value: SegmentAppendedEvent,
    EventType.TOOL_STARTED.value: ToolStartedEvent,
    EventType.TOOL_COMPLETED.value: ToolCompletedEvent,
    EventType.CONDITION.value: ConditionEvent,
    EventType.SESSION_IDLE.value: SessionIdleEvent,
}


def deserialize_event(json_str: str) -> Event:
    """Deserialize a JSON string to an event object.

    Raises:
        ValueError: If the event type is unknown.
        json.JSONDecodeError: If the JSON is invalid.
    """
    data = json.loads(json_str)
    event_type = data.get("type")
    if event_type not in _EVENT_CLASSES:
        raise ValueError(f"Unknown event type: {event_type}")

    event_class = _EVENT_CLASSES[event_type]
    data["type"] = EventType(event_type)
    known_fields = set(event_class.__dataclass_fields__)
    return event_class(**{k: v for k, v in data.items() if k in known_fields})
