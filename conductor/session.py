"""Session state owned by the SessionManager.

A Session is an ordered, append-only list of immutable Messages plus the
selection (model, agent) and the plugin scratch state. It enforces the
tool-call pairing rule on every append: each ToolResultSegment answers exactly
one earlier ToolCallSegment of the same session.
"""

import threading
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from .errors import HistoryInvariantError, SessionArchivedError
from .plugins.model_provider.types import CancelToken, Message, TokenUsage, utc_now


class SessionLifecycle(str, Enum):
    CREATED = "created"
    ACTIVE = "active"
    IDLE = "idle"
    ARCHIVED = "archived"


class TurnState(str, Enum):
    """States of one turn. CANCELLED and FAILED are terminal alongside IDLE."""
    IDLE = "idle"
    AWAITING_PROVIDER = "awaiting_provider"
    PARSING_RESPONSE = "parsing_response"
    DISPATCHING_TOOLS = "dispatching_tools"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class TurnOutcome:
    """Result of one turn.

    Attributes:
        session_id: Session the turn ran in.
        state: Terminal turn state (IDLE, CANCELLED or FAILED).
        text: Prose of the last assistant message of the turn.
        conditions: Condition codes recorded during the turn, in order.
        messages: Messages appended during the turn.
        usage: Tokens reported by the provider across all round trips.
        iterations: Provider round trips made.
        partial: True if the last assistant message is partial.
        tools_invoked: Names of the tools dispatched, in order.
        wall_time: Seconds the turn took.
    """
    session_id: str
    state: TurnState = TurnState.IDLE
    text: str = ""
    conditions: List[str] = field(default_factory=list)
    messages: List[Message] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)
    iterations: int = 0
    partial: bool = False
    tools_invoked: List[str] = field(default_factory=list)
    wall_time: float = 0.0

    @property
    def ok(self) -> bool:
        return self.state == TurnState.IDLE and not self.conditions


@dataclass
class SessionHandle:
    """Returned by ``SessionManager.start``: the new session id and its first turn."""
    session_id: str
    outcome: TurnOutcome


def new_session_id() -> str:
    return uuid.uuid4().hex


class Session:
    """Conversation state. Mutated only through the SessionManager."""

    def __init__(
        self,
        session_id: Optional[str] = None,
        model: Optional[str] = None,
        agent: Optional[str] = None,
        scratch: Optional[Dict[str, Any]] = None,
        lifecycle: SessionLifecycle = SessionLifecycle.CREATED,
        created_at: Optional[str] = None,
        updated_at: Optional[str] = None,
    ):
        self.session_id = session_id or new_session_id()
        self.model = model
        self.agent = agent
        self.scratch: Dict[str, Any] = scratch if scratch is not None else {}
        self.lifecycle = SessionLifecycle(lifecycle)
        self.created_at = created_at or utc_now()
        self.updated_at = updated_at or self.created_at
        self._messages: List[Message] = []
        self._open_calls: Set[str] = set()
        self._answered_calls: Set[str] = set()

        # Turn bookkeeping
        self.turn_lock = threading.Lock()
        self.turn_state = TurnState.IDLE
        self.cancel_token: Optional[CancelToken] = None

    @property
    def messages(self) -> List[Message]:
        return list(self._messages)

    @property
    def archived(self) -> bool:
        return self.lifecycle == SessionLifecycle.ARCHIVED

    @property
    def busy(self) -> bool:
        return self.turn_lock.locked()

    def check_mutable(self) -> None:
        if self.archived:
            raise SessionArchivedError(self.session_id)

    def append(self, message: Message) -> Message:
        """Append ``message`` after checking the tool-call pairing rule.

        Raises:
            SessionArchivedError: The session is archived.
            HistoryInvariantError: A result has no open call, or a call id repeats.
        """
        self.check_mutable()

        new_calls = set()
        for call in message.tool_calls:
            if call.call_id in self._open_calls or call.call_id in self._answered_calls \
                    or call.call_id in new_calls:
                raise HistoryInvariantError(f"Duplicate tool call id '{call.call_id}'")
            new_calls.add(call.call_id)

        answered = set()
        for result in message.tool_results:
            if result.call_id not in self._open_calls or result.call_id in answered:
                raise HistoryInvariantError(
                    f"Tool result '{result.call_id}' does not answer an open tool call"
                )
            answered.add(result.call_id)

        self._messages.append(message)
        self._open_calls |= new_calls
        self._open_calls -= answered
        self._answered_calls |= answered
        self.updated_at = message.timestamp
        return message

    def extend(self, messages: List[Message]) -> None:
        for message in messages:
            self.append(message)

    @property
    def last_message_id(self) -> Optional[str]:
        return self._messages[-1].message_id if self._messages else None

    def __repr__(self) -> str:
        return (f"Session({self.session_id!r}, lifecycle={self.lifecycle.value}, "
                f"messages={len(self._messages)})")
