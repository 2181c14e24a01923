"""Session manager: the per-session turn loop.

A turn takes one user prompt to completion:

    on_prompt hooks -> user message -> provider stream -> parser
        -> on_response hooks -> assistant message
        -> (tool dispatch -> tool message -> provider stream ...)*
        -> on_complete hooks -> idle

Every appended message is persisted immediately. Conditions (hook errors,
cancellation, tool failures, provider errors, ...) are recorded on the
``TurnOutcome`` and as a system message in history.

Each session admits one turn at a time; a second prompt raises
``SessionBusyError`` without touching history.
"""

import logging
import queue
import threading
import time
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, TYPE_CHECKING

from .errors import (
    CANCELLED,
    FATAL_CONDITIONS,
    HISTORY_INVARIANT,
    HistoryInvariantError,
    HookVeto,
    MALFORMED_COMPLETION,
    MalformedCompletionError,
    PERSISTENCE_ERROR,
    PLUGIN_HOOK_ERROR,
    PROMPT_VETOED,
    PROVIDER_ERROR,
    PersistenceError,
    ProviderError,
    SessionBusyError,
    SessionNotFoundError,
    TOOL_LOOP_EXCEEDED,
    ToolLoopExceededError,
)
from .events import (
    ConditionEvent,
    Event,
    SegmentAppendedEvent,
    SessionIdleEvent,
    ToolCompletedEvent,
    ToolStartedEvent,
)
from .plugins.base import HookPoint
from .plugins.hooks import HookContext
from .plugins.model_provider.base import StreamOptions
from .plugins.model_provider.types import (
    CancelToken,
    CodeBlockSegment,
    Message,
    Role,
    Segment,
    TextSegment,
    ToolCallSegment,
    ToolResultSegment,
)
from .plugins.session.base import SessionInfo
from .plugins.session.serializer import (
    deserialize_session,
    serialize_segment,
    serialize_session,
)
from .response_parser import ResponseParser
from .session import (
    Session,
    SessionHandle,
    SessionLifecycle,
    TurnOutcome,
    TurnState,
)
from .trace import trace

if TYPE_CHECKING:
    from .runtime import ConductorRuntime

logger = logging.getLogger(__name__)

EventCallback = Callable[[Event], None]

_END_OF_TURN = object()


class _Turn:
    """Bookkeeping for one running turn."""

    def __init__(self, session: Session, emit: Optional[EventCallback]):
        self.session = session
        self.emit = emit
        self.started = time.monotonic()
        self.outcome = TurnOutcome(session_id=session.session_id)
        self.context = HookContext(
            session_id=session.session_id,
            scratch=session.scratch,
            model=session.model,
            agent=session.agent,
        )
        self.cancel_token = session.cancel_token
        self.persistence_reported = False
        self.error: Optional[BaseException] = None


def _ends_with_text(segments: List[Segment]) -> bool:
    """True when prose or code follows the last tool call."""
    for segment in reversed(segments):
        if isinstance(segment, ToolCallSegment):
            return False
        if isinstance(segment, TextSegment) and segment.text.strip():
            return True
        if isinstance(segment, CodeBlockSegment):
            return True
    return False


def _without_tool_calls(segments: List[Segment]) -> List[Segment]:
    return [s for s in segments if not isinstance(s, ToolCallSegment)]


class SessionManager:
    """Runs turns for any number of sessions.

    Usage:
        manager = runtime.create_session_manager()
        handle = manager.start("Summarise README.md")
        outcome = manager.continue_session(handle.session_id, "Now shorter")

        for event in manager.prompt("Hello", session_id=handle.session_id):
            render(event)
    """

    def __init__(self, runtime: 'ConductorRuntime'):
        self._runtime = runtime
        self._sessions: Dict[str, Session] = {}
        self._lock = threading.RLock()

    # ==================== Session lookup ====================

    def _trace(self, session: Session, msg: str) -> None:
        trace("SessionManager", f"[{session.session_id[:8]}] {msg}")

    def get_session(self, session_id: str) -> Session:
        """Return the session, loading it from the store if needed.

        Raises:
            SessionNotFoundError: Unknown in memory and in the store.
        """
        with self._lock:
            session = self._sessions.get(session_id)
            if session is not None:
                return session
            snapshot = self._runtime.store.load(session_id)
            if snapshot is None:
                raise SessionNotFoundError(session_id)
            session = deserialize_session(snapshot)
            self._sessions[session_id] = session
            return session

    def _exists(self, session_id: str) -> bool:
        with self._lock:
            if session_id in self._sessions:
                return True
        return self._runtime.store.load(session_id) is not None

    def _check_agent(self, agent: Optional[str]) -> None:
        if agent is not None and self._runtime.config.get_agent(agent) is None:
            raise ValueError(f"Unknown agent '{agent}'. Configured: {sorted(self._runtime.config.agents)}")

    def _create_session(self, session_id: Optional[str], model: Optional[str], agent: Optional[str]) -> Session:
        if session_id is not None and self._exists(session_id):
            raise ValueError(f"Session '{session_id}' already exists")
        self._check_agent(agent)

        session = Session(session_id=session_id, model=model, agent=agent)
        with self._lock:
            self._sessions[session.session_id] = session

        context = HookContext(session_id=session.session_id, scratch=session.scratch,
                              model=model, agent=agent)
        self._runtime.pipeline.run(HookPoint.ON_SESSION_START, session.session_id, context)
        for error in context.errors:
            self._note(session, PLUGIN_HOOK_ERROR, str(error))
        try:
            self._save(session)
        except Exception as exc:
            if not isinstance(exc, PersistenceError):
                exc = PersistenceError(session.session_id, f"{type(exc).__name__}: {exc}")
            logger.warning("%s", exc)
            self._note(session, PERSISTENCE_ERROR, str(exc))
        logger.info("Created session %s", session.session_id)
        return session

    def _begin_turn(self, session: Session) -> None:
        """Claim the session for a turn. Eager: raises before any work is done."""
        session.check_mutable()
        if not session.turn_lock.acquire(blocking=False):
            raise SessionBusyError(session.session_id)
        session.cancel_token = CancelToken()
        session.turn_state = TurnState.IDLE

    # ==================== Public API ====================

    def start(
        self,
        prompt: str,
        session_id: Optional[str] = None,
        model: Optional[str] = None,
        agent: Optional[str] = None,
    ) -> SessionHandle:
        """Create a session and run its first turn."""
        session = self._create_session(session_id, model, agent)
        self._begin_turn(session)
        outcome = self._run_turn(session, prompt, emit=None)
        return SessionHandle(session_id=session.session_id, outcome=outcome)

    def continue_session(self, session_id: str, prompt: str) -> TurnOutcome:
        """Run another turn in an existing session.

        Raises:
            SessionNotFoundError: Unknown session.
            SessionArchivedError: The session is archived.
            SessionBusyError: A turn is already in flight.
        """
        session = self.get_session(session_id)
        self._begin_turn(session)
        return self._run_turn(session, prompt, emit=None)

    def prompt(
        self,
        text: str,
        session_id: Optional[str] = None,
        model: Optional[str] = None,
        agent: Optional[str] = None,
    ) -> Iterator[Event]:
        """Run a turn on a worker thread and return its events lazily.

        The session is resolved (or created) and claimed before this returns,
        so ``SessionBusyError`` is raised here rather than on first iteration.
        The last event is always ``SessionIdleEvent``. For an existing session,
        ``model`` and ``agent`` replace the session's selection from this turn on.
        """
        if session_id is not None and self._exists(session_id):
            session = self.get_session(session_id)
            self._check_agent(agent)
            self._begin_turn(session)
            if model is not None:
                session.model = model
            if agent is not None:
                session.agent = agent
        else:
            session = self._create_session(session_id, model, agent)
            self._begin_turn(session)

        events: "queue.Queue[Any]" = queue.Queue()

        def worker():
            try:
                self._run_turn(session, text, emit=events.put)
            except Exception as exc:
                logger.exception("Turn in session %s crashed", session.session_id)
                events.put(ConditionEvent(session_id=session.session_id, condition="error",
                                          message=str(exc), fatal=True))
            finally:
                events.put(_END_OF_TURN)

        thread = threading.Thread(target=worker, daemon=True,
                                  name=f"conductor-turn-{session.session_id[:8]}")
        thread.start()
        return self._drain(events)

    @staticmethod
    def _drain(events: "queue.Queue[Any]") -> Iterator[Event]:
        while True:
            event = events.get()
            if event is _END_OF_TURN:
                return
            yield event

    def cancel(self, session_id: str) -> bool:
        """Cancel the in-flight turn. Returns False when nothing was running."""
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None or not session.busy or session.cancel_token is None:
            return False
        self._trace(session, "cancel requested")
        session.cancel_token.cancel()
        return True

    def export(self, session_id: str) -> Dict[str, Any]:
        """Serialized snapshot of the session."""
        return serialize_session(self.get_session(session_id))

    def import_snapshot(self, snapshot: Dict[str, Any]) -> str:
        """Load a snapshot, replacing any session with the same id.

        Raises:
            SnapshotError: The snapshot is invalid.
            SessionBusyError: The session being replaced has a turn in flight.
        """
        session = deserialize_session(snapshot)
        with self._lock:
            existing = self._sessions.get(session.session_id)
            if existing is not None and existing.busy:
                raise SessionBusyError(session.session_id)
            self._sessions[session.session_id] = session
        try:
            self._runtime.store.save(serialize_session(session))
        except PersistenceError as exc:
            logger.warning("Imported session %s not persisted: %s", session.session_id, exc)
        return session.session_id

    def archive(self, session_id: str) -> None:
        """Freeze the session. Archived sessions reject every mutation."""
        session = self.get_session(session_id)
        if session.busy:
            raise SessionBusyError(session_id)
        session.check_mutable()
        self._end_session(session, record=True)
        session.lifecycle = SessionLifecycle.ARCHIVED
        self._save(session)

    def delete_session(self, session_id: str) -> bool:
        """Forget the session in memory and in the store."""
        with self._lock:
            session = self._sessions.get(session_id)
            if session is not None and session.busy:
                raise SessionBusyError(session_id)
            self._sessions.pop(session_id, None)
        if session is not None and not session.archived:
            self._end_session(session)
        deleted = self._runtime.store.delete(session_id)
        return deleted or session is not None

    def list_sessions(self) -> List[SessionInfo]:
        """Stored and in-memory sessions, most recently updated first."""
        infos = {info.session_id: info for info in self._runtime.store.list()}
        with self._lock:
            sessions = list(self._sessions.values())
        for session in sessions:
            infos[session.session_id] = SessionInfo.from_snapshot(serialize_session(session))
        return sorted(infos.values(), key=lambda i: i.updated_at or "", reverse=True)

    def close(self) -> None:
        """Cancel in-flight turns and drop the in-memory sessions."""
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            if session.busy and session.cancel_token is not None:
                session.cancel_token.cancel()

    def _end_session(self, session: Session, record: bool = False) -> None:
        """Run on_session_end hooks; ``record`` keeps their errors in history."""
        context = HookContext(session_id=session.session_id, scratch=session.scratch,
                              model=session.model, agent=session.agent)
        self._runtime.pipeline.run(HookPoint.ON_SESSION_END, session.session_id, context)
        for error in context.errors:
            if record:
                self._note(session, PLUGIN_HOOK_ERROR, str(error))
            else:
                logger.warning("on_session_end: %s", error)

    def _note(self, session: Session, condition: str, message: str) -> None:
        """Record a condition raised outside any turn as a system message."""
        self._trace(session, f"condition {condition}: {message}")
        session.append(Message(role=Role.SYSTEM, segments=(TextSegment(f"[{condition}] {message}"),),
                               parent_id=session.last_message_id))

    # ==================== Persistence ====================

    def _save(self, session: Session) -> None:
        self._runtime.store.save(serialize_session(session))

    def _persist(self, turn: _Turn) -> None:
        try:
            self._save(turn.session)
        except Exception as exc:
            if not isinstance(exc, PersistenceError):
                exc = PersistenceError(turn.session.session_id, f"{type(exc).__name__}: {exc}")
            logger.warning("%s", exc)
            if not turn.persistence_reported:
                turn.persistence_reported = True
                self._record_condition(turn, PERSISTENCE_ERROR, str(exc))

    # ==================== History ====================

    def _append(self, turn: _Turn, message: Message) -> Message:
        turn.session.append(message)
        turn.outcome.messages.append(message)
        if turn.emit is not None:
            for index, segment in enumerate(message.segments):
                turn.emit(SegmentAppendedEvent(
                    session_id=turn.session.session_id,
                    message_id=message.message_id,
                    role=message.role.value,
                    index=index,
                    segment=serialize_segment(segment),
                    partial=message.partial,
                ))
        self._persist(turn)
        return message

    def _new_message(self, turn: _Turn, role: Role, segments: List[Segment], partial: bool = False) -> Message:
        return Message(role=role, segments=tuple(segments),
                       parent_id=turn.session.last_message_id, partial=partial)

    def _record_condition(self, turn: _Turn, condition: str, message: str) -> None:
        """Add ``condition`` to the outcome and a system message to history."""
        fatal = condition in FATAL_CONDITIONS
        turn.outcome.conditions.append(condition)
        self._trace(turn.session, f"condition {condition}: {message}")
        if turn.emit is not None:
            turn.emit(ConditionEvent(session_id=turn.session.session_id,
                                     condition=condition, message=message, fatal=fatal))
        text = f"[{condition}] {message}"
        self._append(turn, self._new_message(turn, Role.SYSTEM, [TextSegment(text)]))

    def _flush_hook_errors(self, turn: _Turn) -> None:
        errors, turn.context.errors = turn.context.errors, []
        for error in errors:
            self._record_condition(turn, PLUGIN_HOOK_ERROR, str(error))

    # ==================== Turn loop ====================

    def _resolve_request(self, session: Session) -> Tuple[Any, str, List[Any], StreamOptions]:
        config = self._runtime.config
        agent = config.get_agent(session.agent)
        model = session.model or (agent.model if agent else None)
        adapter, model_name = self._runtime.resolve_model(model)

        tools = self._runtime.dispatcher.list_tools(allowed=agent.tools if agent else None)

        instructions = []
        if agent and agent.system_instruction:
            instructions.append(agent.system_instruction.strip())
        plugin_instructions = self._runtime.registry.get_system_instructions()
        if plugin_instructions:
            instructions.append(plugin_instructions)
        options = StreamOptions(system_instruction="\n\n".join(instructions) or None)
        return adapter, model_name, tools, options

    def _run_turn(self, session: Session, prompt: str, emit: Optional[EventCallback]) -> TurnOutcome:
        """Run one turn on a session already claimed by ``_begin_turn``."""
        turn = _Turn(session, emit)
        session.lifecycle = SessionLifecycle.ACTIVE
        self._trace(session, f"turn start prompt_len={len(prompt)}")
        try:
            try:
                self._turn_loop(turn, prompt)
            finally:
                self._finish_turn(turn)
        finally:
            session.cancel_token = None
            session.turn_lock.release()
        return turn.outcome

    def _turn_loop(self, turn: _Turn, prompt: str) -> None:
        session = turn.session
        outcome = turn.outcome
        pipeline = self._runtime.pipeline
        token = turn.cancel_token

        try:
            prompt = pipeline.run(HookPoint.ON_PROMPT, prompt, turn.context)
        except HookVeto as exc:
            self._flush_hook_errors(turn)
            self._record_condition(turn, PROMPT_VETOED, f"Prompt rejected: {exc.reason}")
            outcome.state = TurnState.IDLE
            return
        self._flush_hook_errors(turn)

        self._append(turn, self._new_message(turn, Role.USER, [TextSegment(prompt)]))

        try:
            adapter, model_name, tools, options = self._resolve_request(session)
        except (ValueError, ProviderError) as exc:
            self._fail(turn, PROVIDER_ERROR, str(exc), exc)
            return

        max_iterations = self._runtime.config.policy.max_tool_iterations
        tool_rounds = 0

        while True:
            if token.is_cancelled:
                self._record_condition(turn, CANCELLED, "Turn cancelled")
                outcome.state = TurnState.CANCELLED
                return

            session.turn_state = TurnState.AWAITING_PROVIDER
            outcome.iterations += 1
            parser = ResponseParser()
            segments: List[Segment] = []
            chunks = adapter.stream(model_name, session.messages, tools, options, token)
            try:
                session.turn_state = TurnState.PARSING_RESPONSE
                for segment in parser.parse(chunks):
                    segments.append(segment)
            except MalformedCompletionError as exc:
                outcome.usage.add(parser.usage)
                kept = _without_tool_calls(segments)
                if kept:
                    self._append(turn, self._new_message(turn, Role.ASSISTANT, kept, partial=True))
                self._record_condition(turn, MALFORMED_COMPLETION, exc.message)
                outcome.partial = bool(kept)
                outcome.state = TurnState.IDLE
                return
            except ProviderError as exc:
                kept = _without_tool_calls(segments)
                if kept:
                    self._append(turn, self._new_message(turn, Role.ASSISTANT, kept, partial=True))
                self._fail(turn, PROVIDER_ERROR, exc.message, exc)
                return
            finally:
                chunks.close()

            outcome.usage.add(parser.usage)

            if parser.partial:
                kept = _without_tool_calls(segments)
                if kept:
                    self._append(turn, self._new_message(turn, Role.ASSISTANT, kept, partial=True))
                    outcome.partial = True
                self._record_condition(turn, CANCELLED, "Generation cancelled")
                outcome.state = TurnState.CANCELLED
                return

            segments = list(pipeline.run(HookPoint.ON_RESPONSE, segments, turn.context))
            self._flush_hook_errors(turn)

            if not segments:
                outcome.state = TurnState.IDLE
                return
            try:
                message = self._append(turn, self._new_message(turn, Role.ASSISTANT, segments))
            except HistoryInvariantError as exc:
                self._fail(turn, HISTORY_INVARIANT, str(exc), exc)
                return

            calls = message.tool_calls
            if not calls or _ends_with_text(segments):
                outcome.state = TurnState.IDLE
                return

            if tool_rounds >= max_iterations:
                exc = ToolLoopExceededError(max_iterations)
                self._fail(turn, TOOL_LOOP_EXCEEDED, exc.message, exc)
                return
            tool_rounds += 1

            session.turn_state = TurnState.DISPATCHING_TOOLS
            results = self._dispatch(turn, calls)
            self._append(turn, self._new_message(turn, Role.TOOL, results))
            for result in results:
                if not result.success and result.condition != CANCELLED:
                    error = result.payload.get("error") if isinstance(result.payload, dict) else result.payload
                    self._record_condition(turn, result.condition,
                                           f"Tool '{result.name}' failed: {error}")

    def _dispatch(self, turn: _Turn, calls: List[ToolCallSegment]) -> List[ToolResultSegment]:
        session_id = turn.session.session_id
        turn.outcome.tools_invoked.extend(call.name for call in calls)

        on_start = on_complete = None
        if turn.emit is not None:
            emit = turn.emit

            def on_start(call: ToolCallSegment) -> None:
                emit(ToolStartedEvent(session_id=session_id, call_id=call.call_id,
                                      tool_name=call.name, arguments=call.arguments))

            def on_complete(call: ToolCallSegment, result: ToolResultSegment) -> None:
                emit(ToolCompletedEvent(session_id=session_id, call_id=call.call_id,
                                        tool_name=call.name, success=result.success,
                                        condition=result.condition))

        self._trace(turn.session, f"dispatching {[c.name for c in calls]}")
        return self._runtime.dispatcher.dispatch_all(
            calls, turn.cancel_token, on_start=on_start, on_complete=on_complete
        )

    def _fail(self, turn: _Turn, condition: str, message: str, exc: BaseException) -> None:
        logger.warning("Turn in session %s failed: %s", turn.session.session_id, message)
        turn.error = exc
        self._record_condition(turn, condition, message)
        turn.outcome.state = TurnState.FAILED

    def _finish_turn(self, turn: _Turn) -> None:
        session = turn.session
        outcome = turn.outcome
        pipeline = self._runtime.pipeline

        if outcome.state == TurnState.IDLE and turn.cancel_token.is_cancelled \
                and CANCELLED not in outcome.conditions:
            # Cancelled after the last provider call completed
            self._record_condition(turn, CANCELLED, "Turn cancelled")
            outcome.state = TurnState.CANCELLED

        for message in reversed(outcome.messages):
            if message.role == Role.ASSISTANT:
                outcome.text = message.text
                break

        if turn.error is not None:
            pipeline.run(HookPoint.ON_ERROR, turn.error, turn.context)
        pipeline.run(HookPoint.ON_COMPLETE, outcome, turn.context)
        self._flush_hook_errors(turn)

        session.turn_state = outcome.state
        if not session.archived:
            session.lifecycle = SessionLifecycle.IDLE
        self._persist(turn)

        outcome.wall_time = time.monotonic() - turn.started
        self._trace(session, f"turn end state={outcome.state.value} iterations={outcome.iterations} "
                             f"conditions={outcome.conditions}")
        if turn.emit is not None:
            turn.emit(SessionIdleEvent(
                session_id=session.session_id,
                state=outcome.state.value,
                text=outcome.text,
                conditions=list(outcome.conditions),
                iterations=outcome.iterations,
                prompt_tokens=outcome.usage.prompt_tokens,
                output_tokens=outcome.usage.output_tokens,
                tools_invoked=list(outcome.tools_invoked),
                wall_time=outcome.wall_time,
            ))
