"""Tests for Session history invariants and CancelToken."""

import threading

import pytest

from ..errors import HistoryInvariantError, SessionArchivedError
from ..plugins.model_provider.types import (
    CancelledException,
    CancelToken,
    Message,
    Role,
    ToolCallSegment,
    ToolResultSegment,
)
from ..session import Session, SessionLifecycle, TurnOutcome, TurnState


def _calls(*call_ids):
    return Message(role=Role.ASSISTANT,
                   segments=tuple(ToolCallSegment(name="t", arguments={}, call_id=c) for c in call_ids))


def _results(*call_ids):
    return Message(role=Role.TOOL,
                   segments=tuple(ToolResultSegment(call_id=c, payload=None, success=True) for c in call_ids))


class TestSessionHistory:

    def test_new_session_defaults(self):
        session = Session()

        assert len(session.session_id) == 32
        assert session.lifecycle == SessionLifecycle.CREATED
        assert session.messages == []
        assert session.last_message_id is None
        assert session.busy is False

    def test_messages_returns_a_copy(self):
        session = Session()
        session.append(Message.from_text("user", "hi"))

        session.messages.clear()

        assert len(session.messages) == 1

    def test_append_updates_timestamp(self):
        session = Session()
        message = Message.from_text("user", "hi")

        session.append(message)

        assert session.updated_at == message.timestamp
        assert session.last_message_id == message.message_id

    def test_results_answer_open_calls(self):
        session = Session()
        session.extend([_calls("a", "b"), _results("b"), _results("a")])

        assert len(session.messages) == 3

    def test_result_without_call(self):
        session = Session()

        with pytest.raises(HistoryInvariantError):
            session.append(_results("ghost"))
        assert session.messages == []

    def test_result_cannot_answer_twice(self):
        session = Session()
        session.extend([_calls("a"), _results("a")])

        with pytest.raises(HistoryInvariantError):
            session.append(_results("a"))

    def test_duplicate_result_in_one_message(self):
        session = Session()
        session.append(_calls("a"))

        with pytest.raises(HistoryInvariantError):
            session.append(_results("a", "a"))

    def test_call_id_cannot_repeat(self):
        session = Session()
        session.extend([_calls("a"), _results("a")])

        with pytest.raises(HistoryInvariantError, match="Duplicate"):
            session.append(_calls("a"))

    def test_archived_session_is_frozen(self):
        session = Session()
        session.lifecycle = SessionLifecycle.ARCHIVED

        with pytest.raises(SessionArchivedError):
            session.append(Message.from_text("user", "hi"))


class TestTurnOutcome:

    def test_ok_requires_idle_without_conditions(self):
        assert TurnOutcome(session_id="s").ok is True
        assert TurnOutcome(session_id="s", conditions=["cancelled"]).ok is False
        assert TurnOutcome(session_id="s", state=TurnState.FAILED).ok is False


class TestCancelToken:

    def test_cancel_is_idempotent_and_runs_callbacks_once(self):
        token = CancelToken()
        calls = []
        token.on_cancel(lambda: calls.append(1))

        token.cancel()
        token.cancel()

        assert token.is_cancelled
        assert calls == [1]

    def test_late_callback_runs_immediately(self):
        token = CancelToken()
        token.cancel()
        calls = []

        token.on_cancel(lambda: calls.append(1))

        assert calls == [1]

    def test_failing_callback_is_contained(self):
        token = CancelToken()
        calls = []
        token.on_cancel(lambda: 1 / 0)
        token.on_cancel(lambda: calls.append(1))

        token.cancel()

        assert calls == [1]

    def test_wait_wakes_on_cancel(self):
        token = CancelToken()
        threading.Timer(0.05, token.cancel).start()

        assert token.wait(5) is True

    def test_wait_times_out(self):
        assert CancelToken().wait(0.01) is False

    def test_raise_if_cancelled(self):
        token = CancelToken()
        token.raise_if_cancelled()
        token.cancel()

        with pytest.raises(CancelledException):
            token.raise_if_cancelled()
