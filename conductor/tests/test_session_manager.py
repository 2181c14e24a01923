"""Tests for SessionManager - the per-session turn loop."""

import json
import uuid

import pytest
from unittest.mock import MagicMock

from ..config import AgentProfile
from ..errors import (
    CANCELLED,
    HISTORY_INVARIANT,
    INVALID_ARGUMENTS,
    MALFORMED_COMPLETION,
    PERSISTENCE_ERROR,
    PLUGIN_HOOK_ERROR,
    PROMPT_VETOED,
    PROVIDER_ERROR,
    TOOL_LOOP_EXCEEDED,
    HookVeto,
    PersistenceError,
    ProviderAuthError,
    ProviderTransientError,
    SessionArchivedError,
    SessionBusyError,
    SessionNotFoundError,
)
from ..events import ConditionEvent, SegmentAppendedEvent, SessionIdleEvent, ToolCompletedEvent, ToolStartedEvent
from ..plugins.model_provider.types import (
    ProviderCapabilities,
    Role,
    StreamChunk,
    TextSegment,
    TokenUsage,
    ToolCallSegment,
)
from ..session import SessionLifecycle, TurnState
from .fakes import (
    BlockingStream,
    RecordingPlugin,
    ScriptedProvider,
    make_runtime,
    text_response,
    tool_response,
)


def _messages(manager, session_id, role=None):
    messages = manager.get_session(session_id).messages
    if role is not None:
        messages = [m for m in messages if m.role == role]
    return messages


def _system_texts(manager, session_id):
    return [m.text for m in _messages(manager, session_id, Role.SYSTEM)]


def _endless_tool_calls(cancel_token):
    yield StreamChunk.tool_call(f"call_{uuid.uuid4().hex[:8]}", "search", {"query": "again"})
    yield StreamChunk.done()


class TestSimpleTurn:

    def test_text_response_completes_idle(self):
        provider = ScriptedProvider([text_response("Hello there.", TokenUsage(10, 3, 13))])
        manager = make_runtime(provider).create_session_manager()

        handle = manager.start("Hi")

        outcome = handle.outcome
        assert outcome.state == TurnState.IDLE
        assert outcome.text == "Hello there."
        assert outcome.conditions == []
        assert outcome.iterations == 1
        assert outcome.usage.total_tokens == 13
        roles = [m.role for m in _messages(manager, handle.session_id)]
        assert roles == [Role.USER, Role.ASSISTANT]

    def test_session_returns_to_idle_lifecycle(self):
        provider = ScriptedProvider([text_response("ok")])
        manager = make_runtime(provider).create_session_manager()

        handle = manager.start("Hi")

        assert manager.get_session(handle.session_id).lifecycle == SessionLifecycle.IDLE

    def test_messages_are_chained_by_parent_id(self):
        provider = ScriptedProvider([text_response("ok")])
        manager = make_runtime(provider).create_session_manager()

        handle = manager.start("Hi")

        user, assistant = _messages(manager, handle.session_id)
        assert user.parent_id is None
        assert assistant.parent_id == user.message_id

    def test_continue_session_sends_full_history(self):
        provider = ScriptedProvider([text_response("first"), text_response("second")])
        manager = make_runtime(provider).create_session_manager()
        handle = manager.start("one")

        outcome = manager.continue_session(handle.session_id, "two")

        assert outcome.text == "second"
        sent = provider.calls[1]["messages"]
        assert [m.text for m in sent] == ["one", "first", "two"]

    def test_start_with_existing_id_raises(self):
        provider = ScriptedProvider([text_response("ok")])
        manager = make_runtime(provider).create_session_manager()
        manager.start("Hi", session_id="fixed")

        with pytest.raises(ValueError, match="already exists"):
            manager.start("Hi", session_id="fixed")

    def test_continue_unknown_session_raises(self):
        manager = make_runtime(ScriptedProvider([text_response("ok")])).create_session_manager()

        with pytest.raises(SessionNotFoundError):
            manager.continue_session("missing", "Hi")


class TestToolLoop:

    def test_tool_results_pair_one_to_one_with_calls(self):
        provider = ScriptedProvider([
            tool_response(("c1", "search", {"query": "a"}), ("c2", "search", {"query": "b"})),
            text_response("Found both."),
        ])
        runtime = make_runtime(provider)
        plugin = RecordingPlugin("finder", result={"hits": 1})
        runtime.register_plugin(plugin)
        manager = runtime.create_session_manager()

        handle = manager.start("search twice")

        messages = _messages(manager, handle.session_id)
        calls = [c for m in messages for c in m.tool_calls]
        results = [r for m in messages for r in m.tool_results]
        assert len(results) <= len(calls)
        assert sorted(r.call_id for r in results) == sorted(c.call_id for c in calls) == ["c1", "c2"]
        assert handle.outcome.text == "Found both."
        assert handle.outcome.tools_invoked == ["search", "search"]
        assert len(plugin.invocations) == 2

    def test_tool_message_is_sent_back_to_provider(self):
        provider = ScriptedProvider([
            tool_response(("c1", "search", {"query": "a"})),
            text_response("done"),
        ])
        runtime = make_runtime(provider)
        runtime.register_plugin(RecordingPlugin("finder", result="hit"))
        manager = runtime.create_session_manager()

        manager.start("go")

        second = provider.calls[1]["messages"]
        assert second[-1].role == Role.TOOL
        assert second[-1].tool_results[0].payload == "hit"

    def test_tools_are_offered_to_provider(self):
        provider = ScriptedProvider([text_response("ok")])
        runtime = make_runtime(provider)
        runtime.register_plugin(RecordingPlugin("finder"))
        manager = runtime.create_session_manager()

        manager.start("Hi")

        assert set(provider.calls[0]["tools"]) == {"list_tools", "describe_tool", "search"}

    def test_provider_without_tool_support_gets_no_tools(self):
        provider = ScriptedProvider([text_response("ok")],
                                    capabilities=ProviderCapabilities(tool_calls=False))
        runtime = make_runtime(provider)
        runtime.register_plugin(RecordingPlugin("finder"))
        manager = runtime.create_session_manager()

        manager.start("Hi")

        assert provider.calls[0]["tools"] == []

    def test_text_after_last_tool_call_is_terminal(self):
        provider = ScriptedProvider([
            tool_response(("c1", "search", {"query": "a"}))[:-1]
            + [StreamChunk.text_chunk("\nThat is all."), StreamChunk.done()],
        ])
        runtime = make_runtime(provider)
        plugin = RecordingPlugin("finder")
        runtime.register_plugin(plugin)
        manager = runtime.create_session_manager()

        handle = manager.start("go")

        assert handle.outcome.state == TurnState.IDLE
        assert plugin.invocations == []
        assert len(provider.calls) == 1

    def test_invalid_arguments_are_fed_back_and_recorded(self):
        provider = ScriptedProvider([
            tool_response(("c1", "search", {"limit": 3})),
            text_response("Sorry."),
        ])
        runtime = make_runtime(provider)
        plugin = RecordingPlugin("finder")
        runtime.register_plugin(plugin)
        manager = runtime.create_session_manager()

        handle = manager.start("go")

        result = _messages(manager, handle.session_id, Role.TOOL)[0].tool_results[0]
        assert result.success is False
        assert result.condition == INVALID_ARGUMENTS
        assert plugin.invocations == []
        assert INVALID_ARGUMENTS in handle.outcome.conditions
        assert handle.outcome.state == TurnState.IDLE
        assert any("search" in text for text in _system_texts(manager, handle.session_id))

    def test_tool_loop_beyond_limit_fails(self):
        provider = ScriptedProvider([_endless_tool_calls])
        runtime = make_runtime(provider, max_tool_iterations=2)
        runtime.register_plugin(RecordingPlugin("finder"))
        manager = runtime.create_session_manager()

        handle = manager.start("loop forever")

        assert handle.outcome.state == TurnState.FAILED
        assert TOOL_LOOP_EXCEEDED in handle.outcome.conditions
        assert len(provider.calls) == 3
        texts = _system_texts(manager, handle.session_id)
        assert any(TOOL_LOOP_EXCEEDED in t and "2" in t for t in texts)

    def test_session_usable_after_failed_turn(self):
        provider = ScriptedProvider([_endless_tool_calls])
        runtime = make_runtime(provider, max_tool_iterations=1)
        runtime.register_plugin(RecordingPlugin("finder"))
        manager = runtime.create_session_manager()
        handle = manager.start("loop")
        provider.steps = [text_response("recovered")]
        provider.calls = []

        outcome = manager.continue_session(handle.session_id, "stop")

        assert outcome.state == TurnState.IDLE
        assert outcome.text == "recovered"

    def test_reused_call_id_fails_the_turn(self):
        provider = ScriptedProvider([
            tool_response(("c1", "search", {"query": "a"})),
            text_response("done"),
            tool_response(("c1", "search", {"query": "b"})),
        ])
        runtime = make_runtime(provider)
        runtime.register_plugin(RecordingPlugin("finder"))
        manager = runtime.create_session_manager()
        handle = manager.start("search")

        outcome = manager.continue_session(handle.session_id, "again")

        assert outcome.state == TurnState.FAILED
        assert HISTORY_INVARIANT in outcome.conditions
        assert any("Duplicate tool call id 'c1'" in t for t in _system_texts(manager, handle.session_id))
        assert manager.get_session(handle.session_id).busy is False

    def test_later_plugin_wins_shadowed_tool(self):
        provider = ScriptedProvider([
            tool_response(("c1", "search", {"query": "x"})),
            text_response("done"),
        ])
        runtime = make_runtime(provider)
        first = RecordingPlugin("first", result="from first")
        second = RecordingPlugin("second", result="from second")
        runtime.register_plugin(first)
        runtime.register_plugin(second)
        manager = runtime.create_session_manager()

        handle = manager.start("search")

        assert first.invocations == []
        assert second.invocations == [{"query": "x"}]
        assert any("search" in w for w in runtime.dispatcher.shadow_warnings)
        result = _messages(manager, handle.session_id, Role.TOOL)[0].tool_results[0]
        assert result.payload == "from second"


class TestProviderFailures:

    def test_retryable_failures_then_success_yield_one_message(self):
        transient = ProviderTransientError("overloaded", provider="scripted", status_code=529)
        provider = ScriptedProvider([transient, transient, text_response("finally")])
        runtime = make_runtime(provider)
        manager = runtime.create_session_manager()

        handle = manager.start("Hi")

        assert handle.outcome.state == TurnState.IDLE
        assert handle.outcome.text == "finally"
        assert len(provider.calls) == 3
        assert len(_messages(manager, handle.session_id, Role.ASSISTANT)) == 1
        assert runtime.get_adapter("scripted").last_stats.attempts == 3

    def test_retries_exhausted_fails_turn(self):
        transient = ProviderTransientError("overloaded", provider="scripted", status_code=503)
        provider = ScriptedProvider([transient])
        manager = make_runtime(provider).create_session_manager()

        handle = manager.start("Hi")

        assert handle.outcome.state == TurnState.FAILED
        assert PROVIDER_ERROR in handle.outcome.conditions
        assert len(provider.calls) == 3
        assert _messages(manager, handle.session_id, Role.ASSISTANT) == []
        assert any(PROVIDER_ERROR in t for t in _system_texts(manager, handle.session_id))

    def test_auth_error_is_not_retried(self):
        provider = ScriptedProvider([ProviderAuthError("bad key", provider="scripted")])
        manager = make_runtime(provider).create_session_manager()

        handle = manager.start("Hi")

        assert handle.outcome.state == TurnState.FAILED
        assert len(provider.calls) == 1

    def test_on_error_hook_sees_failure(self):
        provider = ScriptedProvider([ProviderAuthError("bad key", provider="scripted")])
        runtime = make_runtime(provider)
        seen = []
        runtime.pipeline.register(lambda exc, ctx: seen.append(exc), "on_error", owner="watcher")
        manager = runtime.create_session_manager()

        manager.start("Hi")

        assert len(seen) == 1
        assert isinstance(seen[0], ProviderAuthError)

    def test_unknown_model_provider_fails_turn(self):
        provider = ScriptedProvider([text_response("ok")])
        runtime = make_runtime(provider)
        runtime.config.default_model = None
        manager = runtime.create_session_manager()

        handle = manager.start("Hi")

        assert handle.outcome.state == TurnState.FAILED
        assert provider.calls == []


class TestMalformedCompletion:

    def test_unterminated_fence_is_malformed(self):
        provider = ScriptedProvider([[
            StreamChunk.text_chunk("Here:\n```python\nprint(1)\n"),
            StreamChunk.done(),
        ]])
        manager = make_runtime(provider).create_session_manager()

        handle = manager.start("code please")

        assert MALFORMED_COMPLETION in handle.outcome.conditions
        assert handle.outcome.state == TurnState.IDLE
        assistant = _messages(manager, handle.session_id, Role.ASSISTANT)
        assert len(assistant) == 1
        assert assistant[0].partial is True
        assert assistant[0].text == "Here:\n"

    def test_invalid_tool_arguments_json_is_malformed(self):
        provider = ScriptedProvider([[
            StreamChunk.tool_call_start("c1", "search"),
            StreamChunk.tool_call_delta("c1", '{"query": '),
            StreamChunk.tool_call_end("c1"),
            StreamChunk.done(),
        ]])
        manager = make_runtime(provider).create_session_manager()

        handle = manager.start("go")

        assert MALFORMED_COMPLETION in handle.outcome.conditions
        assert _messages(manager, handle.session_id, Role.TOOL) == []


class TestCancellation:

    def test_cancel_mid_stream_keeps_partial_text(self):
        blocking = BlockingStream("Partial answer ")
        provider = ScriptedProvider([blocking])
        manager = make_runtime(provider).create_session_manager()

        events = manager.prompt("Tell me a story", session_id="s1")
        assert blocking.started.wait(5)
        assert manager.cancel("s1") is True
        events = list(events)

        idle = events[-1]
        assert isinstance(idle, SessionIdleEvent)
        assert idle.state == TurnState.CANCELLED.value
        assert CANCELLED in idle.conditions
        assistant = _messages(manager, "s1", Role.ASSISTANT)
        assert len(assistant) == 1
        assert assistant[0].partial is True
        assert assistant[0].text == "Partial answer "

    def test_cancel_without_turn_returns_false(self):
        manager = make_runtime(ScriptedProvider([text_response("ok")])).create_session_manager()
        handle = manager.start("Hi")

        assert manager.cancel(handle.session_id) is False
        assert manager.cancel("unknown") is False


class TestBusySession:

    def test_second_prompt_while_awaiting_provider_is_rejected(self):
        blocking = BlockingStream()
        provider = ScriptedProvider([blocking])
        manager = make_runtime(provider).create_session_manager()

        events = manager.prompt("first", session_id="busy")
        assert blocking.started.wait(5)
        before = _messages(manager, "busy")

        with pytest.raises(SessionBusyError):
            manager.continue_session("busy", "second")
        with pytest.raises(SessionBusyError):
            manager.prompt("third", session_id="busy")

        assert _messages(manager, "busy") == before
        blocking.release.set()
        events = list(events)
        assert events[-1].state == TurnState.IDLE.value
        assert [m.text for m in _messages(manager, "busy", Role.USER)] == ["first"]


class TestHooks:

    def test_on_prompt_transforms_prompt(self):
        provider = ScriptedProvider([text_response("ok")])
        runtime = make_runtime(provider)
        runtime.pipeline.register(lambda p, ctx: p.upper(), "on_prompt", owner="shout")
        manager = runtime.create_session_manager()

        handle = manager.start("quiet please")

        assert provider.calls[0]["messages"][0].text == "QUIET PLEASE"
        assert _messages(manager, handle.session_id, Role.USER)[0].text == "QUIET PLEASE"

    def test_on_prompt_veto_aborts_before_provider(self):
        provider = ScriptedProvider([text_response("ok")])
        runtime = make_runtime(provider)

        def veto(prompt, ctx):
            raise HookVeto("no secrets")

        runtime.pipeline.register(veto, "on_prompt", owner="guard")
        manager = runtime.create_session_manager()

        handle = manager.start("my password is hunter2")

        assert provider.calls == []
        assert PROMPT_VETOED in handle.outcome.conditions
        messages = _messages(manager, handle.session_id)
        assert [m.role for m in messages] == [Role.SYSTEM]
        assert "no secrets" in messages[0].text

    def test_raising_hook_is_isolated_and_recorded(self):
        provider = ScriptedProvider([text_response("ok")])
        runtime = make_runtime(provider)

        def broken(segments, ctx):
            raise RuntimeError("boom")

        runtime.pipeline.register(broken, "on_response", owner="broken")
        manager = runtime.create_session_manager()

        handle = manager.start("Hi")

        assert handle.outcome.text == "ok"
        assert PLUGIN_HOOK_ERROR in handle.outcome.conditions
        assert any("boom" in t for t in _system_texts(manager, handle.session_id))

    def test_on_response_can_rewrite_segments(self):
        provider = ScriptedProvider([text_response("secret value")])
        runtime = make_runtime(provider)
        runtime.pipeline.register(lambda segs, ctx: [TextSegment("[redacted]")], "on_response",
                                  owner="redactor")
        manager = runtime.create_session_manager()

        handle = manager.start("Hi")

        assert handle.outcome.text == "[redacted]"

    def test_hooks_share_session_scratch(self):
        provider = ScriptedProvider([text_response("ok")])
        runtime = make_runtime(provider)

        def count(prompt, ctx):
            ctx.scratch["prompts"] = ctx.scratch.get("prompts", 0) + 1

        runtime.pipeline.register(count, "on_prompt", owner="counter")
        manager = runtime.create_session_manager()
        handle = manager.start("one")
        manager.continue_session(handle.session_id, "two")

        assert manager.get_session(handle.session_id).scratch["prompts"] == 2

    def test_session_start_and_complete_hooks_fire(self):
        provider = ScriptedProvider([text_response("ok")])
        runtime = make_runtime(provider)
        started, completed = [], []
        runtime.pipeline.register(lambda sid, ctx: started.append(sid), "on_session_start")
        runtime.pipeline.register(lambda outcome, ctx: completed.append(outcome.state), "on_complete")
        manager = runtime.create_session_manager()

        handle = manager.start("Hi")

        assert started == [handle.session_id]
        assert completed == [TurnState.IDLE]

    def test_duplicated_tool_calls_from_hook_are_rejected(self):
        provider = ScriptedProvider([
            tool_response(("c1", "search", {"query": "a"})),
            text_response("done"),
        ])
        runtime = make_runtime(provider)
        plugin = RecordingPlugin("finder")
        runtime.register_plugin(plugin)
        runtime.pipeline.register(lambda segs, ctx: list(segs) + list(segs), "on_response",
                                  owner="doubler")
        manager = runtime.create_session_manager()

        handle = manager.start("search")

        assert handle.outcome.state == TurnState.IDLE
        assert len(plugin.invocations) == 1
        assert any("duplicate tool call id 'c1'" in t for t in _system_texts(manager, handle.session_id))

    def test_hook_cannot_add_tool_calls(self):
        provider = ScriptedProvider([
            tool_response(("c1", "search", {"query": "a"})),
            text_response("done"),
        ])
        runtime = make_runtime(provider)
        plugin = RecordingPlugin("finder")
        runtime.register_plugin(plugin)

        def inject(segments, ctx):
            return list(segments) + [ToolCallSegment(name="search", arguments={"query": "x"},
                                                     call_id="injected")]

        runtime.pipeline.register(inject, "on_response", owner="injector")
        manager = runtime.create_session_manager()

        handle = manager.start("search")

        assert plugin.invocations == [{"query": "a"}]
        assert any("'injected'" in t for t in _system_texts(manager, handle.session_id))

    def test_session_start_hook_error_is_recorded(self):
        provider = ScriptedProvider([text_response("ok")])
        runtime = make_runtime(provider)

        def broken(session_id, ctx):
            raise RuntimeError("boom at start")

        runtime.pipeline.register(broken, "on_session_start", owner="starter")
        manager = runtime.create_session_manager()

        handle = manager.start("Hi")

        assert handle.outcome.text == "ok"
        texts = _system_texts(manager, handle.session_id)
        assert any(t.startswith(f"[{PLUGIN_HOOK_ERROR}]") and "boom at start" in t for t in texts)
        stored = runtime.store.load(handle.session_id)
        assert any("boom at start" in json.dumps(m) for m in stored["messages"])

    def test_session_end_hook_error_is_recorded_on_archive(self):
        provider = ScriptedProvider([text_response("ok")])
        runtime = make_runtime(provider)

        def broken(session_id, ctx):
            raise RuntimeError("boom at end")

        runtime.pipeline.register(broken, "on_session_end", owner="ender")
        manager = runtime.create_session_manager()
        handle = manager.start("Hi")

        manager.archive(handle.session_id)

        assert manager.get_session(handle.session_id).archived
        assert any("boom at end" in t for t in _system_texts(manager, handle.session_id))


class TestAgents:

    def test_agent_limits_tools_and_sets_instruction(self):
        provider = ScriptedProvider([text_response("ok")])
        runtime = make_runtime(provider)
        runtime.register_plugin(RecordingPlugin("finder"))
        runtime.config.agents["reviewer"] = AgentProfile(
            name="reviewer", system_instruction="You review code.", tools=["search"],
        )
        manager = runtime.create_session_manager()

        manager.start("Review this", agent="reviewer")

        assert provider.calls[0]["tools"] == ["search"]
        assert provider.calls[0]["options"].system_instruction == "You review code."

    def test_unknown_agent_is_rejected(self):
        manager = make_runtime(ScriptedProvider([text_response("ok")])).create_session_manager()

        with pytest.raises(ValueError, match="Unknown agent"):
            manager.start("Hi", agent="ghost")

    def test_model_prefix_selects_provider(self):
        provider = ScriptedProvider([text_response("ok")])
        manager = make_runtime(provider).create_session_manager()

        manager.start("Hi", model="scripted/special-model")

        assert provider.calls[0]["model"] == "special-model"

    def test_prompt_overrides_model_and_agent_of_existing_session(self):
        first = ScriptedProvider([text_response("from first")], name="first")
        second = ScriptedProvider([text_response("from second")], name="second")
        runtime = make_runtime(first)
        runtime.register_provider(second)
        runtime.config.agents["reviewer"] = AgentProfile(name="reviewer", system_instruction="Review.")
        manager = runtime.create_session_manager()
        handle = manager.start("Hi")

        events = list(manager.prompt("again", session_id=handle.session_id,
                                     model="second/m1", agent="reviewer"))

        assert events[-1].text == "from second"
        assert second.calls[0]["model"] == "m1"
        assert second.calls[0]["options"].system_instruction == "Review."
        session = manager.get_session(handle.session_id)
        assert (session.model, session.agent) == ("second/m1", "reviewer")
        stored = runtime.store.load(handle.session_id)
        assert (stored["model"], stored["agent"]) == ("second/m1", "reviewer")

    def test_prompt_rejects_unknown_agent_for_existing_session(self):
        manager = make_runtime(ScriptedProvider([text_response("ok")])).create_session_manager()
        handle = manager.start("Hi")

        with pytest.raises(ValueError, match="Unknown agent"):
            manager.prompt("again", session_id=handle.session_id, agent="ghost")

        session = manager.get_session(handle.session_id)
        assert session.agent is None
        assert session.busy is False


class TestPersistence:

    def test_each_append_is_persisted(self):
        provider = ScriptedProvider([text_response("ok")])
        runtime = make_runtime(provider)
        manager = runtime.create_session_manager()

        handle = manager.start("Hi")

        stored = runtime.store.load(handle.session_id)
        assert len(stored["messages"]) == 2
        assert stored["lifecycle"] == "idle"

    def test_persistence_failure_is_reported_once(self):
        provider = ScriptedProvider([text_response("ok")])
        runtime = make_runtime(provider)
        store = MagicMock()
        store.load.return_value = None
        store.save.side_effect = PersistenceError("s", "disk full")
        runtime.store = store
        manager = runtime.create_session_manager()

        handle = manager.start("Hi")

        assert handle.outcome.conditions.count(PERSISTENCE_ERROR) == 1
        assert handle.outcome.state == TurnState.IDLE
        assert handle.outcome.text == "ok"
        messages = _messages(manager, handle.session_id)
        assert len(messages) == 4
        assert messages[0].role == Role.SYSTEM
        assert messages[0].text.startswith(f"[{PERSISTENCE_ERROR}]")

    def test_session_reloaded_from_store(self):
        provider = ScriptedProvider([text_response("first"), text_response("second")])
        runtime = make_runtime(provider)
        handle = runtime.create_session_manager().start("one")

        fresh = runtime.create_session_manager()
        outcome = fresh.continue_session(handle.session_id, "two")

        assert outcome.text == "second"
        assert len(_messages(fresh, handle.session_id)) == 4


class TestSnapshots:

    def test_export_import_round_trip(self):
        provider = ScriptedProvider([
            tool_response(("c1", "search", {"query": "a"}), text="Looking.\n"),
            text_response("Result:\n```json\n{\"a\": 1}\n```\n"),
        ])
        runtime = make_runtime(provider)
        runtime.register_plugin(RecordingPlugin("finder", result={"hits": [1, 2]}))
        manager = runtime.create_session_manager()
        handle = manager.start("go")
        snapshot = json.loads(json.dumps(manager.export(handle.session_id)))

        other = make_runtime(ScriptedProvider([text_response("x")])).create_session_manager()
        session_id = other.import_snapshot(snapshot)

        assert session_id == handle.session_id
        assert other.export(session_id) == snapshot

    def test_import_over_busy_session_is_rejected(self):
        blocking = BlockingStream()
        provider = ScriptedProvider([blocking])
        manager = make_runtime(provider).create_session_manager()
        events = manager.prompt("first", session_id="live")
        assert blocking.started.wait(5)
        snapshot = manager.export("live")

        with pytest.raises(SessionBusyError):
            manager.import_snapshot(snapshot)

        blocking.release.set()
        list(events)

    def test_archived_session_rejects_prompts(self):
        provider = ScriptedProvider([text_response("ok")])
        manager = make_runtime(provider).create_session_manager()
        handle = manager.start("Hi")

        manager.archive(handle.session_id)

        with pytest.raises(SessionArchivedError):
            manager.continue_session(handle.session_id, "more")
        assert manager.export(handle.session_id)["lifecycle"] == "archived"

    def test_list_and_delete_sessions(self):
        provider = ScriptedProvider([text_response("ok")])
        manager = make_runtime(provider).create_session_manager()
        a = manager.start("one").session_id
        b = manager.start("two").session_id

        assert {info.session_id for info in manager.list_sessions()} == {a, b}
        assert manager.delete_session(a) is True
        assert [info.session_id for info in manager.list_sessions()] == [b]
        with pytest.raises(SessionNotFoundError):
            manager.get_session(a)


class TestPromptEvents:

    def test_events_cover_segments_tools_and_idle(self):
        provider = ScriptedProvider([
            tool_response(("c1", "search", {"query": "a"})),
            text_response("done"),
        ])
        runtime = make_runtime(provider)
        runtime.register_plugin(RecordingPlugin("finder"))
        manager = runtime.create_session_manager()

        events = list(manager.prompt("go"))

        kinds = [type(e) for e in events]
        assert kinds[0] is SegmentAppendedEvent
        assert events[0].role == "user"
        assert ToolStartedEvent in kinds
        assert ToolCompletedEvent in kinds
        assert kinds.index(ToolStartedEvent) < kinds.index(ToolCompletedEvent)
        assert isinstance(events[-1], SessionIdleEvent)
        assert events[-1].text == "done"
        assert events[-1].tools_invoked == ["search"]
        for event in events:
            json.loads(event.to_json())

    def test_condition_events_are_emitted(self):
        provider = ScriptedProvider([ProviderAuthError("bad key", provider="scripted")])
        manager = make_runtime(provider).create_session_manager()

        events = list(manager.prompt("Hi"))

        conditions = [e for e in events if isinstance(e, ConditionEvent)]
        assert [c.condition for c in conditions] == [PROVIDER_ERROR]
        assert conditions[0].fatal is True
        assert events[-1].state == TurnState.FAILED.value
