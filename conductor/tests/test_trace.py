"""Tests for the file trace channels."""

import os
import tempfile

from ..trace import provider_trace, resolve_trace_path, trace, trace_write


class TestResolveTracePath:

    def test_first_set_variable_wins(self, monkeypatch):
        monkeypatch.delenv("TRACE_A", raising=False)
        monkeypatch.setenv("TRACE_B", "/tmp/b.log")

        assert resolve_trace_path("TRACE_A", "TRACE_B") == "/tmp/b.log"

    def test_empty_value_disables(self, monkeypatch):
        monkeypatch.setenv("TRACE_A", "")
        monkeypatch.setenv("TRACE_B", "/tmp/b.log")

        assert resolve_trace_path("TRACE_A", "TRACE_B") is None

    def test_default_in_temp_dir(self, monkeypatch):
        monkeypatch.delenv("TRACE_A", raising=False)

        path = resolve_trace_path("TRACE_A", default_filename="x.log")

        assert path == os.path.join(tempfile.gettempdir(), "x.log")


class TestTraceWrite:

    def test_appends_lines(self, tmp_path):
        path = tmp_path / "nested" / "trace.log"

        trace_write("Dispatcher", "first", str(path))
        trace_write("Dispatcher", "second", str(path))

        lines = path.read_text().splitlines()
        assert len(lines) == 2
        assert lines[0].endswith("[Dispatcher] first")

    def test_traceback_is_included(self, tmp_path):
        path = tmp_path / "trace.log"

        try:
            raise RuntimeError("kaboom")
        except RuntimeError:
            trace_write("Adapter", "failed", str(path), include_traceback=True)

        assert "RuntimeError: kaboom" in path.read_text()

    def test_disabled_path_is_noop(self):
        trace_write("Adapter", "ignored", None)

    def test_unwritable_path_does_not_raise(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("")

        trace_write("Adapter", "ignored", str(blocker / "trace.log"))

    def test_channels_use_their_variables(self, tmp_path, monkeypatch):
        monkeypatch.setenv("CONDUCTOR_TRACE_LOG", str(tmp_path / "app.log"))
        monkeypatch.setenv("CONDUCTOR_PROVIDER_TRACE", str(tmp_path / "provider.log"))

        trace("SessionManager", "turn started")
        provider_trace("anthropic", "stream opened")

        assert "turn started" in (tmp_path / "app.log").read_text()
        assert "stream opened" in (tmp_path / "provider.log").read_text()
