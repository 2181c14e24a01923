"""Tests for ConductorRuntime."""

import sys
import types

import pytest
from unittest.mock import MagicMock, patch

from ..config import MCPServerSpec, PluginSettings, PolicyConfig, RuntimeConfig
from ..errors import ToolServerUnavailableError
from ..plugins.model_provider.types import ToolDefinition, ToolSource
from ..plugins.session import FileSessionStore, InMemorySessionStore
from ..retry_utils import RetryConfig
from ..runtime import ConductorRuntime
from .fakes import RecordingPlugin, ScriptedProvider, make_runtime, text_response


class TestProviders:

    def test_register_duplicate_raises(self):
        runtime = make_runtime(ScriptedProvider())

        with pytest.raises(ValueError, match="already registered"):
            runtime.register_provider(ScriptedProvider())

    def test_get_unknown_adapter(self):
        runtime = make_runtime(ScriptedProvider())

        with pytest.raises(ValueError, match="not registered"):
            runtime.get_adapter("nobody")

    def test_resolve_default_model(self):
        runtime = make_runtime(ScriptedProvider())

        adapter, model = runtime.resolve_model()

        assert adapter.name == "scripted"
        assert model == "scripted-1"

    def test_resolve_prefixed_model(self):
        runtime = make_runtime(ScriptedProvider())
        runtime.register_provider(ScriptedProvider(name="other"))

        adapter, model = runtime.resolve_model("other/big-model")

        assert adapter.name == "other"
        assert model == "big-model"

    def test_unknown_prefix_is_part_of_model_name(self):
        runtime = make_runtime(ScriptedProvider())

        adapter, model = runtime.resolve_model("meta-llama/Llama-3")

        assert adapter.name == "scripted"
        assert model == "meta-llama/Llama-3"

    def test_single_provider_used_without_default(self):
        runtime = ConductorRuntime(RuntimeConfig(), store=InMemorySessionStore())
        runtime.register_provider(ScriptedProvider(name="solo"))

        adapter, model = runtime.resolve_model("m")

        assert adapter.name == "solo"

    def test_no_model_selected(self):
        runtime = ConductorRuntime(RuntimeConfig(), store=InMemorySessionStore())
        runtime.register_provider(ScriptedProvider())

        with pytest.raises(ValueError, match="No model selected"):
            runtime.resolve_model()

    def test_refresh_credentials_reaches_provider(self):
        provider = ScriptedProvider()
        runtime = make_runtime(provider)

        runtime.refresh_credentials("scripted")

        assert provider.refreshed == 1

    def test_start_loads_configured_providers(self):
        provider = ScriptedProvider(name="fake")
        config = RuntimeConfig.from_dict({"providers": {"fake": {"api_key": "k"}}})

        with patch("conductor.runtime.load_provider", return_value=provider) as load:
            with ConductorRuntime(config, store=InMemorySessionStore()) as runtime:
                assert runtime.list_providers() == ["fake"]
                assert load.call_args[0][0] == "fake"
                assert load.call_args[0][1].api_key == "k"

        assert provider.shut_down is True


class TestStores:

    def test_memory_store_by_default(self):
        assert isinstance(ConductorRuntime().store, InMemorySessionStore)

    def test_file_store_when_session_dir_set(self, tmp_path):
        config = RuntimeConfig(policy=PolicyConfig(session_dir=str(tmp_path)))

        assert isinstance(ConductorRuntime(config).store, FileSessionStore)


class TestPlugins:

    def test_plugin_module_is_loaded(self):
        module = types.ModuleType("conductor_test_plugin")
        plugin = RecordingPlugin("loaded")
        module.create_plugin = lambda: plugin
        config = RuntimeConfig(plugins=[PluginSettings(name="loaded", module="conductor_test_plugin",
                                                       config={"k": "v"})])

        with patch.dict(sys.modules, {"conductor_test_plugin": module}):
            runtime = ConductorRuntime(config, store=InMemorySessionStore())
            runtime.start()

        assert runtime.registry.list_plugins() == ["loaded"]
        assert plugin.initialized_with == {"k": "v"}
        assert runtime.dispatcher.resolve("search").owner == "loaded"
        runtime.shutdown()
        assert plugin.shut_down is True

    def test_plugin_without_module_or_package(self):
        config = RuntimeConfig(plugins=[PluginSettings(name="loose")])
        runtime = ConductorRuntime(config, store=InMemorySessionStore())

        with pytest.raises(ValueError, match="no module"):
            runtime.start()

    def test_on_load_fires_after_plugins(self):
        loaded = []
        plugin = RecordingPlugin("hooked", hooks={"on_load": lambda names, ctx: loaded.append(names)})
        runtime = make_runtime(ScriptedProvider())
        runtime.register_plugin(plugin)

        runtime.start()

        assert loaded == [["hooked"]]


class TestMCP:

    def _tool(self, name, server):
        return ToolDefinition(name=name, handler=lambda args: None, source=ToolSource.MCP, owner=server)

    def test_connect_registers_tools(self):
        runtime = make_runtime(ScriptedProvider())
        runtime.mcp = MagicMock()
        runtime.mcp.connect.return_value = [self._tool("read", "fs")]

        runtime.connect_mcp(MCPServerSpec(name="fs", command="mcp-fs"))

        assert runtime.dispatcher.resolve("read").owner == "fs"

    def test_unavailable_server_does_not_stop_start(self):
        spec = MCPServerSpec(name="broken", command="missing-binary")
        runtime = ConductorRuntime(RuntimeConfig(mcp_servers={"broken": spec}), store=InMemorySessionStore())
        runtime.mcp = MagicMock()
        runtime.mcp.connect.side_effect = ToolServerUnavailableError("broken", "spawn failed")

        runtime.start()

        assert runtime.is_started

    def test_reload_mcp_replaces_tools(self):
        runtime = make_runtime(ScriptedProvider())
        runtime.mcp = MagicMock()
        runtime.mcp.connect.return_value = [self._tool("old", "fs")]
        runtime.connect_mcp(MCPServerSpec(name="fs", command="mcp-fs"))
        runtime.mcp.reload.return_value = [self._tool("new", "fs")]

        runtime.reload_mcp("fs")

        assert runtime.dispatcher.resolve("old") is None
        assert runtime.dispatcher.resolve("new") is not None

    def test_disconnect_removes_tools(self):
        runtime = make_runtime(ScriptedProvider())
        runtime.mcp = MagicMock()
        runtime.mcp.connect.return_value = [self._tool("read", "fs")]
        runtime.connect_mcp(MCPServerSpec(name="fs", command="mcp-fs"))

        runtime.disconnect_mcp("fs")

        assert runtime.dispatcher.resolve("read") is None
        runtime.mcp.disconnect.assert_called_once_with("fs")


class TestReload:

    def test_reload_applies_policy_and_servers(self):
        provider = ScriptedProvider()
        runtime = make_runtime(provider)
        runtime.mcp = MagicMock()
        runtime.mcp.connect.return_value = []
        new_retry = RetryConfig(max_attempts=5, base_delay=0.0, max_delay=0.0)
        new_config = RuntimeConfig(
            default_provider="scripted",
            default_model="scripted-2",
            mcp_servers={"fs": MCPServerSpec(name="fs", command="mcp-fs")},
            policy=PolicyConfig(retry=new_retry, request_interval=0.25),
        )

        runtime.reload(new_config)

        assert runtime.config is new_config
        assert runtime.get_adapter("scripted").retry_config is new_retry
        assert runtime._pacer.interval == 0.25
        runtime.mcp.connect.assert_called_once()
        assert runtime.resolve_model()[1] == "scripted-2"

    def test_reload_disconnects_removed_servers(self):
        spec = MCPServerSpec(name="fs", command="mcp-fs")
        runtime = ConductorRuntime(RuntimeConfig(mcp_servers={"fs": spec}), store=InMemorySessionStore())
        runtime.mcp = MagicMock()

        runtime.reload(RuntimeConfig())

        runtime.mcp.disconnect.assert_called_once_with("fs")

    def test_reload_without_file_needs_config(self):
        runtime = make_runtime(ScriptedProvider())

        with pytest.raises(ValueError, match="needs a config"):
            runtime.reload()

    def test_reload_from_file(self, tmp_path):
        path = tmp_path / "conductor.yaml"
        path.write_text("default_model: first\n")
        runtime = ConductorRuntime.from_file(path, store=InMemorySessionStore())
        runtime.register_provider(ScriptedProvider())
        path.write_text("default_model: second\n")

        runtime.reload()

        assert runtime.config.default_model == "second"

    def test_sessions_use_new_config(self):
        provider = ScriptedProvider([text_response("ok")])
        runtime = make_runtime(provider)
        manager = runtime.create_session_manager()

        runtime.reload(RuntimeConfig(default_provider="scripted", default_model="scripted-9",
                                     policy=runtime.config.policy))
        manager.start("Hi")

        assert provider.calls[0]["model"] == "scripted-9"
