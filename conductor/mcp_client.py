"""MCP tool client.

Connects to MCP servers over the stdio transport of the ``mcp`` SDK and
exposes their tools as ``ToolDefinition`` objects whose handlers proxy to
``MCPToolClient.invoke``.

All servers share one asyncio event loop running on a daemon thread. Each
server is driven by a single long-lived task that enters the transport and
``ClientSession`` contexts, publishes READY and then waits for a stop request,
so the contexts are entered and exited by the same task. Callers on other
threads submit coroutines with ``asyncio.run_coroutine_threadsafe``.

Lifecycle per server: STOPPED -> STARTING -> READY -> STOPPED | CRASHED.
"""

import asyncio
import concurrent.futures
import json
import logging
import os
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import anyio
from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client
from mcp.shared.exceptions import McpError
from mcp.types import CONNECTION_CLOSED, Implementation

from .config import MCPServerSpec
from .errors import ToolExecutionError, ToolServerUnavailableError
from .plugins.model_provider.types import (
    CancelledException,
    CancelToken,
    ToolDefinition,
    ToolSource,
)
from .trace import trace

logger = logging.getLogger(__name__)

_CLIENT_INFO = Implementation(name="conductor", version="0.1.0")

_CONNECTION_ERRORS = (
    anyio.ClosedResourceError,
    anyio.BrokenResourceError,
    anyio.EndOfStream,
    EOFError,
    BrokenPipeError,
    ConnectionError,
)

# Seconds to wait for a server task to exit after a stop request
_STOP_TIMEOUT = 5.0


class ServerState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    READY = "ready"
    CRASHED = "crashed"


@dataclass
class _ServerHandle:
    spec: MCPServerSpec
    state: ServerState = ServerState.STARTING
    tools: List[ToolDefinition] = field(default_factory=list)
    session: Optional[ClientSession] = None
    stop_event: asyncio.Event = field(default_factory=asyncio.Event)
    runner: Optional[concurrent.futures.Future] = None
    stopping: bool = False
    error: Optional[str] = None


def _is_connection_error(exc: BaseException) -> bool:
    if isinstance(exc, McpError):
        return getattr(exc.error, "code", None) == CONNECTION_CLOSED
    if isinstance(exc, _CONNECTION_ERRORS):
        return True
    # anyio task groups wrap failures of the transport's reader/writer tasks
    nested = getattr(exc, "exceptions", None)
    if nested:
        return any(_is_connection_error(e) for e in nested)
    return False


def _content_text(content: List[Any]) -> List[str]:
    return [block.text for block in content if getattr(block, "text", None) is not None]


def result_payload(result: Any) -> Any:
    """JSON-friendly payload of a ``CallToolResult``.

    Structured content wins when the server provides it; otherwise text
    blocks are joined (and decoded when the text is JSON) and non-text blocks
    are summarised by type.
    """
    structured = getattr(result, "structuredContent", None)
    if structured is not None:
        return structured

    content = list(getattr(result, "content", None) or [])
    texts = _content_text(content)
    others = [
        {"type": getattr(block, "type", "unknown")}
        for block in content if getattr(block, "text", None) is None
    ]

    if texts and not others:
        text = "\n".join(texts)
        if len(texts) == 1:
            try:
                return json.loads(text)
            except ValueError:
                pass
        return text
    if not texts and not others:
        return None
    return {"text": "\n".join(texts), "content": others}


class MCPToolClient:
    """Registry of MCP server connections, independent of sessions.

    Usage:
        client = MCPToolClient()
        tools = client.connect(MCPServerSpec(name="files", command="mcp-files"))
        dispatcher.register_many(tools)
        client.invoke("files", "read_file", {"path": "README.md"})
        client.shutdown()
    """

    def __init__(self, errlog=None):
        self._handles: Dict[str, _ServerHandle] = {}
        self._lock = threading.RLock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._errlog = errlog

    # ==================== Event loop ====================

    def _ensure_event_loop(self) -> asyncio.AbstractEventLoop:
        with self._lock:
            if self._loop is not None and self._loop.is_running():
                return self._loop

            self._loop = asyncio.new_event_loop()
            ready = threading.Event()

            def run_loop():
                asyncio.set_event_loop(self._loop)
                self._loop.call_soon(ready.set)
                self._loop.run_forever()

            self._thread = threading.Thread(target=run_loop, daemon=True, name="conductor-mcp")
            self._thread.start()
            ready.wait(timeout=5.0)
            return self._loop

    # ==================== Connection lifecycle ====================

    def connect(self, spec: MCPServerSpec) -> List[ToolDefinition]:
        """Launch ``spec`` and return its tools once the server is READY.

        Raises:
            ValueError: A server with the same name is starting or ready.
            ToolServerUnavailableError: The server failed to start in time.
        """
        with self._lock:
            existing = self._handles.get(spec.name)
            if existing is not None and existing.state in (ServerState.STARTING, ServerState.READY):
                raise ValueError(f"MCP server '{spec.name}' is already connected")
            handle = _ServerHandle(spec=spec)
            self._handles[spec.name] = handle

        loop = self._ensure_event_loop()
        ready: concurrent.futures.Future = concurrent.futures.Future()
        handle.runner = asyncio.run_coroutine_threadsafe(self._run_server(handle, ready), loop)

        try:
            ready.result(timeout=spec.startup_timeout)
        except Exception as exc:
            if isinstance(exc, concurrent.futures.TimeoutError):
                message = f"did not become ready within {spec.startup_timeout}s"
            else:
                message = f"{type(exc).__name__}: {exc}"
            handle.error = message
            handle.runner.cancel()
            handle.state = ServerState.CRASHED
            logger.warning("MCP server '%s' failed to start: %s", spec.name, message)
            raise ToolServerUnavailableError(
                spec.name, f"MCP server '{spec.name}' failed to start: {message}"
            ) from exc

        logger.info("MCP server '%s' ready with %d tools", spec.name, len(handle.tools))
        return list(handle.tools)

    async def _run_server(self, handle: _ServerHandle, ready: concurrent.futures.Future) -> None:
        spec = handle.spec
        params = StdioServerParameters(
            command=spec.command,
            args=list(spec.args),
            env={**os.environ, **spec.env},
            cwd=spec.cwd,
        )
        stdio_kwargs = {"errlog": self._errlog} if self._errlog is not None else {}
        try:
            async with stdio_client(params, **stdio_kwargs) as (read, write):
                async with ClientSession(read, write, client_info=_CLIENT_INFO) as session:
                    await session.initialize()
                    handle.session = session
                    handle.tools = await self._list_tools(handle)
                    handle.state = ServerState.READY
                    if not ready.done():
                        ready.set_result(None)
                    trace("MCPToolClient", f"{spec.name}: ready")
                    await handle.stop_event.wait()
        except Exception as exc:
            if not ready.done():
                ready.set_exception(exc)
            if not handle.stopping:
                handle.error = f"{type(exc).__name__}: {exc}"
                logger.warning("MCP server '%s' exited: %s", spec.name, handle.error)
                trace("MCPToolClient", f"{spec.name}: exited with {handle.error}")
        finally:
            handle.session = None
            if handle.stopping:
                handle.state = ServerState.STOPPED
            else:
                handle.state = ServerState.CRASHED

    async def _list_tools(self, handle: _ServerHandle) -> List[ToolDefinition]:
        response = await handle.session.list_tools()
        tools = []
        for tool in response.tools:
            tools.append(ToolDefinition.from_json_schema(
                tool.name,
                tool.description or "",
                tool.inputSchema or {},
                handler=self._make_proxy(handle.spec.name, tool.name),
                source=ToolSource.MCP,
                owner=handle.spec.name,
                cancellable=True,
            ))
        return tools

    def _make_proxy(self, server_name: str, tool_name: str):
        def proxy(args: Dict[str, Any], cancel_token: Optional[CancelToken] = None) -> Any:
            return self.invoke(server_name, tool_name, args, cancel_token=cancel_token)
        proxy.__name__ = f"mcp_{server_name}_{tool_name}"
        return proxy

    def _request_stop(self, handle: _ServerHandle) -> None:
        handle.stopping = True
        loop = self._loop
        if loop is not None and loop.is_running():
            loop.call_soon_threadsafe(handle.stop_event.set)

    def _mark_crashed(self, handle: _ServerHandle, exc: BaseException) -> None:
        handle.state = ServerState.CRASHED
        handle.error = f"{type(exc).__name__}: {exc}"
        logger.warning("MCP server '%s' lost its connection: %s", handle.spec.name, handle.error)
        # Let the server task leave its contexts; the state stays CRASHED
        loop = self._loop
        if loop is not None and loop.is_running():
            loop.call_soon_threadsafe(handle.stop_event.set)

    def disconnect(self, server_name: str) -> None:
        """Stop ``server_name`` and forget it.

        Raises:
            ValueError: The server is unknown.
        """
        with self._lock:
            handle = self._handles.pop(server_name, None)
        if handle is None:
            raise ValueError(f"MCP server '{server_name}' is not connected")

        self._request_stop(handle)
        if handle.runner is not None:
            try:
                handle.runner.result(timeout=_STOP_TIMEOUT)
            except concurrent.futures.TimeoutError:
                handle.runner.cancel()
                logger.warning("MCP server '%s' did not stop within %ss", server_name, _STOP_TIMEOUT)
            except Exception as exc:
                logger.debug("MCP server '%s' stop raised: %s", server_name, exc)
        handle.state = ServerState.STOPPED
        logger.info("MCP server '%s' disconnected", server_name)

    def reload(self, server_name: str) -> List[ToolDefinition]:
        """Re-discover the tools of ``server_name``.

        A READY server is asked for its tool list again; a stopped or crashed
        one is restarted from its spec.
        """
        with self._lock:
            handle = self._handles.get(server_name)
        if handle is None:
            raise ValueError(f"MCP server '{server_name}' is not connected")

        if handle.state == ServerState.READY and handle.session is not None:
            future = asyncio.run_coroutine_threadsafe(self._list_tools(handle), self._loop)
            try:
                handle.tools = future.result(timeout=handle.spec.startup_timeout)
            except Exception as exc:
                if _is_connection_error(exc):
                    self._mark_crashed(handle, exc)
                    raise ToolServerUnavailableError(server_name) from exc
                raise
            return list(handle.tools)

        spec = handle.spec
        self.disconnect(server_name)
        return self.connect(spec)

    # ==================== Invocation ====================

    def invoke(
        self,
        server_name: str,
        tool_name: str,
        args: Dict[str, Any],
        cancel_token: Optional[CancelToken] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """Call ``tool_name`` on ``server_name`` and return its payload.

        Raises:
            ToolServerUnavailableError: Server unknown, not READY, or the
                connection broke during the call.
            ToolExecutionError: The tool reported an error or timed out.
            CancelledException: ``cancel_token`` fired before completion.
        """
        with self._lock:
            handle = self._handles.get(server_name)
        if handle is None:
            raise ToolServerUnavailableError(
                server_name, f"MCP server '{server_name}' is not connected", tool_name
            )
        session = handle.session
        if handle.state != ServerState.READY or session is None:
            detail = f" ({handle.error})" if handle.error else ""
            raise ToolServerUnavailableError(
                server_name,
                f"MCP server '{server_name}' is {handle.state.value}{detail}",
                tool_name,
            )
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

        timeout = timeout if timeout is not None else handle.spec.call_timeout
        trace("MCPToolClient", f"{server_name}.{tool_name} args={json.dumps(args, default=str)[:200]}")
        future = asyncio.run_coroutine_threadsafe(session.call_tool(tool_name, args), self._loop)
        if cancel_token is not None:
            cancel_token.on_cancel(future.cancel)

        try:
            result = future.result(timeout=timeout)
        except concurrent.futures.CancelledError:
            raise CancelledException(f"MCP call {server_name}.{tool_name} cancelled")
        except concurrent.futures.TimeoutError:
            future.cancel()
            raise ToolExecutionError(
                f"MCP call {server_name}.{tool_name} timed out after {timeout}s", tool_name
            )
        except Exception as exc:
            if _is_connection_error(exc):
                self._mark_crashed(handle, exc)
                raise ToolServerUnavailableError(
                    server_name, f"MCP server '{server_name}' crashed: {exc}", tool_name
                ) from exc
            raise ToolExecutionError(f"{type(exc).__name__}: {exc}", tool_name) from exc

        if getattr(result, "isError", False):
            message = "\n".join(_content_text(list(result.content or []))) or "Tool reported an error"
            raise ToolExecutionError(message, tool_name)
        return result_payload(result)

    # ==================== Queries ====================

    def state(self, server_name: str) -> ServerState:
        with self._lock:
            handle = self._handles.get(server_name)
        return handle.state if handle is not None else ServerState.STOPPED

    def tools(self, server_name: str) -> List[ToolDefinition]:
        with self._lock:
            handle = self._handles.get(server_name)
        return list(handle.tools) if handle is not None else []

    def list_servers(self) -> Dict[str, ServerState]:
        with self._lock:
            return {name: handle.state for name, handle in self._handles.items()}

    # ==================== Shutdown ====================

    def shutdown(self) -> None:
        """Disconnect every server and stop the event loop thread."""
        for name in list(self.list_servers()):
            try:
                self.disconnect(name)
            except ValueError:
                pass

        with self._lock:
            loop, thread = self._loop, self._thread
            self._loop = None
            self._thread = None
        if loop is not None and loop.is_running():
            loop.call_soon_threadsafe(loop.stop)
        if thread is not None:
            thread.join(timeout=2.0)
