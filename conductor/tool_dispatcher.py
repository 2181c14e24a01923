"""Tool dispatch for the conductor core.

The ToolDispatcher resolves tool calls against three registration tables,
validates arguments against each tool's parameter schema, runs handlers and
turns every outcome (including failures) into a ``ToolResultSegment``.

Resolution order: built-in tools, then plugin tools, then MCP tools; the
first match wins. Handler failures never propagate to the caller.
"""

import json
import logging
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from .errors import (
    CANCELLED,
    INVALID_ARGUMENTS,
    InvalidArgumentsError,
    TOOL_EXECUTION_ERROR,
    ToolError,
)
from .plugins.model_provider.types import (
    CancelledException,
    CancelToken,
    ParameterSpec,
    ToolCallSegment,
    ToolDefinition,
    ToolResultSegment,
    ToolSource,
)
from .trace import trace

logger = logging.getLogger(__name__)

RESOLUTION_ORDER = (ToolSource.BUILTIN, ToolSource.PLUGIN, ToolSource.MCP)

# Failure messages returned to the model are cut to this length
MAX_ERROR_LENGTH = 500

# How often dispatch_all re-checks the cancel token while waiting
_POLL_INTERVAL = 0.05

ToolCallback = Callable[[ToolCallSegment], None]
ToolResultCallback = Callable[[ToolCallSegment, ToolResultSegment], None]


def _type_matches(expected: str, value: Any) -> bool:
    if expected == "any":
        return True
    if expected == "string":
        return isinstance(value, str)
    if expected == "boolean":
        return isinstance(value, bool)
    if expected == "integer":
        return isinstance(value, int) and not isinstance(value, bool)
    if expected == "number":
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if expected == "array":
        return isinstance(value, (list, tuple))
    if expected == "object":
        return isinstance(value, dict)
    return True


def validate_arguments(tool: ToolDefinition, arguments: Dict[str, Any]) -> Dict[str, Any]:
    """Check ``arguments`` against the tool's schema and fill in defaults.

    A ``None`` value for an optional parameter counts as absent. Unknown
    argument names are rejected when the tool declares parameters.

    Returns:
        A new argument dict with defaults applied.

    Raises:
        InvalidArgumentsError: One or more problems, all reported together.
    """
    problems: List[str] = []
    validated: Dict[str, Any] = {}
    params: Dict[str, ParameterSpec] = tool.parameters

    for name, spec in params.items():
        value = arguments.get(name)
        if value is None:
            if spec.required:
                problems.append(f"missing required argument '{name}'")
            elif spec.default is not None:
                validated[name] = spec.default
            continue
        if not _type_matches(spec.type, value):
            problems.append(f"argument '{name}' must be {spec.type}, got {type(value).__name__}")
            continue
        if spec.enum is not None and value not in spec.enum:
            allowed = ", ".join(repr(v) for v in spec.enum)
            problems.append(f"argument '{name}' must be one of {allowed}, got {value!r}")
            continue
        validated[name] = value

    if params:
        for name in arguments:
            if name not in params:
                problems.append(f"unknown argument '{name}'")
    else:
        validated.update(arguments)

    if problems:
        raise InvalidArgumentsError(tool.name, problems)
    return validated


def _sanitize(exc: BaseException) -> str:
    message = str(exc).strip() or type(exc).__name__
    if not isinstance(exc, ToolError):
        message = f"{type(exc).__name__}: {message}"
    if len(message) > MAX_ERROR_LENGTH:
        message = message[:MAX_ERROR_LENGTH] + "..."
    return message


def _to_jsonable(value: Any) -> Any:
    try:
        json.dumps(value)
        return value
    except (TypeError, ValueError):
        return str(value)


def failure_result(call: ToolCallSegment, condition: str, message: str) -> ToolResultSegment:
    return ToolResultSegment(
        call_id=call.call_id,
        payload={"error": message, "condition": condition},
        success=False,
        name=call.name,
        condition=condition,
    )


class ToolDispatcher:
    """Registry and executor for tools from all sources.

    Usage:
        dispatcher = ToolDispatcher(max_concurrent_tools=4)
        dispatcher.register(ToolDefinition(name="search", handler=search, ...))
        results = dispatcher.dispatch_all(message.tool_calls, cancel_token)

    Attributes:
        shadow_warnings: Human-readable record of every registration that
            replaced or shadowed another tool with the same name.
    """

    def __init__(self, max_concurrent_tools: int = 4, cancel_grace_period: float = 2.0):
        if max_concurrent_tools < 1:
            raise ValueError(f"max_concurrent_tools must be >= 1, got {max_concurrent_tools}")
        self._max_workers = max_concurrent_tools
        self._cancel_grace_period = cancel_grace_period
        self._tables: Dict[ToolSource, Dict[str, ToolDefinition]] = {
            source: {} for source in RESOLUTION_ORDER
        }
        self._lock = threading.RLock()
        self._pool: Optional[ThreadPoolExecutor] = None
        self.shadow_warnings: List[str] = []

    # ==================== Registration ====================

    def register(self, tool: ToolDefinition, source: Optional[ToolSource] = None) -> None:
        """Register ``tool``; last registration of a name within a source wins."""
        if source is not None and source != tool.source:
            tool = replace(tool, source=source)
        if tool.handler is None or not callable(tool.handler):
            raise ValueError(f"Tool '{tool.name}' has no callable handler")

        with self._lock:
            table = self._tables[tool.source]
            previous = table.get(tool.name)
            if previous is not None:
                self._warn(f"Tool '{tool.name}' from {tool.owner or tool.source.value} replaces "
                           f"the one registered by {previous.owner or previous.source.value}")
            for other in RESOLUTION_ORDER:
                if other == tool.source or tool.name not in self._tables[other]:
                    continue
                winner, loser = sorted((other, tool.source), key=RESOLUTION_ORDER.index)
                self._warn(f"Tool '{tool.name}' exists as {winner.value} and {loser.value}; "
                           f"the {winner.value} tool takes precedence")
            table[tool.name] = tool

    def register_many(self, tools: Iterable[ToolDefinition], source: Optional[ToolSource] = None) -> None:
        for tool in tools:
            self.register(tool, source)

    def unregister(self, name: str, source: ToolSource) -> bool:
        with self._lock:
            return self._tables[source].pop(name, None) is not None

    def unregister_owner(self, source: ToolSource, owner: str) -> List[str]:
        """Remove every tool ``owner`` registered in ``source``."""
        with self._lock:
            table = self._tables[source]
            names = [name for name, tool in table.items() if tool.owner == owner]
            for name in names:
                del table[name]
        return names

    def _warn(self, message: str) -> None:
        self.shadow_warnings.append(message)
        logger.warning(message)
        trace("ToolDispatcher", message)

    # ==================== Lookup ====================

    def resolve(self, name: str) -> Optional[ToolDefinition]:
        with self._lock:
            for source in RESOLUTION_ORDER:
                tool = self._tables[source].get(name)
                if tool is not None:
                    return tool
        return None

    def list_tools(self, allowed: Optional[Iterable[str]] = None) -> List[ToolDefinition]:
        """The active tool set: one definition per name, as ``resolve`` would pick."""
        allow = set(allowed) if allowed is not None else None
        seen: Dict[str, ToolDefinition] = {}
        with self._lock:
            for source in RESOLUTION_ORDER:
                for name, tool in self._tables[source].items():
                    if name in seen or (allow is not None and name not in allow):
                        continue
                    seen[name] = tool
        return list(seen.values())

    # ==================== Execution ====================

    def dispatch(self, call: ToolCallSegment, cancel_token: Optional[CancelToken] = None) -> ToolResultSegment:
        """Execute one call. Never raises; failures become ``success=False`` results."""
        if cancel_token is not None and cancel_token.is_cancelled:
            return failure_result(call, CANCELLED, "Cancelled before the tool started")

        tool = self.resolve(call.name)
        if tool is None:
            return failure_result(call, TOOL_EXECUTION_ERROR, f"Unknown tool '{call.name}'")

        try:
            arguments = validate_arguments(tool, call.arguments)
        except InvalidArgumentsError as exc:
            trace("ToolDispatcher", f"{call.name}: {exc}")
            return failure_result(call, INVALID_ARGUMENTS, str(exc))

        try:
            if tool.cancellable:
                result = tool.handler(arguments, cancel_token)
            else:
                result = tool.handler(arguments)
        except CancelledException as exc:
            return failure_result(call, CANCELLED, exc.message)
        except Exception as exc:
            condition = exc.condition if isinstance(exc, ToolError) else TOOL_EXECUTION_ERROR
            logger.info("Tool %s failed: %s", call.name, exc)
            trace("ToolDispatcher", f"{call.name} raised {type(exc).__name__}: {exc}",
                  include_traceback=True)
            return failure_result(call, condition, _sanitize(exc))

        return ToolResultSegment(
            call_id=call.call_id,
            payload=_to_jsonable(result),
            success=True,
            name=call.name,
        )

    def _get_pool(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._pool is None:
                self._pool = ThreadPoolExecutor(
                    max_workers=self._max_workers, thread_name_prefix="conductor-tool"
                )
            return self._pool

    def dispatch_all(
        self,
        calls: List[ToolCallSegment],
        cancel_token: Optional[CancelToken] = None,
        on_start: Optional[ToolCallback] = None,
        on_complete: Optional[ToolResultCallback] = None,
    ) -> List[ToolResultSegment]:
        """Run independent calls concurrently; results come back in call order.

        After cancellation, in-flight calls get ``cancel_grace_period`` seconds
        to finish; the rest are abandoned and reported as cancelled.
        """
        if not calls:
            return []

        results: List[Optional[ToolResultSegment]] = [None] * len(calls)

        def run(index: int) -> ToolResultSegment:
            call = calls[index]
            if on_start:
                on_start(call)
            return self.dispatch(call, cancel_token)

        pool = self._get_pool()
        futures: Dict[Future, int] = {pool.submit(run, i): i for i in range(len(calls))}
        pending = set(futures)

        def collect(done: Iterable[Future]) -> None:
            for future in done:
                index = futures[future]
                try:
                    result = future.result()
                except Exception as exc:
                    # Only callbacks can raise here; dispatch() itself never does
                    result = failure_result(calls[index], TOOL_EXECUTION_ERROR, _sanitize(exc))
                results[index] = result
                if on_complete:
                    on_complete(calls[index], result)

        while pending:
            if cancel_token is not None and cancel_token.is_cancelled:
                done, pending = wait(pending, timeout=self._cancel_grace_period)
                collect(done)
                stuck = [future for future in pending if not future.cancel()]
                if stuck:
                    self._retire_pool(pool, len(stuck))
                break
            if self._pool is not pool:
                pool = self._requeue(pool, pending, futures, run)
            done, pending = wait(pending, timeout=_POLL_INTERVAL, return_when=FIRST_COMPLETED)
            collect(done)

        for index, result in enumerate(results):
            if result is None:
                result = failure_result(calls[index], CANCELLED, "Tool call abandoned after cancellation")
                results[index] = result
                if on_complete:
                    on_complete(calls[index], result)
        return results  # type: ignore[return-value]

    def _retire_pool(self, pool: ThreadPoolExecutor, stuck: int) -> None:
        """Stop handing out ``pool``; its workers are held by abandoned calls.

        The next dispatch gets a fresh pool. Abandoned handlers keep their
        threads until they return.
        """
        with self._lock:
            if self._pool is pool:
                self._pool = None
        pool.shutdown(wait=False)
        message = f"{stuck} abandoned tool call(s) still running; replacing the worker pool"
        logger.warning(message)
        trace("ToolDispatcher", message)

    def _requeue(
        self,
        pool: ThreadPoolExecutor,
        pending: Set[Future],
        futures: Dict[Future, int],
        run: Callable[[int], ToolResultSegment],
    ) -> ThreadPoolExecutor:
        """Move calls still queued on a retired pool onto the current one."""
        fresh = self._get_pool()
        for future in list(pending):
            if not future.cancel():
                continue
            index = futures.pop(future)
            pending.discard(future)
            moved = fresh.submit(run, index)
            futures[moved] = index
            pending.add(moved)
        return fresh

    def shutdown(self) -> None:
        with self._lock:
            pool, self._pool = self._pool, None
        if pool is not None:
            pool.shutdown(wait=False, cancel_futures=True)
