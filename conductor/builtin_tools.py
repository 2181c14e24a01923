"""Built-in introspection tools.

These are registered with ``ToolSource.BUILTIN`` and therefore take
precedence over plugin and MCP tools of the same name.

- list_tools: names, sources and brief descriptions of the active tool set
- describe_tool: full parameter schema for one or more tools
"""

from typing import Any, Dict, List

from .plugins.model_provider.types import ParameterSpec, ToolDefinition, ToolSource
from .tool_dispatcher import ToolDispatcher


class IntrospectionTools:
    """Handlers for the built-in tools, bound to one dispatcher."""

    def __init__(self, dispatcher: ToolDispatcher):
        self._dispatcher = dispatcher

    def list_tools(self, args: Dict[str, Any]) -> Dict[str, Any]:
        source = args.get("source")
        verbose = args.get("verbose", False)

        tools = []
        for tool in self._dispatcher.list_tools():
            if source and tool.source.value != source:
                continue
            description = tool.description
            if not verbose and len(description) > 120:
                description = description[:117] + "..."
            tools.append({
                "name": tool.name,
                "source": tool.source.value,
                "owner": tool.owner,
                "description": description,
            })
        tools.sort(key=lambda t: t["name"])
        return {"tools": tools, "count": len(tools)}

    def describe_tool(self, args: Dict[str, Any]) -> Dict[str, Any]:
        schemas = []
        not_found = []
        for name in args["names"]:
            tool = self._dispatcher.resolve(name)
            if tool is None:
                not_found.append(name)
                continue
            schemas.append({
                "name": tool.name,
                "description": tool.description,
                "source": tool.source.value,
                "owner": tool.owner,
                "parameters": tool.to_json_schema(),
            })

        result: Dict[str, Any] = {"schemas": schemas, "count": len(schemas)}
        if not_found:
            result["not_found"] = not_found
            result["hint"] = "Use list_tools to see available tools."
        return result


def create_builtin_tools(dispatcher: ToolDispatcher) -> List[ToolDefinition]:
    """Tool definitions for the built-in tools, bound to ``dispatcher``."""
    tools = IntrospectionTools(dispatcher)
    return [
        ToolDefinition(
            name="list_tools",
            description="List the tools available in this session with their source "
                        "(builtin, plugin or mcp) and a brief description.",
            parameters={
                "source": ParameterSpec(
                    type="string",
                    enum=tuple(s.value for s in ToolSource),
                    description="Only list tools from this source.",
                ),
                "verbose": ParameterSpec(
                    type="boolean",
                    default=False,
                    description="Include full descriptions.",
                ),
            },
            handler=tools.list_tools,
            source=ToolSource.BUILTIN,
            owner="builtin",
        ),
        ToolDefinition(
            name="describe_tool",
            description="Get the full parameter schema of one or more tools.",
            parameters={
                "names": ParameterSpec(
                    type="array",
                    required=True,
                    description="Names of the tools to describe.",
                ),
            },
            handler=tools.describe_tool,
            source=ToolSource.BUILTIN,
            owner="builtin",
        ),
    ]
