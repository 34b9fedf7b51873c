"""
Bridge between the tool bridge and LangChain.

Converts the bridge's tool catalog into LangChain StructuredTools
so an agent can call the worker's tools directly.
"""

from __future__ import annotations

import json
from typing import Any

from langchain_core.tools import StructuredTool

from .bridge import ToolBridge
from .errors import BridgeError
from .models import ToolDescriptor


def bridge_tool(
    bridge: ToolBridge,
    descriptor: ToolDescriptor,
    description_override: str | None = None,
) -> StructuredTool:
    """
    Create a LangChain StructuredTool that wraps one bridged tool.

    When invoked by an agent, calls ``bridge.invoke`` and returns the
    result as text. Bridge failures come back as an error string so the
    agent sees them as tool output.
    """
    tool_name = descriptor.name
    description = description_override or descriptor.description or f"Bridged tool: {tool_name}"

    def _call_bridge(**kwargs: Any) -> str:
        try:
            result = bridge.invoke(tool_name, kwargs)
        except BridgeError as e:
            return f"Error calling {tool_name}: {e.kind}: {e}"
        if isinstance(result, str):
            return result
        return json.dumps(result, indent=2)

    return StructuredTool.from_function(
        func=_call_bridge,
        name=tool_name,
        description=description,
    )


def bridge_tools(
    bridge: ToolBridge,
    include: list[str] | None = None,
    descriptions: dict[str, str] | None = None,
) -> list[StructuredTool]:
    """
    Build one StructuredTool per catalog entry.

    Args:
        bridge: A started ToolBridge
        include: Optional subset of tool names to expose
        descriptions: Optional {tool_name: description} overrides

    Returns:
        List of StructuredTools in catalog order.
    """
    descriptions = descriptions or {}
    tools = []
    for descriptor in bridge.list_tools():
        if include is not None and descriptor.name not in include:
            continue
        tools.append(bridge_tool(bridge, descriptor, descriptions.get(descriptor.name)))
    return tools


def describe_tool(descriptor: ToolDescriptor) -> str:
    """Render a descriptor as prompt-ready instructions."""
    params = descriptor.input_schema.get("properties", {})

    lines = [f"## Tool: {descriptor.name}", descriptor.description, ""]
    if params:
        lines.append("Parameters:")
        for pname, pinfo in params.items():
            ptype = pinfo.get("type", "any")
            pdesc = pinfo.get("description", "")
            lines.append(f"  - {pname} ({ptype}): {pdesc}")

    return "\n".join(lines)
