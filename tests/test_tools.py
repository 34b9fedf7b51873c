"""
Tests for the LangChain adapter over a live echo worker.
"""

import json

from langchain_core.tools import StructuredTool

from toolbridge.models import ToolDescriptor
from toolbridge.tools import bridge_tool, bridge_tools, describe_tool


class TestBridgeTools:
    def test_one_tool_per_catalog_entry(self, make_bridge):
        bridge = make_bridge()
        tools = bridge_tools(bridge)

        assert all(isinstance(t, StructuredTool) for t in tools)
        assert [t.name for t in tools] == [d.name for d in bridge.list_tools()]

    def test_include_and_description_override(self, make_bridge):
        bridge = make_bridge()
        tools = bridge_tools(
            bridge,
            include=["echo", "get_selected_elements"],
            descriptions={"echo": "Repeat the input"},
        )
        assert sorted(t.name for t in tools) == ["echo", "get_selected_elements"]
        echo = next(t for t in tools if t.name == "echo")
        assert echo.description == "Repeat the input"

    def test_call_returns_json_text(self, make_bridge):
        bridge = make_bridge()
        tool = bridge_tool(bridge, ToolDescriptor(name="get_selected_elements"))
        assert json.loads(tool.func(limit=5)) == {"elements": []}

    def test_failure_is_rendered_as_text(self, make_bridge):
        bridge = make_bridge()
        tool = bridge_tool(bridge, ToolDescriptor(name="fail"))
        output = tool.func(message="no document open")
        assert output.startswith("Error calling fail: tool_error:")
        assert "no document open" in output

    def test_stopped_bridge(self, make_bridge):
        bridge = make_bridge(start=False)
        tool = bridge_tool(bridge, ToolDescriptor(name="echo", description="Echo"))
        assert tool.func(marker="x").startswith("Error calling echo: worker_unavailable:")


def test_describe_tool():
    text = describe_tool(ToolDescriptor(
        name="get_current_view_elements",
        description="Get elements from the current view",
        input_schema={
            "type": "object",
            "properties": {"limit": {"type": "number", "description": "Max results"}},
        },
    ))
    assert text.splitlines()[0] == "## Tool: get_current_view_elements"
    assert "  - limit (number): Max results" in text
