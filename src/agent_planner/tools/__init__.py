from agent_planner.tools.gateway import ToolExecutor
from agent_planner.tools.registry import TOOL_NAMES, ToolSpec, build_registry, list_tools
from agent_planner.tools.schemas import TOOL_CALL_ADAPTER

__all__ = ["TOOL_CALL_ADAPTER", "TOOL_NAMES", "ToolExecutor", "ToolSpec", "build_registry", "list_tools"]
