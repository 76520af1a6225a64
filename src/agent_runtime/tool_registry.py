from __future__ import annotations

from typing import Any, Iterable

from agent_runtime.roles import RoleSource
from agent_runtime.tool import ToolDefinition


class ToolRegistry:
    """Tool catalog with role-based filtering."""

    def __init__(self, tools: Iterable[ToolDefinition] = ()):
        self._tools: dict[str, ToolDefinition] = {}
        for tool in tools:
            self.register_tool(tool)

    def get_tool(self, name: str) -> ToolDefinition | None:
        return self._tools.get(name)

    def register_tool(self, tool: ToolDefinition) -> None:
        # Re-registering a name replaces the previous definition.
        self._tools.pop(tool.name, None)
        self._tools[tool.name] = tool

    def all_tools(self) -> list[ToolDefinition]:
        return list(self._tools.values())

    def tools_for_role(self, role: str) -> list[ToolDefinition]:
        return [t for t in self._tools.values() if role in t.allowed_roles]

    def can_role_use_tool(self, role: str, name: str) -> bool:
        tool = self._tools.get(name)
        return tool is not None and role in tool.allowed_roles

    async def tools_for_role_id(self, role_id: str, role_source: RoleSource) -> list[ToolDefinition]:
        role = await role_source.get(role_id)
        if role is None:
            return []
        return [t for t in self._tools.values() if t.name in role.tool_ids]

    @staticmethod
    def provider_tools(tools: Iterable[ToolDefinition]) -> list[dict[str, Any]]:
        return [t.to_provider_tool() for t in tools]

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)
