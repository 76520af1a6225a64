from __future__ import annotations

from typing import Any, Mapping

from loguru import logger

from agent_runtime.audit import AuditLogger
from agent_runtime.tool import ExecutionContext, ToolHandler, ToolResult


def build_audit_entry(tool_name: str, params: Mapping[str, Any], result: ToolResult) -> dict[str, Any]:
    entry: dict[str, Any] = {
        "tool": tool_name,
        "result": "success" if result.success else "error",
        "governance": "pass",
    }
    if params.get("path"):
        entry["path"] = params["path"]

    if not result.success or not isinstance(result.data, dict):
        return entry

    data = result.data
    if tool_name == "read_file":
        if isinstance(data.get("lines_returned"), int):
            entry["lines"] = data["lines_returned"]
    elif tool_name == "write_file":
        action = data.get("action")
        if action in ("created", "modified", "deleted"):
            entry["action"] = {"created": "create", "modified": "modify", "deleted": "delete"}[action]
        if isinstance(data.get("bytes"), int):
            entry["bytes"] = data["bytes"]
    elif tool_name == "list_files":
        if isinstance(data.get("count"), int):
            entry["count"] = data["count"]
    elif tool_name == "search_files":
        if isinstance(data.get("total_matches"), int):
            entry["matches"] = data["total_matches"]
        # Search path defaults to the workspace root.
        entry["path"] = params.get("path") or "."
    return entry


def build_denied_audit_entry(tool_name: str, params: Mapping[str, Any], reason: str) -> dict[str, Any]:
    return {
        "tool": tool_name,
        "path": params.get("path"),
        "result": "denied",
        "governance": "deny",
        "reason": reason,
    }


class ToolExecutor:
    """Routes authorized tool calls to their handlers."""

    def __init__(self, handlers: Mapping[str, ToolHandler] | None = None):
        self._handlers: dict[str, ToolHandler] = dict(handlers or {})

    async def execute(
        self,
        tool_name: str,
        params: Mapping[str, Any],
        context: ExecutionContext,
    ) -> ToolResult:
        handler = self._handlers.get(tool_name)
        if handler is None:
            return ToolResult(success=False, error=f"Unknown tool: {tool_name}")

        args = dict(params)
        try:
            result = await handler(args, context)
        except Exception as ex:
            logger.warning(f"Tool {tool_name} raised: {ex}")
            result = ToolResult(success=False, error=f"Tool execution failed: {ex}")

        if context.audit_log is not None and AuditLogger.should_log(tool_name):
            await context.audit_log(build_audit_entry(tool_name, args, result))

        return result

    def has_executor(self, tool_name: str) -> bool:
        return tool_name in self._handlers

    def register_executor(self, tool_name: str, handler: ToolHandler) -> None:
        self._handlers[tool_name] = handler

    def registered_tools(self) -> list[str]:
        return list(self._handlers)
