from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Protocol, runtime_checkable

CONTROL_ROLE = "control"
IMPL_ROLE = "impl"

FILE_ACTIONS = ("create", "modify", "delete")


@dataclass(frozen=True)
class ToolDefinition:
    name: str
    description: str
    parameters: dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})
    allowed_roles: tuple[str, ...] = (CONTROL_ROLE, IMPL_ROLE)
    category: str = "general"
    mutates: bool = False
    # "create" | "modify" | "delete" for tools that write the file named by the "path" argument.
    file_action: str | None = None

    def to_provider_tool(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.parameters,
        }


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolResult:
    success: bool
    data: Any = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"success": self.success}
        if self.data is not None:
            out["data"] = self.data
        if self.error is not None:
            out["error"] = self.error
        return out

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ToolResult:
        return cls(success=bool(raw.get("success")), data=raw.get("data"), error=raw.get("error"))


@dataclass(frozen=True)
class ChildSessionRequest:
    chain_id: str
    task_id: str
    context: str | None = None


@dataclass
class ChildSessionResult:
    success: bool
    session_id: str
    iterations: int
    tokens_used: dict[str, int]
    error: str | None = None
    summary: str | None = None


@runtime_checkable
class ChildSessionSpawner(Protocol):
    async def spawn(self, request: ChildSessionRequest) -> ChildSessionResult: ...


AuditLogCallback = Callable[[dict[str, Any]], Awaitable[None]]


@dataclass
class ExecutionContext:
    role: str
    workspace_root: str
    session_id: str | None = None
    chain_id: str | None = None
    task_id: str | None = None
    parent_session_id: str | None = None
    nesting_depth: int = 0
    max_nesting_depth: int = 2
    audit_log: AuditLogCallback | None = None
    child_spawner: ChildSessionSpawner | None = None


ToolHandler = Callable[[dict[str, Any], ExecutionContext], Awaitable[ToolResult]]
