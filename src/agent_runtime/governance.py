"""Authorization of tool calls by role, file path rules and cross-chain file locks."""

from __future__ import annotations

from dataclasses import dataclass
from fnmatch import fnmatchcase
from typing import Any, Mapping, Protocol, Sequence, runtime_checkable

from loguru import logger

from agent_runtime.roles import RoleSource
from agent_runtime.tool import CONTROL_ROLE, IMPL_ROLE, ToolCall, ToolDefinition
from agent_runtime.tool_registry import ToolRegistry


@dataclass(frozen=True)
class GovernanceDecision:
    allowed: bool
    reason: str | None = None

    @classmethod
    def allow(cls) -> GovernanceDecision:
        return cls(allowed=True)

    @classmethod
    def deny(cls, reason: str) -> GovernanceDecision:
        return cls(allowed=False, reason=reason)


@dataclass(frozen=True)
class LockStatus:
    locked: bool
    chain_id: str | None = None


@runtime_checkable
class LockOracle(Protocol):
    async def is_file_locked(self, path: str) -> LockStatus: ...


@dataclass(frozen=True)
class LockCheckResult:
    available: bool
    locked_by: str | None = None


@dataclass(frozen=True)
class FilePathRules:
    allowed: tuple[str, ...]
    denied: tuple[str, ...] = ()


DEFAULT_FILE_PATH_RULES: dict[str, FilePathRules] = {
    IMPL_ROLE: FilePathRules(
        allowed=(
            "src/**",
            "tests/**",
            "packages/**/src/**",
            "packages/**/__tests__/**",
            "*.config.*",
            "pyproject.toml",
            "**/README.md",
        ),
        denied=(
            "docs/tasks/**",
            "docs/requests/**",
            "docs/adr/**",
        ),
    ),
    CONTROL_ROLE: FilePathRules(
        allowed=(
            "docs/**/*.md",
            "docs/tasks/**",
            "docs/requests/**",
            "docs/adr/**",
            "AGENTS.md",
            "**/AGENTS.md",
        ),
        denied=(
            "src/**",
            "tests/**",
            "packages/**/src/**",
            "packages/**/__tests__/**",
        ),
    ),
}


def normalize_path(path: str) -> str:
    normalized = path.replace("\\", "/")
    while normalized.startswith("./"):
        normalized = normalized[2:]
    return normalized.lstrip("/")


def _match_parts(parts: Sequence[str], patterns: Sequence[str]) -> bool:
    if not patterns:
        return not parts
    head = patterns[0]
    if head == "**":
        # ** spans zero or more whole directories
        return any(_match_parts(parts[i:], patterns[1:]) for i in range(len(parts) + 1))
    if not parts:
        return False
    return fnmatchcase(parts[0], head) and _match_parts(parts[1:], patterns[1:])


def glob_match(path: str, pattern: str) -> bool:
    """Match a slash-separated path against a glob where ``*`` stays inside one segment."""
    return _match_parts(path.split("/"), pattern.split("/"))


def file_action_for(tool: ToolDefinition, arguments: Mapping[str, Any]) -> str | None:
    """The file action a call performs, or None when the call does not write a path."""
    if tool.file_action is None or not isinstance(arguments.get("path"), str):
        return None
    if tool.name == "write_file":
        content = arguments.get("content")
        if not isinstance(content, str) or content.strip() == "":
            return "delete"
    return tool.file_action


class GovernanceGate:
    def __init__(
        self,
        registry: ToolRegistry,
        *,
        lock_oracle: LockOracle | None = None,
        file_path_rules: Mapping[str, FilePathRules] | None = None,
    ):
        self._registry = registry
        self._lock_oracle = lock_oracle
        self._file_path_rules = dict(DEFAULT_FILE_PATH_RULES if file_path_rules is None else file_path_rules)

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    def validate(self, tool_call: ToolCall, role: str) -> GovernanceDecision:
        """Role-table validation without lock checks."""
        tool = self._registry.get_tool(tool_call.name)
        if tool is None:
            return GovernanceDecision.deny(f"Unknown tool: {tool_call.name}")

        if not self._registry.can_role_use_tool(role, tool_call.name):
            return GovernanceDecision.deny(f"Tool {tool_call.name} is not available to {role} role")

        return self._validate_file_rules(tool, tool_call, role)

    async def validate_async(
        self,
        tool_call: ToolCall,
        role: str | None = None,
        *,
        role_id: str | None = None,
        role_source: RoleSource | None = None,
        chain_id: str | None = None,
    ) -> GovernanceDecision:
        """Full validation: role (static or resolved from ``role_source``), path rules and locks."""
        if role_id is not None and role_source is not None:
            decision = await self._validate_role_id(tool_call, role_id, role_source)
        elif role is not None:
            decision = self.validate(tool_call, role)
        else:
            raise ValueError("validate_async needs a role or a role_id with a role_source")

        if not decision.allowed:
            return decision

        tool = self._registry.get_tool(tool_call.name)
        if tool is None or chain_id is None or file_action_for(tool, tool_call.arguments) is None:
            return decision

        path = tool_call.arguments["path"]
        lock = await self.check_locks(path, chain_id)
        if not lock.available:
            return GovernanceDecision.deny(f"File {path} is locked by chain {lock.locked_by}")
        return decision

    async def check_locks(self, path: str, chain_id: str | None = None) -> LockCheckResult:
        if self._lock_oracle is None:
            return LockCheckResult(available=True)

        status = await self._lock_oracle.is_file_locked(path)
        if status.locked and status.chain_id != chain_id:
            logger.debug(f"Lock conflict on {path}: held by {status.chain_id}, requested by {chain_id}")
            return LockCheckResult(available=False, locked_by=status.chain_id)
        return LockCheckResult(available=True)

    def validate_batch(self, tool_calls: Sequence[ToolCall], role: str) -> list[GovernanceDecision]:
        return [self.validate(call, role) for call in tool_calls]

    def all_allowed(self, tool_calls: Sequence[ToolCall], role: str) -> bool:
        decisions = self.validate_batch(tool_calls, role)
        return all(d.allowed for d in decisions)

    def validate_file_path(self, path: str, role: str, action: str) -> GovernanceDecision:
        rules = self._file_path_rules.get(role)
        if rules is None:
            return GovernanceDecision.allow()

        normalized = normalize_path(path)

        # Deny patterns win over allow patterns.
        for pattern in rules.denied:
            if glob_match(normalized, pattern):
                return GovernanceDecision.deny(
                    f"Role {role} cannot {action} {path} - matches denied pattern {pattern}"
                )

        if not any(glob_match(normalized, pattern) for pattern in rules.allowed):
            return GovernanceDecision.deny(
                f"Role {role} cannot {action} {path} - does not match any allowed pattern"
            )
        return GovernanceDecision.allow()

    async def _validate_role_id(
        self,
        tool_call: ToolCall,
        role_id: str,
        role_source: RoleSource,
    ) -> GovernanceDecision:
        tool = self._registry.get_tool(tool_call.name)
        if tool is None:
            return GovernanceDecision.deny(f"Unknown tool: {tool_call.name}")

        record = await role_source.get(role_id)
        if record is None:
            return GovernanceDecision.deny(f"Tool {tool_call.name} not allowed for role {role_id}: role not found")
        if tool_call.name not in record.tool_ids:
            return GovernanceDecision.deny(f"Tool {tool_call.name} not allowed for role {role_id}")

        return self._validate_file_rules(tool, tool_call, role_id)

    def _validate_file_rules(self, tool: ToolDefinition, tool_call: ToolCall, role: str) -> GovernanceDecision:
        action = file_action_for(tool, tool_call.arguments)
        if action is None:
            return GovernanceDecision.allow()
        return self.validate_file_path(tool_call.arguments["path"], role, action)
