from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from agent_runtime.checkpoint import CheckpointHandler
from agent_runtime.governance import GovernanceGate
from agent_runtime.persistence import SessionStore, ToolCallRecord
from agent_runtime.provider import Provider
from agent_runtime.retry import DEFAULT_RETRY_CONFIG, RetryConfig
from agent_runtime.roles import RoleSource
from agent_runtime.shutdown import ShutdownCoordinator
from agent_runtime.tool import ToolCall
from agent_runtime.tool_executor import ToolExecutor
from agent_runtime.tool_registry import ToolRegistry

DEFAULT_MODEL = "claude-sonnet-4-5-20250929"
DEFAULT_MAX_ITERATIONS = 50
DEFAULT_MAX_NESTING_DEPTH = 2


@dataclass
class SessionConfig:
    role: str
    workspace_root: str
    model: str = DEFAULT_MODEL
    # Dynamic role resolved through LoopDependencies.role_source instead of the static table.
    role_id: str | None = None
    chain_id: str | None = None
    task_id: str | None = None
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    dry_run: bool = False
    parent_session_id: str | None = None
    nesting_depth: int = 0
    max_nesting_depth: int = DEFAULT_MAX_NESTING_DEPTH
    parent_context: str | None = None
    retry: RetryConfig = DEFAULT_RETRY_CONFIG
    max_tokens: int | None = None
    max_cost: float | None = None
    system_prompt: str | None = None
    resume_session_id: str | None = None


@dataclass
class SessionCallbacks:
    on_message: Callable[[dict[str, Any]], None] | None = None
    on_tool_call: Callable[[ToolCall], None] | None = None
    on_tool_result: Callable[[ToolCall, ToolCallRecord], None] | None = None


@dataclass
class LoopDependencies:
    provider: Provider
    registry: ToolRegistry
    executor: ToolExecutor
    governance_gate: GovernanceGate
    checkpoint_handler: CheckpointHandler | None = None
    shutdown: ShutdownCoordinator | None = None
    store: SessionStore | None = None
    role_source: RoleSource | None = None
    audit_enabled: bool = True
    callbacks: SessionCallbacks = field(default_factory=SessionCallbacks)
    retry_sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
