from __future__ import annotations

from dataclasses import dataclass

from loguru import logger

from agent_runtime.agent_config import LoopDependencies, SessionConfig
from agent_runtime.app_config import AppConfig, RuntimeEnv
from agent_runtime.checkpoint import ApprovalResponder, CheckpointHandler, ConsoleApprovalResponder
from agent_runtime.governance import GovernanceGate
from agent_runtime.logging_config import setup_logging
from agent_runtime.persistence import SessionStore
from agent_runtime.provider import Provider, create_provider
from agent_runtime.roles import StaticRoleSource
from agent_runtime.shutdown import ShutdownCoordinator
from agent_runtime.tool_executor import ToolExecutor
from agent_runtime.tool_registry import ToolRegistry
from agent_runtime.tools import builtin_definitions, builtin_handlers


@dataclass
class AppRuntime:
    config: SessionConfig
    deps: LoopDependencies
    store: SessionStore
    log_descriptions: list[str]


def bootstrap_runtime(
    app: AppConfig,
    env: RuntimeEnv,
    *,
    provider: Provider | None = None,
    responder: ApprovalResponder | None = None,
) -> AppRuntime:
    log_descriptions = setup_logging(level=app.log_level, consumers=app.log_consumers)

    if provider is None:
        provider = create_provider(app.provider_name, env.provider_api_key, app.model, max_tokens=app.max_tokens)

    registry = ToolRegistry(builtin_definitions())
    executor = ToolExecutor(builtin_handlers())
    governance_gate = GovernanceGate(registry)

    if responder is None and app.require_approval and not app.auto_approve:
        responder = ConsoleApprovalResponder()
    checkpoint_handler = CheckpointHandler(
        require_approval=app.require_approval,
        auto_approve=app.auto_approve,
        approval_timeout_ms=env.approval_timeout_ms or app.approval_timeout_ms,
        responder=responder,
    )

    store = SessionStore(app.workspace_root)
    if app.session_retention_days > 0:
        store.cleanup(app.session_retention_days)

    role_source = StaticRoleSource.from_tool_ids(app.roles) if app.roles else None
    if app.role_id and role_source is None:
        logger.warning(f"RoleId {app.role_id!r} configured without Roles; falling back to role {app.role!r}")

    config = SessionConfig(
        role=app.role,
        workspace_root=app.workspace_root,
        model=app.model,
        role_id=app.role_id if role_source is not None else None,
        chain_id=app.chain_id,
        task_id=app.task_id,
        max_iterations=app.max_iterations,
        dry_run=app.dry_run,
        max_nesting_depth=app.max_nesting_depth,
        retry=app.retry,
        max_tokens=env.max_session_tokens or app.max_session_tokens,
        max_cost=env.max_session_cost or app.max_session_cost,
        resume_session_id=app.resume_session_id,
    )

    deps = LoopDependencies(
        provider=provider,
        registry=registry,
        executor=executor,
        governance_gate=governance_gate,
        checkpoint_handler=checkpoint_handler,
        shutdown=ShutdownCoordinator(),
        store=store,
        role_source=role_source,
        audit_enabled=app.audit_enabled,
    )

    return AppRuntime(config=config, deps=deps, store=store, log_descriptions=log_descriptions)
