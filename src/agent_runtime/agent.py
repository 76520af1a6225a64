from __future__ import annotations

import asyncio
import dataclasses
import traceback
from dataclasses import dataclass, field
from typing import Any, Callable

from loguru import logger

from agent_runtime.agent_config import LoopDependencies, SessionConfig
from agent_runtime.audit import AuditLogger
from agent_runtime.cost_tracker import CostSnapshot, CostTracker, TokenUsage
from agent_runtime.errors import SessionNotFoundError, SessionNotResumableError
from agent_runtime.logging_config import session_log_context
from agent_runtime.persistence import Session, SessionStore, ToolCallRecord, generate_session_id
from agent_runtime.system_prompt import build_opening_message, build_system_prompt
from agent_runtime.tool import IMPL_ROLE, ChildSessionRequest, ChildSessionResult, ExecutionContext
from agent_runtime.tool_registry import ToolRegistry
from agent_runtime.turn_engine import TurnEngine, TurnOutcome

NOT_EXECUTED_INTERRUPTED = "Not executed: session interrupted"


@dataclass
class SessionResult:
    success: bool
    iterations: int
    tool_calls: list[ToolCallRecord]
    tokens_used: TokenUsage
    stop_reason: str
    session_id: str
    cost_snapshot: CostSnapshot | None = None
    error: str | None = None
    child_sessions: list[SessionResult] = field(default_factory=list)


def _notify(callback: Callable[..., Any] | None, *args: Any) -> None:
    if callback is None:
        return
    try:
        callback(*args)
    except Exception as ex:
        logger.warning(f"Session observer raised: {ex}")


class _NestedSessionSpawner:
    """Runs a child impl session one level deeper than its parent."""

    def __init__(
        self,
        config: SessionConfig,
        deps: LoopDependencies,
        parent: Session,
        results: list[SessionResult],
    ):
        self._config = config
        self._deps = deps
        self._parent = parent
        self._results = results

    async def spawn(self, request: ChildSessionRequest) -> ChildSessionResult:
        logger.info(f"Spawning child impl session for task {request.task_id}")
        child_config = dataclasses.replace(
            self._config,
            role=IMPL_ROLE,
            role_id=None,
            chain_id=request.chain_id,
            task_id=request.task_id,
            parent_session_id=self._parent.id,
            nesting_depth=self._config.nesting_depth + 1,
            parent_context=request.context,
            system_prompt=None,
            resume_session_id=None,
        )
        child = await run_session(child_config, self._deps)

        self._results.append(child)
        self._parent.add_child_session(child.session_id)

        return ChildSessionResult(
            success=child.success,
            session_id=child.session_id,
            iterations=child.iterations,
            tokens_used=child.tokens_used.to_dict(),
            error=child.error,
            summary=(
                f"Impl session completed in {child.iterations} iterations"
                if child.success
                else f"Impl session failed: {child.error}"
            ),
        )


async def _tools_for(config: SessionConfig, deps: LoopDependencies, registry: ToolRegistry):
    if config.role_id and deps.role_source is not None:
        return await registry.tools_for_role_id(config.role_id, deps.role_source)
    return registry.tools_for_role(config.role)


def _open_session(config: SessionConfig, store: SessionStore) -> tuple[Session | None, str | None]:
    if not config.resume_session_id:
        session = Session(
            role=config.role,
            model=config.model,
            store=store,
            chain_id=config.chain_id,
            task_id=config.task_id,
            parent_session_id=config.parent_session_id,
            nesting_depth=config.nesting_depth,
        )
        session.save()
        return session, None

    try:
        session = Session.load_or_raise(config.resume_session_id, store)
        session.reopen()
    except (SessionNotFoundError, SessionNotResumableError) as ex:
        return None, str(ex)
    session.answer_pending_tool_calls(NOT_EXECUTED_INTERRUPTED)
    logger.info(f"Resuming session {session.id} at turn {session.last_turn_index}")
    return session, None


async def run_session(config: SessionConfig, deps: LoopDependencies) -> SessionResult:
    if config.nesting_depth > config.max_nesting_depth:
        logger.error(f"Maximum nesting depth ({config.max_nesting_depth}) exceeded")
        return SessionResult(
            success=False,
            iterations=0,
            tool_calls=[],
            tokens_used=TokenUsage(),
            stop_reason="max_depth",
            session_id=generate_session_id(),
            error=f"Maximum nesting depth ({config.max_nesting_depth}) exceeded",
        )

    store = deps.store or SessionStore(config.workspace_root)
    session, open_error = _open_session(config, store)
    if session is None:
        logger.error(open_error)
        return SessionResult(
            success=False,
            iterations=0,
            tool_calls=[],
            tokens_used=TokenUsage(),
            stop_reason="error",
            session_id=config.resume_session_id or "",
            error=open_error,
        )
    if session.role != config.role:
        # The transcript was produced under the saved role's allow-list.
        logger.warning(f"Session {session.id} was started as {session.role}; ignoring requested role {config.role}")
        config = dataclasses.replace(config, role=session.role)

    with session_log_context(session.id):
        return await _drive_session(session, config, deps)


async def _drive_session(session: Session, config: SessionConfig, deps: LoopDependencies) -> SessionResult:
    cost_tracker = CostTracker(config.model, max_tokens=config.max_tokens, max_cost=config.max_cost)
    # Usage already accounted for in a resumed session counts toward its limits.
    cost_tracker.add_usage(session.token_usage.input, session.token_usage.output)

    callbacks = deps.callbacks
    messages: list[dict[str, Any]] = session.messages
    tool_calls: list[ToolCallRecord] = []
    child_results: list[SessionResult] = []

    def append_message(message: dict[str, Any]) -> None:
        messages.append(message)
        session.add_message(message)
        _notify(callbacks.on_message, message)

    def record_tool_call(record: ToolCallRecord) -> None:
        tool_calls.append(record)
        session.record_tool_call(record)

    tool_definitions = await _tools_for(config, deps, deps.registry)

    if not messages:
        append_message({
            "role": "system",
            "content": config.system_prompt or build_system_prompt(
                config.role,
                session_id=session.id,
                workspace_root=config.workspace_root,
                tools=tool_definitions,
                chain_id=config.chain_id,
                task_id=config.task_id,
            ),
        })
        append_message({
            "role": "user",
            "content": build_opening_message(config.role, config.chain_id, config.task_id, config.parent_context),
        })

    checkpoint = deps.checkpoint_handler
    if checkpoint is not None and checkpoint.session_id is None:
        checkpoint.session_id = session.id

    shutdown = deps.shutdown
    if shutdown is not None and shutdown.session is None:
        shutdown.session = session
    # Only the session that owns the coordinator reports its turns; child turns run inside it.
    track_turns = shutdown is not None and shutdown.session is session

    audit_logger = AuditLogger(session.id, config.workspace_root) if deps.audit_enabled else None

    context = ExecutionContext(
        role=config.role,
        workspace_root=config.workspace_root,
        session_id=session.id,
        chain_id=config.chain_id,
        task_id=config.task_id,
        parent_session_id=config.parent_session_id,
        nesting_depth=config.nesting_depth,
        max_nesting_depth=config.max_nesting_depth,
        audit_log=audit_logger.log if audit_logger is not None else None,
        child_spawner=_NestedSessionSpawner(config, deps, session, child_results),
    )

    engine = TurnEngine(
        provider=deps.provider,
        governance_gate=deps.governance_gate,
        executor=deps.executor,
        cost_tracker=cost_tracker,
        context=context,
        provider_tools=ToolRegistry.provider_tools(tool_definitions),
        retry_config=config.retry,
        role_id=config.role_id,
        role_source=deps.role_source,
        dry_run=config.dry_run,
        checkpoint_handler=checkpoint,
        audit_logger=audit_logger,
        retry_sleep=deps.retry_sleep,
        on_append_message=append_message,
        on_usage=session.update_token_usage,
        on_record_tool_call=record_tool_call,
        on_tool_started=lambda call: _notify(callbacks.on_tool_call, call),
        on_tool_completed=lambda call, record: _notify(callbacks.on_tool_result, call, record),
    )

    logger.info(
        f"Session {session.id} started: role={config.role}, model={config.model}, "
        f"depth={config.nesting_depth}"
    )

    iterations = 0
    outcome = TurnOutcome(stop_reason="max_iterations", error=f"Maximum iterations ({config.max_iterations}) reached")
    try:
        while iterations < config.max_iterations:
            if shutdown is not None and shutdown.should_stop():
                outcome = TurnOutcome(stop_reason="paused", error="Session paused: shutdown requested")
                break

            iterations += 1
            logger.info(f"Iteration {iterations}/{config.max_iterations}")

            turn = asyncio.ensure_future(engine.run(messages=messages, turn=iterations))
            if track_turns:
                shutdown.set_current_turn(turn)
            try:
                turn_outcome = await turn
            finally:
                if track_turns:
                    shutdown.clear_current_turn()
            session.increment_turn_index()

            if turn_outcome.stop_reason is not None:
                outcome = turn_outcome
                break
    except Exception as ex:
        logger.exception(f"Session error: {ex}")
        outcome = TurnOutcome(
            stop_reason="error",
            error=str(ex) or type(ex).__name__,
            error_stack="".join(traceback.format_exception(ex)),
        )

    success = outcome.stop_reason == "end_turn"
    _finalize(session, outcome)
    logger.info(f"Session ended: {outcome.stop_reason}")
    if cost_tracker.has_limits():
        logger.info(cost_tracker.format_session_summary())

    return SessionResult(
        success=success,
        iterations=iterations,
        tool_calls=tool_calls,
        tokens_used=session.token_usage,
        stop_reason=outcome.stop_reason,
        session_id=session.id,
        cost_snapshot=cost_tracker.get_snapshot(),
        error=None if success else outcome.error,
        child_sessions=child_results,
    )


def _finalize(session: Session, outcome: TurnOutcome) -> None:
    try:
        if outcome.stop_reason == "end_turn":
            session.end("success")
        elif outcome.stop_reason == "paused":
            session.set_status("paused")
        elif outcome.stop_reason == "error":
            session.set_failed(outcome.error or "Unknown error", stack=outcome.error_stack, recoverable=outcome.recoverable)
            session.end("failure")
        else:
            session.end("failure")
    except OSError as ex:
        logger.error(f"Failed to persist final state of session {session.id}: {ex}")
