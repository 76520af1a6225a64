from __future__ import annotations

import json
import traceback
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from loguru import logger

from agent_runtime.audit import AuditLogger
from agent_runtime.checkpoint import CheckpointHandler
from agent_runtime.cost_tracker import CostTracker
from agent_runtime.governance import GovernanceGate
from agent_runtime.persistence import ToolCallRecord, utc_now
from agent_runtime.provider import ChatResponse, Provider
from agent_runtime.retry import RetryConfig, with_retry
from agent_runtime.roles import RoleSource
from agent_runtime.tool import ExecutionContext, ToolCall, ToolResult
from agent_runtime.tool_executor import ToolExecutor, build_denied_audit_entry


NOT_EXECUTED_PAUSED = "Not executed: session paused"


@dataclass(frozen=True)
class TurnOutcome:
    # None means the loop should take another turn.
    stop_reason: str | None = None
    error: str | None = None
    error_stack: str | None = None
    recoverable: bool = False


def build_assistant_message(response: ChatResponse) -> dict[str, Any]:
    message: dict[str, Any] = {"role": "assistant", "content": response.content}
    if response.tool_calls:
        message["tool_calls"] = [
            {"id": call.id, "name": call.name, "arguments": call.arguments}
            for call in response.tool_calls
        ]
    return message


def build_tool_message(call: ToolCall, record: ToolCallRecord) -> dict[str, Any]:
    if not record.allowed:
        payload: dict[str, Any] = {"error": f"DENIED: {record.denial_reason}", "tool_name": call.name}
    elif record.result is not None:
        payload = {
            "success": record.result.get("success", False),
            "data": record.result.get("data"),
            "error": record.result.get("error"),
        }
    else:
        payload = {"error": "No result available"}
    return {
        "role": "tool",
        "content": json.dumps(payload, default=str),
        "tool_call_id": call.id,
        "tool_name": call.name,
    }


def build_skipped_tool_message(call: ToolCall, reason: str) -> dict[str, Any]:
    return {
        "role": "tool",
        "content": json.dumps({"success": False, "error": reason, "tool_name": call.name}),
        "tool_call_id": call.id,
        "tool_name": call.name,
    }


class TurnEngine:
    """Runs one provider turn and the tool calls it requests."""

    def __init__(
        self,
        *,
        provider: Provider,
        governance_gate: GovernanceGate,
        executor: ToolExecutor,
        cost_tracker: CostTracker,
        context: ExecutionContext,
        provider_tools: list[dict],
        retry_config: RetryConfig,
        role_id: str | None = None,
        role_source: RoleSource | None = None,
        dry_run: bool = False,
        checkpoint_handler: CheckpointHandler | None = None,
        audit_logger: AuditLogger | None = None,
        retry_sleep: Callable[[float], Awaitable[Any]] | None = None,
        on_append_message: Callable[[dict[str, Any]], None],
        on_usage: Callable[[int, int], None],
        on_record_tool_call: Callable[[ToolCallRecord], None],
        on_tool_started: Callable[[ToolCall], None],
        on_tool_completed: Callable[[ToolCall, ToolCallRecord], None],
    ) -> None:
        self._provider = provider
        self._gate = governance_gate
        self._executor = executor
        self._cost_tracker = cost_tracker
        self._context = context
        self._provider_tools = provider_tools
        self._retry_config = retry_config
        self._role_id = role_id
        self._role_source = role_source
        self._dry_run = dry_run
        self._checkpoint = checkpoint_handler
        self._audit = audit_logger
        self._retry_sleep = retry_sleep
        self._on_append_message = on_append_message
        self._on_usage = on_usage
        self._on_record_tool_call = on_record_tool_call
        self._on_tool_started = on_tool_started
        self._on_tool_completed = on_tool_completed

    async def run(self, *, messages: list[dict[str, Any]], turn: int) -> TurnOutcome:
        retry_kwargs = {"sleep": self._retry_sleep} if self._retry_sleep is not None else {}
        outcome = await with_retry(
            lambda: self._provider.chat(messages, self._provider_tools),
            self._retry_config,
            **retry_kwargs,
        )

        if not outcome.success:
            error = outcome.error
            retry_info = f" (retried {outcome.attempts - 1} times)" if outcome.was_retryable else " (non-retryable)"
            logger.error(f"Provider call failed{retry_info}: {error}")
            return TurnOutcome(
                stop_reason="error",
                error=str(error) or type(error).__name__,
                error_stack="".join(traceback.format_exception(error)) if error is not None else None,
                recoverable=outcome.was_retryable,
            )

        response: ChatResponse = outcome.data
        self._on_append_message(build_assistant_message(response))

        usage = response.usage
        self._cost_tracker.add_usage(usage.input_tokens, usage.output_tokens)
        self._on_usage(usage.input_tokens, usage.output_tokens)

        if self._cost_tracker.has_limits():
            logger.info(self._cost_tracker.format_turn_summary(turn))

        limits = self._cost_tracker.check_limits()
        if limits.exceeded:
            logger.warning(f"Session ended: cost_limit - {limits.message}")
            return TurnOutcome(stop_reason="cost_limit", error=limits.message or "Cost limit exceeded")
        if limits.warning:
            logger.warning(limits.message)

        if not response.tool_calls and response.stop_reason == "end_turn":
            return TurnOutcome(stop_reason="end_turn")

        # Sequential: later calls may depend on earlier side effects.
        for index, call in enumerate(response.tool_calls):
            record = await self.process_tool_call(call)
            self._on_record_tool_call(record)
            self._on_append_message(build_tool_message(call, record))

            if self._checkpoint is not None and self._checkpoint.paused:
                logger.warning("Session paused due to approval timeout")
                for skipped in response.tool_calls[index + 1:]:
                    self._on_append_message(build_skipped_tool_message(skipped, NOT_EXECUTED_PAUSED))
                return TurnOutcome(stop_reason="paused", error="Session paused: approval timeout")

        return TurnOutcome()

    async def process_tool_call(self, call: ToolCall) -> ToolCallRecord:
        timestamp = utc_now()
        self._on_tool_started(call)
        logger.info(f"Tool call: {call.name}")

        decision = await self._gate.validate_async(
            call,
            self._context.role,
            role_id=self._role_id,
            role_source=self._role_source,
            chain_id=self._context.chain_id,
        )
        if not decision.allowed:
            logger.info(f"DENIED: {decision.reason}")
            if self._audit is not None and AuditLogger.should_log(call.name):
                await self._audit.log(build_denied_audit_entry(call.name, call.arguments, decision.reason))
            return self._finish(call, ToolCallRecord(
                timestamp=timestamp,
                name=call.name,
                arguments=call.arguments,
                allowed=False,
                denial_reason=decision.reason,
            ))

        if self._checkpoint is not None and self._checkpoint.requires_approval(call.name, call.arguments):
            approval = await self._checkpoint.request_approval(call.name, call.arguments)
            if not approval.approved:
                reason = (
                    "Action rejected: approval timeout"
                    if approval.reason == "timeout"
                    else "Action rejected by human operator"
                )
                logger.info(f"CHECKPOINT: {reason}")
                return self._finish(call, ToolCallRecord(
                    timestamp=timestamp,
                    name=call.name,
                    arguments=call.arguments,
                    allowed=False,
                    denial_reason=reason,
                ))

        if self._dry_run:
            logger.info(f"DRY RUN: would execute {call.name}")
            result = ToolResult(success=True, data={"dry_run": True})
        else:
            result = await self._executor.execute(call.name, call.arguments, self._context)
            logger.info(f"Result: {'success' if result.success else 'failed'}")

        return self._finish(call, ToolCallRecord(
            timestamp=timestamp,
            name=call.name,
            arguments=call.arguments,
            allowed=True,
            result=result.to_dict(),
        ))

    def _finish(self, call: ToolCall, record: ToolCallRecord) -> ToolCallRecord:
        self._on_tool_completed(call, record)
        return record
