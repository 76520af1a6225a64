"""Human-in-the-loop approval for sensitive tool calls."""

from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Protocol, runtime_checkable

from loguru import logger

DEFAULT_APPROVAL_TIMEOUT_MS = 5 * 60 * 1000

SENSITIVE_ACTIONS = frozenset({
    "write_file",  # only when deleting (empty content)
    "task_complete",
    "chain_close",
    "spawn_impl_session",
})


@dataclass(frozen=True)
class ApprovalResult:
    approved: bool
    # "rejected", "timeout" or free text supplied by the approver.
    reason: str | None = None


@dataclass(frozen=True)
class ApprovalContext:
    action: str
    params: dict[str, Any] = field(default_factory=dict)
    session_id: str | None = None


@runtime_checkable
class ApprovalResponder(Protocol):
    async def ask(self, context: ApprovalContext, prompt: str) -> ApprovalResult: ...


RejectionCallback = Callable[[ApprovalContext, ApprovalResult], None]


def _is_delete(params: Mapping[str, Any]) -> bool:
    content = params.get("content")
    return not isinstance(content, str) or content.strip() == ""


def _action_label(context: ApprovalContext) -> str:
    if context.action == "write_file" and _is_delete(context.params):
        return "write_file (delete)"
    if context.action == "spawn_impl_session":
        return "spawn_impl_session (nested)"
    return context.action


def _format_timeout(timeout_ms: int) -> str:
    minutes = timeout_ms // 60_000
    if minutes >= 1:
        return f"{minutes}m"
    return f"{timeout_ms // 1000}s"


def format_approval_prompt(context: ApprovalContext, timeout_ms: int) -> str:
    lines = ["APPROVAL REQUIRED", f"  Action: {_action_label(context)}"]
    path = context.params.get("path") or context.params.get("file_path")
    if path:
        path = str(path)
        lines.append(f"  Path: {path if len(path) <= 48 else '...' + path[-45:]}")
    for key, label in (("chain_id", "Chain"), ("task_id", "Task")):
        if context.params.get(key):
            lines.append(f"  {label}: {context.params[key]}")
    if context.session_id:
        lines.append(f"  Session: {context.session_id}")
    lines.append(f"Approve? [y/N] (timeout: {_format_timeout(timeout_ms)})")
    return "\n".join(lines)


class ConsoleApprovalResponder:
    """Prompts on the terminal and reads a y/N answer.

    The blocking read runs on a daemon thread so an unanswered prompt never
    keeps the process alive after the approval window has closed.
    """

    def __init__(self, *, input_fn: Callable[[str], str] = input, output_fn: Callable[[str], None] = print):
        self._input_fn = input_fn
        self._output_fn = output_fn

    async def ask(self, context: ApprovalContext, prompt: str) -> ApprovalResult:
        loop = asyncio.get_running_loop()
        answer: asyncio.Future[str | None] = loop.create_future()

        def _settle(value: str | None) -> None:
            if not answer.done():
                answer.set_result(value)

        def _read() -> None:
            try:
                value: str | None = self._input_fn("> ")
            except (EOFError, OSError):
                value = None
            try:
                loop.call_soon_threadsafe(_settle, value)
            except RuntimeError:
                pass  # loop already closed

        self._output_fn(prompt)
        threading.Thread(target=_read, name="approval-prompt", daemon=True).start()

        value = await answer
        if value is not None and value.strip().lower() in {"y", "yes"}:
            return ApprovalResult(approved=True)
        return ApprovalResult(approved=False, reason="rejected")


class CheckpointHandler:
    def __init__(
        self,
        *,
        require_approval: bool = False,
        auto_approve: bool = False,
        approval_timeout_ms: int = DEFAULT_APPROVAL_TIMEOUT_MS,
        session_id: str | None = None,
        responder: ApprovalResponder | None = None,
        on_rejection: RejectionCallback | None = None,
        sensitive_actions: frozenset[str] = SENSITIVE_ACTIONS,
    ):
        self._require_approval = require_approval
        self._auto_approve = auto_approve
        self._approval_timeout_ms = approval_timeout_ms
        self._responder = responder
        self._on_rejection = on_rejection
        self._sensitive_actions = sensitive_actions
        self._paused = False
        self._pending: asyncio.Future[ApprovalResult] | None = None
        self.session_id = session_id

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def has_pending_request(self) -> bool:
        return self._pending is not None and not self._pending.done()

    @property
    def approval_timeout_ms(self) -> int:
        return self._approval_timeout_ms

    def resume(self) -> None:
        self._paused = False

    def requires_approval(self, action: str, params: Mapping[str, Any] | None = None) -> bool:
        if not self._require_approval or self._auto_approve:
            return False
        if action not in self._sensitive_actions:
            return False
        if action == "write_file":
            return _is_delete(params or {})
        return True

    def respond(self, approved: bool, reason: str | None = None) -> bool:
        """Resolve the pending approval request. Returns False when nothing is waiting."""
        if not self.has_pending_request:
            return False
        if approved:
            result = ApprovalResult(approved=True)
        else:
            result = ApprovalResult(approved=False, reason=reason or "rejected")
        self._pending.set_result(result)
        return True

    async def request_approval(self, action: str, params: Mapping[str, Any] | None = None) -> ApprovalResult:
        if self._auto_approve:
            return ApprovalResult(approved=True)

        context = ApprovalContext(action=action, params=dict(params or {}), session_id=self.session_id)
        prompt = format_approval_prompt(context, self._approval_timeout_ms)
        logger.info(f"Approval required for {_action_label(context)} (session={self.session_id})")

        result = await self._wait_for_approval(context, prompt)

        if result.approved:
            logger.info(f"Action approved: {action}")
            return result

        if result.reason == "timeout":
            self._paused = True
            logger.warning(f"Session paused: approval for {action} timed out")
        else:
            logger.info(f"Action rejected: {action} ({result.reason})")

        if self._on_rejection is not None:
            try:
                self._on_rejection(context, result)
            except Exception as ex:
                logger.warning(f"Rejection callback failed: {ex}")
        return result

    async def _wait_for_approval(self, context: ApprovalContext, prompt: str) -> ApprovalResult:
        loop = asyncio.get_running_loop()
        pending: asyncio.Future[ApprovalResult] = loop.create_future()
        self._pending = pending

        responder_task: asyncio.Task | None = None
        if self._responder is not None:
            responder_task = asyncio.create_task(self._ask_responder(context, prompt, pending))

        try:
            return await asyncio.wait_for(
                asyncio.shield(pending),
                timeout=max(0, self._approval_timeout_ms) / 1000,
            )
        except asyncio.TimeoutError:
            return ApprovalResult(approved=False, reason="timeout")
        finally:
            self._pending = None
            if not pending.done():
                pending.cancel()
            if responder_task is not None and not responder_task.done():
                responder_task.cancel()

    async def _ask_responder(
        self,
        context: ApprovalContext,
        prompt: str,
        pending: asyncio.Future[ApprovalResult],
    ) -> None:
        try:
            result = await self._responder.ask(context, prompt)
        except Exception as ex:
            logger.warning(f"Approval responder failed: {ex}")
            result = ApprovalResult(approved=False, reason="rejected")
        if not pending.done():
            pending.set_result(result)


def approval_timeout_from_env(value: str | None, default: int = DEFAULT_APPROVAL_TIMEOUT_MS) -> int:
    """Parse an approval timeout; values under 1000 are seconds, otherwise milliseconds."""
    if not value:
        return default
    try:
        parsed = int(value.strip())
    except ValueError:
        return default
    if parsed <= 0:
        return default
    return parsed * 1000 if parsed < 1000 else parsed
