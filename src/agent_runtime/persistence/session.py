"""Crash-recoverable state for one conversation.

Every mutating method writes the session file before returning, so the copy
on disk is never older than the last mutation.
"""

from __future__ import annotations

import copy
import json
import secrets
from datetime import UTC, datetime
from typing import Any

from loguru import logger

from agent_runtime.cost_tracker import TokenUsage
from agent_runtime.errors import SessionNotFoundError, SessionNotResumableError
from agent_runtime.persistence.models import (
    SESSION_OUTCOMES,
    SESSION_STATUSES,
    SessionError,
    ToolCallRecord,
)
from agent_runtime.persistence.store import SessionStore


def utc_now() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def generate_session_id(now: datetime | None = None) -> str:
    now = now or datetime.now(UTC)
    return f"session-{now:%Y%m%d-%H%M%S}-{secrets.token_hex(3)}"


class Session:
    def __init__(
        self,
        *,
        role: str,
        model: str,
        store: SessionStore,
        chain_id: str | None = None,
        task_id: str | None = None,
        parent_session_id: str | None = None,
        nesting_depth: int = 0,
        session_id: str | None = None,
        start_time: str | None = None,
    ):
        self._store = store
        self.id = session_id or generate_session_id()
        self.role = role
        self.model = model
        self.chain_id = chain_id
        self.task_id = task_id
        self.parent_session_id = parent_session_id
        self.nesting_depth = nesting_depth
        self.start_time = start_time or utc_now()
        self.end_time: str | None = None
        self.status = "running"
        self.outcome: str | None = None
        self.last_turn_index = 0
        self.error: SessionError | None = None
        self._child_session_ids: list[str] = []
        self._input_tokens = 0
        self._output_tokens = 0
        self._messages: list[dict[str, Any]] = []
        self._tool_calls: list[ToolCallRecord] = []

    @property
    def token_usage(self) -> TokenUsage:
        return TokenUsage(self._input_tokens, self._output_tokens)

    @property
    def messages(self) -> list[dict[str, Any]]:
        return copy.deepcopy(self._messages)

    @property
    def message_count(self) -> int:
        return len(self._messages)

    @property
    def tool_calls(self) -> list[ToolCallRecord]:
        return list(self._tool_calls)

    @property
    def child_session_ids(self) -> list[str]:
        return list(self._child_session_ids)

    @property
    def is_resumable(self) -> bool:
        if self.status == "completed":
            return False
        if self.status == "failed" and self.error is not None and not self.error.recoverable:
            return False
        return True

    def add_message(self, message: dict[str, Any]) -> None:
        self._messages.append(copy.deepcopy(message))
        self.save()

    def record_tool_call(self, record: ToolCallRecord) -> None:
        self._tool_calls.append(record)
        self.save()

    def update_token_usage(self, input_tokens: int, output_tokens: int) -> None:
        self._input_tokens += max(0, int(input_tokens))
        self._output_tokens += max(0, int(output_tokens))
        self.save()

    def increment_turn_index(self) -> int:
        self.last_turn_index += 1
        self.save()
        return self.last_turn_index

    def set_status(self, status: str) -> None:
        if status not in SESSION_STATUSES:
            raise ValueError(f"Invalid session status: {status!r}")
        self.status = status
        self.save()

    def set_failed(self, message: str, *, stack: str | None = None, recoverable: bool = False) -> None:
        self.status = "failed"
        self.error = SessionError(message=message, stack=stack, recoverable=recoverable)
        self.save()

    def add_child_session(self, child_session_id: str) -> None:
        if child_session_id not in self._child_session_ids:
            self._child_session_ids.append(child_session_id)
        self.save()

    def end(self, outcome: str) -> None:
        if outcome not in SESSION_OUTCOMES:
            raise ValueError(f"Invalid session outcome: {outcome!r}")
        self.outcome = outcome
        self.end_time = utc_now()
        self.status = "completed" if outcome == "success" else "failed"
        self.save()

    def reopen(self) -> None:
        """Return a paused or recoverable session to ``running`` for another run."""
        if not self.is_resumable:
            raise SessionNotResumableError(f"Session {self.id} cannot be resumed (status: {self.status})")
        self.status = "running"
        self.outcome = None
        self.end_time = None
        self.error = None
        self.save()

    def answer_pending_tool_calls(self, reason: str) -> int:
        """Add an error result for each call of the last assistant message that has none.

        Providers reject a transcript whose tool calls go unanswered, which is
        what a crash or forced exit in the middle of a turn leaves behind.
        """
        for index in range(len(self._messages) - 1, -1, -1):
            message = self._messages[index]
            if message.get("role") == "assistant":
                break
        else:
            return 0

        answered = {
            m.get("tool_call_id")
            for m in self._messages[index + 1:]
            if m.get("role") == "tool"
        }
        pending = [call for call in message.get("tool_calls") or [] if call.get("id") not in answered]
        for call in pending:
            self._messages.append({
                "role": "tool",
                "content": json.dumps({"success": False, "error": reason, "tool_name": call.get("name")}),
                "tool_call_id": call.get("id"),
                "tool_name": call.get("name"),
            })
        if pending:
            logger.warning(f"Session {self.id}: answered {len(pending)} interrupted tool call(s)")
            self.save()
        return len(pending)

    def save(self) -> None:
        self._store.write(self.to_dict())

    def to_dict(self) -> dict[str, Any]:
        usage = self.token_usage
        data: dict[str, Any] = {
            "id": self.id,
            "role": self.role,
            "model": self.model,
            "chainId": self.chain_id,
            "taskId": self.task_id,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "status": self.status,
            "outcome": self.outcome,
            "lastTurnIndex": self.last_turn_index,
            "tokenUsage": usage.to_dict(),
            "messages": copy.deepcopy(self._messages),
            "toolCalls": [record.to_dict() for record in self._tool_calls],
            "parentSessionId": self.parent_session_id,
            "childSessionIds": list(self._child_session_ids),
            "nestingDepth": self.nesting_depth,
        }
        if self.error is not None:
            data["error"] = self.error.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any], store: SessionStore) -> Session:
        session = cls(
            role=str(data["role"]),
            model=str(data["model"]),
            store=store,
            chain_id=data.get("chainId"),
            task_id=data.get("taskId"),
            parent_session_id=data.get("parentSessionId"),
            nesting_depth=int(data.get("nestingDepth", 0)),
            session_id=str(data["id"]),
            start_time=str(data["startTime"]),
        )
        session.end_time = data.get("endTime")
        session.status = data.get("status") or "running"
        session.outcome = data.get("outcome")
        session.last_turn_index = int(data.get("lastTurnIndex", 0))
        usage = data.get("tokenUsage") or {}
        session._input_tokens = int(usage.get("input", 0))
        session._output_tokens = int(usage.get("output", 0))
        session._messages = list(data.get("messages") or [])
        session._tool_calls = [ToolCallRecord.from_dict(r) for r in data.get("toolCalls") or []]
        session._child_session_ids = list(data.get("childSessionIds") or [])
        if data.get("error"):
            session.error = SessionError.from_dict(data["error"])
        return session

    @classmethod
    def load(cls, session_id: str, store: SessionStore) -> Session | None:
        data = store.read(session_id)
        if data is None:
            return None
        return cls.from_dict(data, store)

    @classmethod
    def load_or_raise(cls, session_id: str, store: SessionStore) -> Session:
        session = cls.load(session_id, store)
        if session is None:
            logger.warning(f"Session not found: {session_id}")
            raise SessionNotFoundError(f"Session not found: {session_id}")
        return session
