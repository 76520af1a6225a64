from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

SESSION_STATUSES = ("running", "paused", "completed", "failed")
SESSION_OUTCOMES = ("success", "failure", "interrupted")


@dataclass(frozen=True)
class ToolCallRecord:
    timestamp: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    allowed: bool = True
    denial_reason: str | None = None
    result: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "timestamp": self.timestamp,
            "name": self.name,
            "arguments": self.arguments,
            "allowed": self.allowed,
        }
        if self.denial_reason is not None:
            out["denialReason"] = self.denial_reason
        if self.result is not None:
            out["result"] = self.result
        return out

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ToolCallRecord:
        return cls(
            timestamp=str(raw["timestamp"]),
            name=str(raw["name"]),
            arguments=dict(raw.get("arguments") or {}),
            allowed=bool(raw.get("allowed", True)),
            denial_reason=raw.get("denialReason"),
            result=raw.get("result"),
        )


@dataclass(frozen=True)
class SessionError:
    message: str
    stack: str | None = None
    recoverable: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"message": self.message, "stack": self.stack, "recoverable": self.recoverable}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> SessionError:
        return cls(
            message=str(raw.get("message", "")),
            stack=raw.get("stack"),
            recoverable=bool(raw.get("recoverable", False)),
        )


@dataclass(frozen=True)
class SessionSummary:
    id: str
    role: str
    model: str
    status: str
    start_time: str
    end_time: str | None
    outcome: str | None
    chain_id: str | None
    task_id: str | None
    total_tokens: int
    message_count: int
    parent_session_id: str | None = None
