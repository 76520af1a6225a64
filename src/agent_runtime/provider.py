from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from agent_runtime.tool import ToolCall


@dataclass(frozen=True)
class ChatUsage:
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass
class ChatResponse:
    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    stop_reason: str = "end_turn"
    usage: ChatUsage = field(default_factory=ChatUsage)


@runtime_checkable
class Provider(Protocol):
    async def chat(self, messages: list[dict[str, Any]], tools: list[dict[str, Any]]) -> ChatResponse:
        """Ask the model for its next turn.

        ``messages`` use the runtime transcript format (roles ``system``,
        ``user``, ``assistant`` and ``tool``). Failures raise with ``status``
        or ``code`` metadata where available so the retry policy can classify
        them.
        """
        ...


def create_provider(provider_name: str, api_key: str, model: str, *, max_tokens: int = 8192) -> Provider:
    """Factory: create a Provider by name."""
    name = provider_name.strip().lower()
    if name == "anthropic":
        from agent_runtime.providers.anthropic_provider import AnthropicProvider
        return AnthropicProvider(api_key, model, max_tokens=max_tokens)
    raise ValueError(f"Unknown provider: {provider_name!r}. Supported: 'anthropic'")
