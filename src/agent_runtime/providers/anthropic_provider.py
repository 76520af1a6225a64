from __future__ import annotations

import json
from typing import Any

import anthropic
from loguru import logger

from agent_runtime.errors import ProviderError
from agent_runtime.provider import ChatResponse, ChatUsage
from agent_runtime.tool import ToolCall


def _tool_result_block(message: dict[str, Any]) -> dict[str, Any]:
    content = message.get("content", "")
    block: dict[str, Any] = {
        "type": "tool_result",
        "tool_use_id": message.get("tool_call_id", ""),
        "content": content if isinstance(content, str) else json.dumps(content),
    }
    try:
        if json.loads(block["content"]).get("success") is False:
            block["is_error"] = True
    except (ValueError, AttributeError):
        pass
    return block


def to_anthropic_messages(messages: list[dict[str, Any]]) -> tuple[str, list[dict[str, Any]]]:
    """Split the transcript into a system prompt and Anthropic-style messages.

    Consecutive ``tool`` messages are folded into one user message of
    ``tool_result`` blocks, as the Messages API requires.
    """
    system_parts: list[str] = []
    converted: list[dict[str, Any]] = []

    for message in messages:
        role = message.get("role")
        if role == "system":
            system_parts.append(str(message.get("content", "")))
        elif role == "tool":
            block = _tool_result_block(message)
            last = converted[-1] if converted else None
            if last and last["role"] == "user" and isinstance(last["content"], list) \
                    and all(b.get("type") == "tool_result" for b in last["content"]):
                last["content"].append(block)
            else:
                converted.append({"role": "user", "content": [block]})
        elif role == "assistant":
            blocks: list[dict[str, Any]] = []
            if message.get("content"):
                blocks.append({"type": "text", "text": message["content"]})
            for call in message.get("tool_calls") or []:
                blocks.append({
                    "type": "tool_use",
                    "id": call["id"],
                    "name": call["name"],
                    "input": call.get("arguments") or {},
                })
            converted.append({"role": "assistant", "content": blocks or [{"type": "text", "text": ""}]})
        else:
            converted.append({"role": "user", "content": str(message.get("content", ""))})

    return "\n\n".join(system_parts), converted


class AnthropicProvider:
    """Messages API adapter. Retries are left to the runtime's retry policy."""

    def __init__(self, api_key: str, model: str, *, max_tokens: int = 8192):
        self._client = anthropic.AsyncAnthropic(api_key=api_key, max_retries=0)
        self._model = model
        self._max_tokens = max_tokens

    async def chat(self, messages: list[dict[str, Any]], tools: list[dict[str, Any]]) -> ChatResponse:
        system_prompt, api_messages = to_anthropic_messages(messages)
        kwargs: dict[str, Any] = {
            "model": self._model,
            "max_tokens": self._max_tokens,
            "messages": api_messages,
        }
        if system_prompt:
            kwargs["system"] = system_prompt
        if tools:
            kwargs["tools"] = tools

        logger.debug(f"API request: model={self._model}, messages={len(api_messages)}, tools={len(tools)}")
        try:
            response = await self._client.messages.create(**kwargs)
        except anthropic.APIStatusError as ex:
            raise ProviderError(f"Anthropic API error {ex.status_code}: {ex.message}", status=ex.status_code) from ex
        except anthropic.APITimeoutError as ex:
            raise ProviderError(f"Anthropic API request timed out: {ex}", code="ETIMEDOUT") from ex
        except anthropic.APIConnectionError as ex:
            raise ProviderError(f"Network error contacting Anthropic API: {ex}") from ex

        usage = response.usage
        logger.debug(
            f"API response: stop_reason={response.stop_reason}, "
            f"input_tokens={usage.input_tokens}, output_tokens={usage.output_tokens}"
        )

        text_parts: list[str] = []
        tool_calls: list[ToolCall] = []
        for block in response.content:
            if block.type == "text":
                text_parts.append(block.text)
            elif block.type == "tool_use":
                tool_calls.append(ToolCall(id=block.id, name=block.name, arguments=dict(block.input or {})))

        return ChatResponse(
            content="".join(text_parts),
            tool_calls=tool_calls,
            stop_reason=response.stop_reason or "end_turn",
            usage=ChatUsage(input_tokens=usage.input_tokens, output_tokens=usage.output_tokens),
        )
