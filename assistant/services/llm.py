from __future__ import annotations

import json
from typing import Any, Protocol, Sequence

from pydantic import BaseModel, Field, field_validator
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_random_exponential

from ..core.logging import get_logger

logger = get_logger(name=__name__)

Message = dict[str, Any]


class LLMError(RuntimeError):
    """Raised when a chat completion cannot be produced."""


class TransientLLMError(LLMError):
    """Raised for failures worth retrying (rate limits, upstream 5xx, dropped connections)."""


class Usage(BaseModel):
    prompt_tokens: int = Field(0, ge=0)
    completion_tokens: int = Field(0, ge=0)

    def __add__(self, other: "Usage") -> "Usage":
        return Usage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
        )


class ToolCall(BaseModel):
    id: str
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)

    @field_validator("arguments", mode="before")
    @classmethod
    def _decode_arguments(cls, value: Any) -> Any:
        if value is None or value == "":
            return {}
        if isinstance(value, str):
            try:
                decoded = json.loads(value)
            except json.JSONDecodeError:
                return {}
            return decoded if isinstance(decoded, dict) else {}
        return value

    def to_message(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": json.dumps(self.arguments)},
        }


class ChatResponse(BaseModel):
    content: str | None = None
    tool_calls: list[ToolCall] = Field(default_factory=list)
    usage: Usage = Field(default_factory=Usage)
    model: str | None = None

    @property
    def wants_tools(self) -> bool:
        return bool(self.tool_calls)


class LLMClient(Protocol):
    """Chat-completion contract used by the engine and agents."""

    async def chat_completion(
        self,
        messages: Sequence[Message],
        *,
        tools: Sequence[dict[str, Any]] | None = None,
        model: str | None = None,
    ) -> ChatResponse:
        ...


def function_tool(name: str, description: str, parameters: dict[str, Any]) -> dict[str, Any]:
    return {
        "type": "function",
        "function": {"name": name, "description": description, "parameters": parameters},
    }


def assistant_tool_call_message(tool_calls: Sequence[ToolCall], content: str | None = None) -> Message:
    return {"role": "assistant", "content": content, "tool_calls": [call.to_message() for call in tool_calls]}


def tool_result_message(tool_call_id: str, content: str) -> Message:
    return {"role": "tool", "tool_call_id": tool_call_id, "content": content}


async def complete_with_retry(
    llm: LLMClient,
    messages: Sequence[Message],
    *,
    tools: Sequence[dict[str, Any]] | None = None,
    model: str | None = None,
    attempts: int = 3,
    max_backoff_seconds: float = 10.0,
) -> ChatResponse:
    """Call ``llm`` retrying :class:`TransientLLMError` with jittered backoff.

    Any other exception, and the last transient one, propagates to the caller.
    """
    async for attempt in AsyncRetrying(
        stop=stop_after_attempt(max(1, attempts)),
        wait=wait_random_exponential(multiplier=0.5, max=max_backoff_seconds),
        retry=retry_if_exception_type(TransientLLMError),
        reraise=True,
    ):
        with attempt:
            if attempt.retry_state.attempt_number > 1:
                logger.info("llm_retry", attempt=attempt.retry_state.attempt_number, model=model)
            return await llm.chat_completion(messages, tools=tools, model=model)
    raise LLMError("LLM retry loop exited without a response")  # pragma: no cover


__all__ = [
    "ChatResponse",
    "LLMClient",
    "LLMError",
    "Message",
    "ToolCall",
    "TransientLLMError",
    "Usage",
    "assistant_tool_call_message",
    "complete_with_retry",
    "function_tool",
    "tool_result_message",
]
