"""OpenRouter LLM client: streamed chat completions with tool calls."""
from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator, Protocol, Union
from uuid import uuid4

import openai

from deepsearch.config import settings
from deepsearch.errors import ModelProviderError
from deepsearch.models.messages import (
    ConversationTurn,
    Role,
    SourcePart,
    TextPart,
    ToolCallPart,
    ToolResultPart,
)
from deepsearch.services import logger as log_service


@dataclass
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class TextDelta:
    text: str


@dataclass
class ToolCallRequest:
    id: str
    name: str
    # Raw string when the model produced arguments that are not valid JSON.
    arguments: dict[str, Any] | str = field(default_factory=dict)


@dataclass
class StepFinish:
    finish_reason: str | None = None
    usage: Usage = field(default_factory=Usage)


ModelEvent = Union[TextDelta, ToolCallRequest, StepFinish]


class ModelProvider(Protocol):
    def stream_step(
        self,
        *,
        system: str,
        turns: list[ConversationTurn],
        tools: list[dict[str, Any]],
    ) -> AsyncGenerator[ModelEvent, None]: ...


def _parse_arguments(raw: str) -> dict[str, Any] | str:
    if not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return raw
    return parsed if isinstance(parsed, dict) else raw


def _tool_output_text(result: ToolResultPart) -> str:
    output = result.output
    text = output if isinstance(output, str) else json.dumps(output, ensure_ascii=False, default=str)
    return f"ERROR: {text}" if result.is_error else text


def to_openai_messages(system: str, turns: list[ConversationTurn]) -> list[dict[str, Any]]:
    """Flatten turns into chat-completions messages.

    An assistant turn spanning several steps becomes alternating assistant
    (text + tool_calls) and tool messages, in part order. Tool calls without a
    result (aborted turns) are dropped since the API rejects them.
    """
    messages: list[dict[str, Any]] = [{"role": "system", "content": system}]

    for turn in turns:
        if turn.role != Role.ASSISTANT:
            messages.append({"role": turn.role.value, "content": turn.text})
            continue

        answered = {p.call_id for p in turn.parts if isinstance(p, ToolResultPart)}
        text_parts: list[str] = []
        tool_calls: list[dict[str, Any]] = []

        def flush() -> None:
            if not text_parts and not tool_calls:
                return
            msg: dict[str, Any] = {"role": "assistant", "content": "".join(text_parts) or None}
            if tool_calls:
                msg["tool_calls"] = list(tool_calls)
            messages.append(msg)
            text_parts.clear()
            tool_calls.clear()

        for part in turn.parts:
            if isinstance(part, TextPart):
                text_parts.append(part.content)
            elif isinstance(part, ToolCallPart):
                if part.id not in answered:
                    continue
                tool_calls.append(
                    {
                        "id": part.id,
                        "type": "function",
                        "function": {
                            "name": part.tool_name,
                            "arguments": json.dumps(part.arguments),
                        },
                    }
                )
            elif isinstance(part, ToolResultPart):
                flush()
                messages.append(
                    {
                        "role": "tool",
                        "tool_call_id": part.call_id,
                        "content": _tool_output_text(part),
                    }
                )
            elif isinstance(part, SourcePart):
                continue
            else:
                raise TypeError(f"Unhandled part type: {type(part).__name__}")
        flush()

    return messages


class OpenRouterModel:
    """Streams one agent step from an OpenAI-compatible endpoint."""

    name = "agent"

    def __init__(self, openai_client: Any, model: str, *, max_tokens: int = 4096):
        self._client = openai_client
        self.model = model
        self.max_tokens = max_tokens

    @staticmethod
    def _temperature_for_model(model: str) -> int:
        # Some OpenAI GPT-5-compatible gateways reject temperature=0.
        lowered = (model or "").lower()
        if "gpt-5" in lowered:
            return 1
        return 0

    async def stream_step(
        self,
        *,
        system: str,
        turns: list[ConversationTurn],
        tools: list[dict[str, Any]],
    ) -> AsyncGenerator[ModelEvent, None]:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": to_openai_messages(system, turns),
            "max_tokens": self.max_tokens,
            "temperature": self._temperature_for_model(self.model),
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"

        t0 = time.monotonic()
        usage = Usage()
        finish_reason: str | None = None
        pending: dict[int, dict[str, str]] = {}

        try:
            stream = await self._client.chat.completions.create(**kwargs)
        except openai.OpenAIError as exc:
            log_service.log_llm_call(model=self.model, caller=self.name, status="error", error=str(exc))
            raise ModelProviderError(f"Model request failed: {exc}") from exc

        try:
            async for chunk in stream:
                chunk_usage = getattr(chunk, "usage", None)
                if chunk_usage:
                    usage = Usage(
                        input_tokens=getattr(chunk_usage, "prompt_tokens", 0) or 0,
                        output_tokens=getattr(chunk_usage, "completion_tokens", 0) or 0,
                    )
                choices = getattr(chunk, "choices", None) or []
                if not choices:
                    continue
                choice = choices[0]
                if getattr(choice, "finish_reason", None):
                    finish_reason = choice.finish_reason
                delta = getattr(choice, "delta", None)
                if not delta:
                    continue
                text = getattr(delta, "content", None)
                if text:
                    yield TextDelta(text=text)
                for tc in getattr(delta, "tool_calls", None) or []:
                    slot = pending.setdefault(tc.index, {"id": "", "name": "", "arguments": ""})
                    if tc.id:
                        slot["id"] = tc.id
                    function = getattr(tc, "function", None)
                    if function is not None:
                        if function.name:
                            slot["name"] = function.name
                        if function.arguments:
                            slot["arguments"] += function.arguments
        except openai.OpenAIError as exc:
            log_service.log_llm_call(model=self.model, caller=self.name, status="error", error=str(exc))
            raise ModelProviderError(f"Model stream failed: {exc}") from exc
        finally:
            close = getattr(stream, "close", None)
            if close is not None:
                await close()

        for index in sorted(pending):
            slot = pending[index]
            yield ToolCallRequest(
                id=slot["id"] or f"call_{uuid4().hex[:12]}",
                name=slot["name"],
                arguments=_parse_arguments(slot["arguments"]),
            )

        log_service.log_llm_call(
            model=self.model,
            caller=self.name,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            duration_ms=int((time.monotonic() - t0) * 1000),
        )
        yield StepFinish(finish_reason=finish_reason, usage=usage)


def get_model() -> str:
    """Get the active OpenRouter model id."""
    if settings.openrouter_model:
        return settings.openrouter_model
    return settings.default_model


def get_client(model: str | None = None) -> OpenRouterModel:
    """Build the model provider via the OpenAI-compatible SDK."""
    base_url = settings.openrouter_base_url.strip() or "https://openrouter.ai/api/v1"
    openai_client = openai.AsyncOpenAI(
        api_key=settings.openrouter_api_key,
        base_url=base_url,
    )
    return OpenRouterModel(openai_client, model or get_model(), max_tokens=settings.agent_max_tokens)
