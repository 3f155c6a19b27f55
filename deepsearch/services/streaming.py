from __future__ import annotations

from typing import Any

from deepsearch.models.events import EventType, StreamEvent


def new_chat_created(chat_id: str) -> StreamEvent:
    return StreamEvent(event=EventType.NEW_CHAT_CREATED, data={"chat_id": chat_id})


def step_started(step: int) -> StreamEvent:
    return StreamEvent(event=EventType.STEP_STARTED, data={"step": step})


def text_delta(step: int, text: str) -> StreamEvent:
    return StreamEvent(event=EventType.TEXT_DELTA, data={"step": step, "text": text})


def tool_call(step: int, call_id: str, tool_name: str, arguments: dict[str, Any]) -> StreamEvent:
    return StreamEvent(
        event=EventType.TOOL_CALL,
        data={
            "step": step,
            "call_id": call_id,
            "tool_name": tool_name,
            "arguments": arguments,
        },
    )


def tool_result(
    step: int,
    call_id: str,
    tool_name: str,
    output: Any,
    *,
    is_error: bool = False,
) -> StreamEvent:
    return StreamEvent(
        event=EventType.TOOL_RESULT,
        data={
            "step": step,
            "call_id": call_id,
            "tool_name": tool_name,
            "output": output,
            "is_error": is_error,
        },
    )


def step_finished(
    step: int,
    *,
    finish_reason: str | None,
    tool_calls: int,
    input_tokens: int = 0,
    output_tokens: int = 0,
) -> StreamEvent:
    return StreamEvent(
        event=EventType.STEP_FINISHED,
        data={
            "step": step,
            "finish_reason": finish_reason,
            "tool_calls": tool_calls,
            "usage": {"input_tokens": input_tokens, "output_tokens": output_tokens},
        },
    )


def finish(
    text: str,
    *,
    reason: str,
    steps: int,
    sources: list[dict[str, Any]],
    tokens_used: int = 0,
    runtime_ms: int | None = None,
) -> StreamEvent:
    data: dict[str, Any] = {
        "text": text,
        "reason": reason,
        "steps": steps,
        "sources": sources,
        "tokens_used": tokens_used,
    }
    if runtime_ms is not None:
        data["runtime_ms"] = runtime_ms
    return StreamEvent(event=EventType.FINISH, data=data)


def error(message: str, *, fatal: bool = True) -> StreamEvent:
    return StreamEvent(event=EventType.ERROR, data={"message": message, "fatal": fatal})
