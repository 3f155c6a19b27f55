from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator, Awaitable, TypeVar

from loguru import logger

from deepsearch.agents.prompts import build_system_prompt
from deepsearch.errors import AgentAborted, ModelProviderError, ToolError
from deepsearch.llm_client import ModelProvider, StepFinish, TextDelta, ToolCallRequest, Usage
from deepsearch.models.events import StreamEvent
from deepsearch.models.messages import (
    ConversationTurn,
    Role,
    SourcePart,
    TextPart,
    ToolCallPart,
    ToolCallState,
    ToolResultPart,
)
from deepsearch.services import logger as log_service
from deepsearch.services import streaming
from deepsearch.services.tracing import TraceSink, Tracer
from deepsearch.tools.registry import ToolRegistry
from deepsearch.tools.web_tools import EXTRACT_TOOL

T = TypeVar("T")

_STREAM_END = object()


@dataclass
class AgentStep:
    index: int
    text: str = ""
    tool_calls: list[ToolCallPart] = field(default_factory=list)
    tool_results: list[ToolResultPart] = field(default_factory=list)
    finish_reason: str | None = None
    usage: Usage = field(default_factory=Usage)


@dataclass
class AgentRun:
    assistant_turn: ConversationTurn
    steps: list[AgentStep]
    finish_reason: str  # "stop" | "max_steps"

    @property
    def final_text(self) -> str:
        for step in reversed(self.steps):
            if step.text:
                return step.text
        return ""

    @property
    def last_step_index(self) -> int:
        return self.steps[-1].index if self.steps else -1

    @property
    def tokens_used(self) -> int:
        return sum(step.usage.total_tokens for step in self.steps)


class AgentLoop:
    """Step-bounded tool-calling loop.

    Each step streams one model generation. Tool calls from that step are run
    concurrently and their results appended in call order, then the model is
    called again. The loop ends on a step without tool calls or when
    ``max_steps`` steps have run; running out of steps is not an error.

    ``run`` is an async generator of StreamEvents; text deltas are yielded as
    they arrive. The outcome is available as ``result`` once it finishes.
    """

    def __init__(
        self,
        model: ModelProvider,
        registry: ToolRegistry,
        *,
        max_steps: int = 10,
        system_prompt: str | None = None,
        trace_sink: TraceSink | None = None,
        chat_id: str | None = None,
    ):
        if max_steps < 1:
            raise ValueError(f"max_steps must be >= 1, got {max_steps}")
        self.model = model
        self.registry = registry
        self.max_steps = max_steps
        self.system_prompt = system_prompt or build_system_prompt()
        self.tracer = Tracer(trace_sink)
        self.chat_id = chat_id
        self._result: AgentRun | None = None
        self._assistant: ConversationTurn | None = None

    @property
    def result(self) -> AgentRun | None:
        return self._result

    @property
    def partial_turn(self) -> ConversationTurn | None:
        """The assistant turn as built so far (complete once ``result`` is set)."""
        return self._assistant

    async def run(
        self,
        turns: list[ConversationTurn],
        *,
        abort: asyncio.Event | None = None,
    ) -> AsyncGenerator[StreamEvent, None]:
        started = time.monotonic()
        assistant = ConversationTurn(role=Role.ASSISTANT)
        self._assistant = assistant
        self._result = None
        steps: list[AgentStep] = []
        finish_reason = "max_steps"
        tools = self.registry.to_openai_tools()
        loop_span = self.tracer.start("agent", input={"chat_id": self.chat_id, "turns": len(turns)})

        try:
            for step_index in range(self.max_steps):
                step = AgentStep(index=step_index)
                steps.append(step)
                step_span = self.tracer.start(f"step-{step_index}", parent_id=loop_span)
                yield streaming.step_started(step_index)

                # Generate
                calls: list[ToolCallRequest] = []
                stream = self.model.stream_step(
                    system=self.system_prompt,
                    turns=[*turns, assistant],
                    tools=tools,
                )
                try:
                    while True:
                        event = await self._await_or_abort(_next_event(stream), abort, assistant)
                        if event is _STREAM_END:
                            break
                        if isinstance(event, TextDelta):
                            step.text += event.text
                            yield streaming.text_delta(step_index, event.text)
                        elif isinstance(event, ToolCallRequest):
                            calls.append(event)
                        elif isinstance(event, StepFinish):
                            step.finish_reason = event.finish_reason
                            step.usage = event.usage
                except AgentAborted:
                    if step.text:
                        assistant.parts.append(TextPart(content=step.text))
                    raise
                finally:
                    await stream.aclose()

                if step.text:
                    assistant.parts.append(TextPart(content=step.text))

                # Dispatch
                for call in calls:
                    part = ToolCallPart(
                        id=call.id,
                        tool_name=call.name,
                        arguments=call.arguments if isinstance(call.arguments, dict) else {},
                        state=ToolCallState.CALLED,
                    )
                    assistant.parts.append(part)
                    step.tool_calls.append(part)
                    yield streaming.tool_call(step_index, part.id, part.tool_name, part.arguments)

                if calls:
                    results = await self._await_or_abort(
                        asyncio.gather(*(self._execute(call, step_span) for call in calls)),
                        abort,
                        assistant,
                    )
                    for result in results:
                        assistant.add_result(result)
                        step.tool_results.append(result)
                        self._add_sources(assistant, result)
                        yield streaming.tool_result(
                            step_index,
                            result.call_id,
                            result.tool_name,
                            result.output,
                            is_error=result.is_error,
                        )

                self.tracer.end(step_span, output={"text": step.text, "tool_calls": len(calls)})
                log_service.log_agent_step(
                    self.chat_id,
                    step_index,
                    "tool_calls" if calls else "text_only",
                    {"tool_calls": [c.name for c in calls], "text_chars": len(step.text)},
                )
                yield streaming.step_finished(
                    step_index,
                    finish_reason=step.finish_reason,
                    tool_calls=len(calls),
                    input_tokens=step.usage.input_tokens,
                    output_tokens=step.usage.output_tokens,
                )

                if not calls:
                    finish_reason = "stop"
                    break
            else:
                logger.warning(f"Agent loop hit its step budget ({self.max_steps}) for chat {self.chat_id}")
        except ModelProviderError as exc:
            self.tracer.end(loop_span, error=str(exc))
            raise
        except AgentAborted:
            self.tracer.end(loop_span, error="aborted")
            raise

        run = AgentRun(assistant_turn=assistant, steps=steps, finish_reason=finish_reason)
        self._result = run
        self.tracer.end(loop_span, output={"finish_reason": finish_reason, "steps": len(steps)})
        yield streaming.finish(
            run.final_text,
            reason=finish_reason,
            steps=len(steps),
            sources=[s.model_dump(exclude={"type"}) for s in assistant.sources()],
            tokens_used=run.tokens_used,
            runtime_ms=int((time.monotonic() - started) * 1000),
        )

    async def run_to_completion(
        self,
        turns: list[ConversationTurn],
        *,
        abort: asyncio.Event | None = None,
    ) -> tuple[AgentRun, list[StreamEvent]]:
        """Convenience: run the loop collecting all events."""
        events = [event async for event in self.run(turns, abort=abort)]
        assert self._result is not None
        return self._result, events

    async def _execute(self, call: ToolCallRequest, parent_span: str) -> ToolResultPart:
        span = self.tracer.start(call.name, parent_id=parent_span, input=call.arguments)
        t0 = time.monotonic()
        try:
            output = await self.registry.execute(call.name, call.arguments)
        except ToolError as exc:
            duration_ms = int((time.monotonic() - t0) * 1000)
            log_service.log_tool_call(call.name, call.id, "error", duration_ms, error=exc.message)
            self.tracer.end(span, error=exc.message)
            return ToolResultPart(
                call_id=call.id,
                tool_name=call.name,
                output=f"{type(exc).__name__}: {exc.message}",
                is_error=True,
            )
        log_service.log_tool_call(call.name, call.id, "success", int((time.monotonic() - t0) * 1000))
        self.tracer.end(span, output=output)
        return ToolResultPart(call_id=call.id, tool_name=call.name, output=output)

    @staticmethod
    def _add_sources(assistant: ConversationTurn, result: ToolResultPart) -> None:
        if result.is_error or result.tool_name != EXTRACT_TOOL or not isinstance(result.output, list):
            return
        known = {s.url for s in assistant.sources()}
        for row in result.output:
            if not isinstance(row, dict) or not row.get("success"):
                continue
            url = row.get("url")
            if not url or url in known:
                continue
            known.add(url)
            assistant.parts.append(SourcePart(url=url, title=row.get("title") or None))

    @staticmethod
    async def _await_or_abort(
        awaitable: Awaitable[T],
        abort: asyncio.Event | None,
        assistant: ConversationTurn,
    ) -> T:
        if abort is None:
            return await awaitable

        task = asyncio.ensure_future(awaitable)
        if abort.is_set():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            raise AgentAborted(partial_turn=assistant)

        waiter = asyncio.ensure_future(abort.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except BaseException:
            task.cancel()
            waiter.cancel()
            await asyncio.gather(task, waiter, return_exceptions=True)
            raise

        if task in done:
            waiter.cancel()
            return task.result()

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise AgentAborted(partial_turn=assistant)


async def _next_event(stream: AsyncGenerator[Any, None]) -> Any:
    try:
        return await stream.__anext__()
    except StopAsyncIteration:
        return _STREAM_END
