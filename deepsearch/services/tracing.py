"""Step/tool span reporting to an observability sink.

Sink failures are logged and swallowed; tracing never affects the agent.
"""

from __future__ import annotations

from typing import Any, Protocol
from uuid import uuid4

from loguru import logger


class TraceSink(Protocol):
    def span_start(self, span_id: str, name: str, *, parent_id: str | None, input: Any) -> None: ...
    def span_end(self, span_id: str, *, output: Any, error: str | None) -> None: ...


class LoggingTraceSink:
    """Writes spans to the debug log."""

    def __init__(self, trace_id: str | None = None):
        self.trace_id = trace_id or uuid4().hex

    def span_start(self, span_id: str, name: str, *, parent_id: str | None, input: Any) -> None:
        span_data = {
            "trace": self.trace_id,
            "span": span_id,
            "name": name,
            "parent": parent_id,
            "input": input,
        }
        logger.debug(f"SPAN_START: {span_data}")

    def span_end(self, span_id: str, *, output: Any, error: str | None) -> None:
        span_data = {
            "trace": self.trace_id,
            "span": span_id,
            "error": error,
            "output": str(output)[:500],
        }
        logger.debug(f"SPAN_END: {span_data}")


class Tracer:
    def __init__(self, sink: TraceSink | None = None):
        self.sink = sink

    def start(self, name: str, *, input: Any = None, parent_id: str | None = None) -> str:
        span_id = uuid4().hex
        if self.sink is None:
            return span_id
        try:
            self.sink.span_start(span_id, name, parent_id=parent_id, input=input)
        except Exception as exc:
            logger.debug(f"Trace sink failed on span start for {name}: {exc}")
        return span_id

    def end(self, span_id: str, *, output: Any = None, error: str | None = None) -> None:
        if self.sink is None:
            return
        try:
            self.sink.span_end(span_id, output=output, error=error)
        except Exception as exc:
            logger.debug(f"Trace sink failed on span end: {exc}")
