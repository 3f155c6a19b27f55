"""Tests for stream event construction and framing."""
from __future__ import annotations

import json
from datetime import date

from deepsearch.agents.prompts import build_system_prompt
from deepsearch.models.events import EventType
from deepsearch.services import streaming
from deepsearch.services.tracing import LoggingTraceSink, Tracer


def test_tool_result_event_structure():
    event = streaming.tool_result(1, "call_1", "extract", [{"url": "https://a.com"}], is_error=False)

    assert event.event == EventType.TOOL_RESULT
    assert event.data["step"] == 1
    assert event.data["call_id"] == "call_1"
    assert event.data["output"] == [{"url": "https://a.com"}]
    assert event.data["is_error"] is False


def test_finish_event_omits_runtime_when_unknown():
    event = streaming.finish("done", reason="stop", steps=1, sources=[])

    assert event.event == EventType.FINISH
    assert "runtime_ms" not in event.data
    assert event.data["reason"] == "stop"


def test_step_finished_reports_usage():
    event = streaming.step_finished(0, finish_reason="tool_calls", tool_calls=2, input_tokens=30, output_tokens=4)

    assert event.data["usage"] == {"input_tokens": 30, "output_tokens": 4}
    assert event.data["tool_calls"] == 2


def test_to_sse_produces_event_fields():
    fields = streaming.text_delta(0, "Hello").to_sse()

    assert fields["event"] == "text_delta"
    assert json.loads(fields["data"]) == {"step": 0, "text": "Hello"}


def test_error_event_fatal_flag():
    assert streaming.error("boom").data == {"message": "boom", "fatal": True}
    assert streaming.error("saved?", fatal=False).data["fatal"] is False


def test_system_prompt_includes_date():
    prompt = build_system_prompt(date(2024, 5, 17))
    assert "2024-05-17" in prompt
    assert "[title](url)" in prompt


def test_tracer_without_sink_still_returns_span_ids():
    tracer = Tracer()
    span = tracer.start("agent")
    assert isinstance(span, str) and span
    tracer.end(span, output="ok")


def test_logging_trace_sink_keeps_trace_id():
    sink = LoggingTraceSink(trace_id="chat-1")
    tracer = Tracer(sink)
    span = tracer.start("step-0", input={"turns": 1})
    tracer.end(span, output={"text": "x"})
    assert sink.trace_id == "chat-1"
