from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class EventType(str, Enum):
    NEW_CHAT_CREATED = "new_chat_created"
    STEP_STARTED = "step_started"
    TEXT_DELTA = "text_delta"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    STEP_FINISHED = "step_finished"
    FINISH = "finish"
    ERROR = "error"


@dataclass
class StreamEvent:
    event: EventType
    data: dict[str, Any] = field(default_factory=dict)

    def to_sse(self) -> dict[str, str]:
        """Frame fields for ``EventSourceResponse``."""
        return {"event": self.event.value, "data": json.dumps(self.data, default=str)}
