"""Conversation turns and their tagged parts.

A turn is an ordered list of parts; ordering is render/replay order. The part
union is closed: every consumer matches on ``type`` exhaustively.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal, Union
from uuid import uuid4

from pydantic import BaseModel, Field, model_validator


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class ToolCallState(str, Enum):
    PENDING = "pending"
    CALLED = "called"
    COMPLETED = "completed"


class TextPart(BaseModel):
    type: Literal["text"] = "text"
    content: str


class ToolCallPart(BaseModel):
    type: Literal["tool_call"] = "tool_call"
    id: str
    tool_name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    state: ToolCallState = ToolCallState.PENDING


class ToolResultPart(BaseModel):
    type: Literal["tool_result"] = "tool_result"
    call_id: str
    tool_name: str
    output: Any = None
    is_error: bool = False


class SourcePart(BaseModel):
    type: Literal["source"] = "source"
    url: str
    title: str | None = None


Part = Annotated[
    Union[TextPart, ToolCallPart, ToolResultPart, SourcePart],
    Field(discriminator="type"),
]


class ConversationTurn(BaseModel):
    id: str = Field(default_factory=lambda: uuid4().hex)
    role: Role
    parts: list[Part] = Field(default_factory=list)

    @model_validator(mode="after")
    def _results_follow_their_calls(self) -> "ConversationTurn":
        seen_calls: set[str] = set()
        for part in self.parts:
            if isinstance(part, ToolCallPart):
                seen_calls.add(part.id)
            elif isinstance(part, ToolResultPart) and part.call_id not in seen_calls:
                raise ValueError(
                    f"Tool result for '{part.call_id}' has no preceding tool call in the turn"
                )
        return self

    @classmethod
    def user(cls, content: str) -> "ConversationTurn":
        return cls(role=Role.USER, parts=[TextPart(content=content)])

    @property
    def text(self) -> str:
        return "".join(p.content for p in self.parts if isinstance(p, TextPart))

    def find_call(self, call_id: str) -> ToolCallPart | None:
        for part in self.parts:
            if isinstance(part, ToolCallPart) and part.id == call_id:
                return part
        return None

    def add_result(self, result: ToolResultPart) -> None:
        """Append a tool result; its call must already be in this turn."""
        call = self.find_call(result.call_id)
        if call is None:
            raise ValueError(f"Unknown tool call id: {result.call_id}")
        call.state = ToolCallState.COMPLETED
        self.parts.append(result)

    def sources(self) -> list[SourcePart]:
        return [p for p in self.parts if isinstance(p, SourcePart)]


def chat_title(turns: list[ConversationTurn], max_chars: int = 50) -> str:
    """Title for a chat: the opening of the most recent user message."""
    for turn in reversed(turns):
        if turn.role == Role.USER:
            return turn.text[:max_chars] + "..."
    return "New chat"
