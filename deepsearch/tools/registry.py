"""
Tool registration, schema validation and invocation for the agent loop.

Each tool declares a pydantic model for its arguments. Arguments coming from
the model are validated before the executor runs; validation and execution
failures are raised as ToolError subclasses so the loop can hand them back to
the model as error results.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, ValidationError

from deepsearch.errors import ToolArgumentError, ToolError, ToolExecutionError

Executor = Callable[[Any], Awaitable[Any]]


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    args_model: type[BaseModel]
    executor: Executor

    def to_openai_tool(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.args_model.model_json_schema(),
            },
        }

    def validate(self, arguments: dict[str, Any] | str | None) -> BaseModel:
        if isinstance(arguments, str):
            try:
                arguments = json.loads(arguments) if arguments.strip() else {}
            except json.JSONDecodeError as exc:
                raise ToolArgumentError(self.name, f"Arguments are not valid JSON: {exc.msg}") from exc
        if arguments is None:
            arguments = {}
        if not isinstance(arguments, dict):
            raise ToolArgumentError(self.name, "Arguments must be a JSON object")
        try:
            return self.args_model.model_validate(arguments)
        except ValidationError as exc:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'arguments'}: {err['msg']}"
                for err in exc.errors()
            )
            raise ToolArgumentError(self.name, f"Invalid arguments for {self.name}: {problems}") from exc


class ToolRegistry:
    """Manages tool registration and invocation."""

    def __init__(self, specs: list[ToolSpec] | None = None):
        self._tools: dict[str, ToolSpec] = {}
        for spec in specs or []:
            self.register(spec)

    def register(self, spec: ToolSpec) -> None:
        """Register a tool; names are unique and registrations are final."""
        if spec.name in self._tools:
            raise ValueError(f"Tool '{spec.name}' is already registered")
        self._tools[spec.name] = spec

    def get(self, name: str) -> ToolSpec:
        if name not in self._tools:
            available = ", ".join(sorted(self._tools)) or "none"
            raise ToolArgumentError(name, f"Unknown tool '{name}'. Available tools: {available}")
        return self._tools[name]

    @property
    def tools(self) -> MappingProxyType:
        return MappingProxyType(self._tools)

    def names(self) -> list[str]:
        return list(self._tools.keys())

    def to_openai_tools(self) -> list[dict[str, Any]]:
        return [spec.to_openai_tool() for spec in self._tools.values()]

    async def execute(self, name: str, arguments: dict[str, Any] | str | None) -> Any:
        """Validate arguments and run the tool.

        Raises ToolArgumentError for unknown tools or bad arguments and
        ToolExecutionError when the executor fails. Cancellation propagates.
        """
        spec = self.get(name)
        args = spec.validate(arguments)
        try:
            return await spec.executor(args)
        except ToolError:
            raise
        except Exception as exc:
            raise ToolExecutionError(name, f"{type(exc).__name__}: {exc}") from exc
