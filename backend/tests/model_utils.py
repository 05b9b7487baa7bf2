from __future__ import annotations

from typing import Any, Sequence

from healthguide_agent_core import ModelTurn, ToolCall, ToolRegistry, Turn


class ScriptedModel:
    """Model client that replays queued turns or raises queued exceptions."""

    def __init__(self, *steps: ModelTurn | Exception) -> None:
        self.steps: list[ModelTurn | Exception] = list(steps)
        self.calls: list[dict[str, Any]] = []

    def queue(self, *steps: ModelTurn | Exception) -> "ScriptedModel":
        self.steps.extend(steps)
        return self

    async def complete(
        self,
        *,
        system_instruction: str,
        history: Sequence[Turn],
        tools: ToolRegistry,
    ) -> ModelTurn:
        self.calls.append({"system_instruction": system_instruction, "history": list(history), "tools": tools})
        if not self.steps:
            return ModelTurn(text="Anything else I can help with?")
        step = self.steps.pop(0)
        if isinstance(step, Exception):
            raise step
        return step


def text_turn(text: str) -> ModelTurn:
    return ModelTurn(text=text)


def call_turn(name: str, arguments: dict[str, Any] | None = None, *, text: str = "") -> ModelTurn:
    return ModelTurn(text=text, tool_calls=[ToolCall(name=name, arguments=dict(arguments or {}))])
