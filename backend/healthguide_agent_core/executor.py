from __future__ import annotations

import logging
from typing import Any

from .hooks import HookRunner
from .models import BookingRecord, ExecutionContext, ToolCall, ToolExecutionResult, ToolOutcome
from .registry import ToolDefinition, ToolRegistry

logger = logging.getLogger(__name__)


class AgentExecutor:
    """Runs one tool call and always answers with a ``ToolOutcome``.

    Handlers return the envelope ``{"status", "data", "errors"}`` and may add a
    ``side_effect`` (a ``BookingRecord``) when the call produced a durable event.
    """

    def __init__(self, *, registry: ToolRegistry, hooks: HookRunner) -> None:
        self.registry = registry
        self.hooks = hooks

    async def execute(self, ctx: ExecutionContext, call: ToolCall) -> ToolExecutionResult:
        try:
            tool = self.registry.resolve(call.name)
        except KeyError:
            logger.warning("model requested unknown tool %r (call %s)", call.name, call.call_id)
            return await self._finish(ctx, None, call, ToolOutcome.failure(call, f"Unknown tool: {call.name}"))

        missing = self.registry.missing_arguments(tool.declaration, call.arguments)
        if missing:
            message = (
                f"Missing required fields: {', '.join(missing)}. "
                f"Ask the user for them before calling {tool.name.value} again."
            )
            return await self._finish(ctx, tool, call, ToolOutcome.failure(call, message))

        decision = self.hooks.run_before(ctx, tool, call)
        if not decision.allowed:
            return await self._finish(ctx, tool, call, ToolOutcome.failure(call, decision.message))

        try:
            tool_output = await tool.handler(ctx, call)
        except Exception as exc:
            logger.exception("tool %s raised (call %s)", tool.name.value, call.call_id)
            return await self._finish(ctx, tool, call, ToolOutcome.failure(call, f"Tool failed: {exc}"))

        outcome, side_effect = self._outcome_from_envelope(call, tool_output)
        return await self._finish(ctx, tool, call, outcome, side_effect)

    async def _finish(
        self,
        ctx: ExecutionContext,
        tool: ToolDefinition | None,
        call: ToolCall,
        outcome: ToolOutcome,
        side_effect: BookingRecord | None = None,
    ) -> ToolExecutionResult:
        await self.hooks.run_after(ctx, tool, call, outcome)
        return ToolExecutionResult(outcome=outcome, side_effect=side_effect)

    @staticmethod
    def _outcome_from_envelope(call: ToolCall, tool_output: Any) -> tuple[ToolOutcome, BookingRecord | None]:
        if not isinstance(tool_output, dict):
            return ToolOutcome.failure(call, "Tool returned an unreadable result."), None
        errors = tool_output.get("errors") or []
        if tool_output.get("status") == "failed" or errors:
            message = "Tool failed."
            if errors and isinstance(errors[0], dict):
                message = str(errors[0].get("message") or message)
            return ToolOutcome.failure(call, message), None
        data = tool_output.get("data")
        payload = dict(data) if isinstance(data, dict) else {"result": data}
        side_effect = tool_output.get("side_effect")
        if not isinstance(side_effect, BookingRecord):
            side_effect = None
        return ToolOutcome(call_id=call.call_id, name=call.name, payload=payload), side_effect
