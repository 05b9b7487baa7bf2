from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Union

from .models import ExecutionContext, ToolCall, ToolOutcome
from .registry import ToolDefinition
from .sink import deliver

logger = logging.getLogger(__name__)

BeforeHook = Callable[[ExecutionContext, ToolDefinition, ToolCall], "HookDecision"]
AfterHook = Callable[[ExecutionContext, "ToolDefinition | None", ToolCall, ToolOutcome], Union[None, Awaitable[None]]]


@dataclass(frozen=True)
class HookDecision:
    allowed: bool
    code: str = "ok"
    message: str = "allowed"

    @classmethod
    def allow(cls) -> "HookDecision":
        return cls(allowed=True)

    @classmethod
    def deny(cls, code: str, message: str) -> "HookDecision":
        return cls(allowed=False, code=code, message=message)


class HookRunner:
    """Before hooks may veto a tool call; after hooks observe every outcome, including vetoes.

    After hooks may be coroutine functions; they are awaited in registration order.
    """

    def __init__(self) -> None:
        self._before: list[BeforeHook] = []
        self._after: list[AfterHook] = []

    def add_before(self, hook: BeforeHook) -> None:
        self._before.append(hook)

    def add_after(self, hook: AfterHook) -> None:
        self._after.append(hook)

    def run_before(self, ctx: ExecutionContext, tool: ToolDefinition, call: ToolCall) -> HookDecision:
        for hook in self._before:
            decision = hook(ctx, tool, call)
            if not decision.allowed:
                logger.info("%s vetoed by hook (%s): %s", call.name, decision.code, decision.message)
                return decision
        return HookDecision.allow()

    async def run_after(
        self,
        ctx: ExecutionContext,
        tool: ToolDefinition | None,
        call: ToolCall,
        outcome: ToolOutcome,
    ) -> None:
        # Observers only; one failing hook must not hide the outcome from the rest.
        for hook in self._after:
            try:
                await deliver(hook, ctx, tool, call, outcome)
            except Exception:
                logger.exception("after-hook %r failed for %s (call %s)", hook, call.name, call.call_id)
