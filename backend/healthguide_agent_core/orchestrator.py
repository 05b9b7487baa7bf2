from __future__ import annotations

import logging
import uuid
from enum import Enum
from typing import Sequence

from .executor import AgentExecutor
from .instructions import DEFAULT_LANGUAGE, build_system_instruction, resolve_language
from .models import (
    AssistantTurn,
    Attachment,
    Citation,
    ExecutionContext,
    FinalReply,
    ModelTurn,
    ToolOutcome,
    ToolRequestTurn,
    ToolResultTurn,
    Turn,
    UserTurn,
)
from .providers import ModelClient, ModelConfigurationError, ModelTransportError
from .sink import ChunkCallback, SideEffectCallback, deliver

logger = logging.getLogger(__name__)

MAX_TOOL_ROUNDS = 4

TRANSPORT_FAILURE_REPLY = "System connection issue. Please try again."
CONFIGURATION_FAILURE_REPLY = (
    "HealthGuide is not configured to reach its language model. "
    "An operator must set ANTHROPIC_API_KEY, OPENAI_API_KEY or OPENROUTER_API_KEY "
    "for the backend and restart it."
)
EMPTY_MODEL_REPLY = "I've processed your request."
ATTACHMENT_ONLY_PROMPT = "Please analyze this document."


class RoundState(str, Enum):
    AWAITING_MODEL_TURN = "awaiting_model_turn"
    EXECUTING_TOOLS = "executing_tools"
    DONE = "done"


class ConversationOrchestrator:
    """Drives one user message to a final reply, running tool rounds in between.

    The working history is owned by this instance and is append-only between
    calls to ``initialize_session``. Callers must not run two ``send_message``
    calls on the same instance concurrently.
    """

    def __init__(
        self,
        *,
        model: ModelClient,
        executor: AgentExecutor,
        session_id: str | None = None,
        max_rounds: int = MAX_TOOL_ROUNDS,
    ) -> None:
        self.model = model
        self.executor = executor
        self.session_id = session_id
        self.max_rounds = max_rounds
        self._history: list[Turn] = []
        self._language: str | None = None
        self._instruction: str | None = None

    @property
    def history(self) -> tuple[Turn, ...]:
        return tuple(self._history)

    @property
    def language(self) -> str | None:
        return self._language

    @property
    def system_instruction(self) -> str | None:
        return self._instruction

    def initialize_session(self, language: str = DEFAULT_LANGUAGE) -> None:
        resolved = resolve_language(language)
        # A send still in flight keeps its reference to the old list.
        self._history = []
        self._language = resolved.code
        self._instruction = build_system_instruction(resolved.code)

    async def send_message(
        self,
        text: str,
        attachment: Attachment | None = None,
        *,
        on_chunk: ChunkCallback | None = None,
        on_side_effect: SideEffectCallback | None = None,
    ) -> FinalReply:
        if self._instruction is None:
            logger.warning("send_message before initialize_session; using %s", DEFAULT_LANGUAGE)
            self.initialize_session(DEFAULT_LANGUAGE)

        message = (text or "").strip()
        if not message:
            if attachment is None:
                raise ValueError("Message text or attachment is required.")
            message = ATTACHMENT_ONLY_PROMPT

        history = self._history
        instruction = self._instruction or build_system_instruction(DEFAULT_LANGUAGE)
        appended: list[Turn] = []

        def append(turn: Turn) -> None:
            history.append(turn)
            appended.append(turn)

        append(UserTurn(text=message, attachment=attachment))
        ctx = ExecutionContext(
            session_id=self.session_id,
            request_id=uuid.uuid4().hex,
            language=self._language or DEFAULT_LANGUAGE,
        )

        rounds = 0
        citations: list[Citation] = []
        model_turn = ModelTurn()
        state = RoundState.AWAITING_MODEL_TURN
        try:
            while state is not RoundState.DONE:
                if state is RoundState.AWAITING_MODEL_TURN:
                    model_turn = await self._request_model_turn(instruction, history)
                    _merge_citations(citations, model_turn.citations)
                    if model_turn.tool_calls and rounds < self.max_rounds:
                        state = RoundState.EXECUTING_TOOLS
                    else:
                        state = RoundState.DONE
                else:
                    ctx.round_index = rounds + 1
                    request, results = await self._execute_round(ctx, model_turn, on_side_effect)
                    append(request)
                    append(results)
                    rounds += 1
                    state = RoundState.AWAITING_MODEL_TURN
        except ModelConfigurationError as exc:
            logger.error("model configuration failure (session %s): %s", self.session_id, exc)
            return await self._degraded_reply(append, appended, CONFIGURATION_FAILURE_REPLY, "configuration", rounds, on_chunk)
        except ModelTransportError as exc:
            logger.warning("model transport failure (session %s): %s", self.session_id, exc)
            return await self._degraded_reply(append, appended, TRANSPORT_FAILURE_REPLY, "transport", rounds, on_chunk)

        if model_turn.tool_calls:
            logger.warning(
                "tool round cap (%d) reached with %d pending call(s); replying with last text",
                self.max_rounds,
                len(model_turn.tool_calls),
            )
        final_text = model_turn.text or EMPTY_MODEL_REPLY
        append(AssistantTurn(text=final_text, citations=tuple(citations)))
        await deliver(on_chunk, final_text, list(citations) or None)
        return FinalReply(text=final_text, citations=citations, rounds=rounds, turns=appended)

    async def _request_model_turn(self, instruction: str, history: Sequence[Turn]) -> ModelTurn:
        try:
            return await self.model.complete(
                system_instruction=instruction,
                history=tuple(history),
                tools=self.executor.registry,
            )
        except (ModelConfigurationError, ModelTransportError):
            raise
        except Exception as exc:
            logger.exception("model client raised unexpectedly")
            raise ModelTransportError(str(exc)) from exc

    async def _execute_round(
        self,
        ctx: ExecutionContext,
        model_turn: ModelTurn,
        on_side_effect: SideEffectCallback | None,
    ) -> tuple[ToolRequestTurn, ToolResultTurn]:
        calls = tuple(model_turn.tool_calls)
        outcomes: list[ToolOutcome] = []
        for call in calls:
            logger.info("round %d: dispatching %s (call %s)", ctx.round_index, call.name, call.call_id)
            execution = await self.executor.execute(ctx, call)
            outcomes.append(execution.outcome)
            if execution.side_effect is not None:
                try:
                    await deliver(on_side_effect, execution.side_effect)
                except Exception:
                    logger.exception("side-effect callback failed for booking %s", execution.side_effect.id)
        return ToolRequestTurn(calls=calls, text=model_turn.text), ToolResultTurn(results=tuple(outcomes))

    async def _degraded_reply(
        self,
        append,
        appended: list[Turn],
        text: str,
        error_kind: str,
        rounds: int,
        on_chunk: ChunkCallback | None,
    ) -> FinalReply:
        append(AssistantTurn(text=text, degraded=True))
        await deliver(on_chunk, text, None)
        return FinalReply(text=text, degraded=True, error_kind=error_kind, rounds=rounds, turns=appended)


def _merge_citations(target: list[Citation], incoming: Sequence[Citation]) -> None:
    seen = {citation.uri for citation in target}
    for citation in incoming:
        if citation.uri not in seen:
            target.append(citation)
            seen.add(citation.uri)
