from __future__ import annotations

import asyncio
import logging
from typing import Any

from memory import DEFAULT_SESSION_TITLE, SessionStore

from .executor import AgentExecutor
from .instructions import DEFAULT_LANGUAGE, resolve_language
from .models import Attachment, FinalReply, UserTurn, turn_from_dict
from .orchestrator import ConversationOrchestrator
from .providers import ModelClient
from .sink import ChunkCallback, SideEffectCallback

logger = logging.getLogger(__name__)

TITLE_MAX_CHARS = 30
UNTITLED_QUERY = "New Query"


def derive_title(text: str, attachment: Attachment | None) -> str:
    return (text or "").strip()[:TITLE_MAX_CHARS] or (attachment.display_name if attachment else "") or UNTITLED_QUERY


class SessionManager:
    """Maps session ids to their own orchestrator and keeps the store in sync.

    Selecting a session or changing its language re-initializes that session's
    orchestrator, so its working history starts empty. Sends on one session are
    serialized; different sessions never share state.
    """

    def __init__(self, *, store: SessionStore, model: ModelClient, executor: AgentExecutor) -> None:
        self.store = store
        self.model = model
        self.executor = executor
        self.active_session_id: str | None = None
        self._orchestrators: dict[str, ConversationOrchestrator] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _orchestrator_for(self, session_id: str) -> ConversationOrchestrator:
        orchestrator = self._orchestrators.get(session_id)
        if orchestrator is None:
            orchestrator = ConversationOrchestrator(model=self.model, executor=self.executor, session_id=session_id)
            self._orchestrators[session_id] = orchestrator
        return orchestrator

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    def orchestrator(self, session_id: str) -> ConversationOrchestrator | None:
        return self._orchestrators.get(session_id)

    def start_session(self, language: str = DEFAULT_LANGUAGE, title: str | None = None) -> dict[str, Any]:
        code = resolve_language(language).code
        session = self.store.create_session(language=code, title=title)
        self._orchestrator_for(session["id"]).initialize_session(code)
        self.active_session_id = session["id"]
        logger.info("started session %s (%s)", session["id"], code)
        return session

    def select_session(self, session_id: str) -> ConversationOrchestrator:
        session = self.store.get_session(session_id)
        orchestrator = self._orchestrator_for(session_id)
        orchestrator.initialize_session(session["language"])
        self.active_session_id = session_id
        return orchestrator

    def change_language(self, session_id: str, language: str) -> dict[str, Any]:
        code = resolve_language(language).code
        session = self.store.update_session(session_id, language=code)
        self._orchestrator_for(session_id).initialize_session(code)
        logger.info("session %s language changed to %s", session_id, code)
        return session

    def rename_session(self, session_id: str, title: str) -> dict[str, Any]:
        cleaned = title.strip()
        if not cleaned:
            raise ValueError("Title must not be empty.")
        return self.store.update_session(session_id, title=cleaned)

    def delete_session(self, session_id: str) -> None:
        self.store.delete_session(session_id)
        self._orchestrators.pop(session_id, None)
        self._locks.pop(session_id, None)
        if self.active_session_id == session_id:
            self.active_session_id = None

    async def send_message(
        self,
        session_id: str,
        text: str,
        attachment: Attachment | None = None,
        *,
        on_chunk: ChunkCallback | None = None,
        on_side_effect: SideEffectCallback | None = None,
    ) -> FinalReply:
        async with self._lock_for(session_id):
            session = await asyncio.to_thread(self.store.get_session, session_id)
            orchestrator = self._orchestrators.get(session_id)
            if orchestrator is None or orchestrator.language is None:
                orchestrator = self._orchestrator_for(session_id)
                orchestrator.initialize_session(session["language"])
                self.active_session_id = session_id
            first_message = not await asyncio.to_thread(self.store.load_history, session_id)

            reply = await orchestrator.send_message(
                text,
                attachment,
                on_chunk=on_chunk,
                on_side_effect=on_side_effect,
            )
            await asyncio.to_thread(self.store.append_turns, session_id, [turn.to_dict() for turn in reply.turns])
            if first_message and session["title"] == DEFAULT_SESSION_TITLE:
                await asyncio.to_thread(
                    self.store.update_session,
                    session_id,
                    title=derive_title(text, attachment),
                )
            return reply

    async def retry_last(
        self,
        session_id: str,
        *,
        on_chunk: ChunkCallback | None = None,
        on_side_effect: SideEffectCallback | None = None,
    ) -> FinalReply:
        history = await asyncio.to_thread(self._history_of, session_id)
        last_user = next((turn for turn in reversed(history) if turn.get("kind") == "user"), None)
        if last_user is None:
            raise ValueError("There is no message to retry.")
        turn = turn_from_dict(last_user)
        if not isinstance(turn, UserTurn):
            raise ValueError(f"Stored turn is not a user message: {last_user.get('kind')!r}")
        return await self.send_message(
            session_id,
            turn.text,
            turn.attachment,
            on_chunk=on_chunk,
            on_side_effect=on_side_effect,
        )

    def _history_of(self, session_id: str) -> list[dict[str, Any]]:
        self.store.get_session(session_id)
        return self.store.load_history(session_id)
