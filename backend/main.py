from __future__ import annotations

import asyncio
import json
import logging
import os
import re
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable

from fastapi import FastAPI, File, Form, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from healthguide_agent_core import (
    AgentExecutor,
    ExecutionContext,
    FinalReply,
    HookRunner,
    ModelRouter,
    QueueSink,
    SessionManager,
    ToolCall,
    ToolDefinition,
    ToolOutcome,
    ToolRegistry,
)
from healthguide_agent_core.attachments import (
    AttachmentError,
    AttachmentTooLargeError,
    UnsupportedAttachmentError,
    encode_attachment,
    max_attachment_bytes,
)
from healthguide_agent_core.instructions import DEFAULT_LANGUAGE, SUPPORTED_LANGUAGES
from healthguide_agent_core.models import Attachment
from healthguide_tools import (
    HealthGuideToolset,
    PostgrestBookingGateway,
    SQLiteBookingGateway,
    offline_resources,
    register_tools,
)
from memory import SessionNotFoundError, SessionStore, SQLiteMemoryDB

_ENV_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

logging.basicConfig(
    level=os.getenv("HEALTHGUIDE_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def _load_local_env_file(path: Path) -> None:
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError:
        return
    for raw in lines:
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not _ENV_KEY_RE.fullmatch(key):
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
            value = value[1:-1]
        os.environ.setdefault(key, value)


def _bootstrap_local_env() -> None:
    if os.getenv("HEALTHGUIDE_SKIP_DOTENV", "false").lower() in {"1", "true", "yes"}:
        return
    repo_root = Path(__file__).resolve().parents[1]
    for candidate in (repo_root / ".env", repo_root / "backend/.env"):
        if candidate.exists():
            _load_local_env_file(candidate)


_bootstrap_local_env()


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes"}


class CreateSessionRequest(BaseModel):
    language: str = DEFAULT_LANGUAGE
    title: str | None = None


class UpdateSessionRequest(BaseModel):
    language: str | None = None
    title: str | None = None


class HealthGuideApp:
    def __init__(self) -> None:
        db_path = os.getenv(
            "HEALTHGUIDE_DB_PATH",
            str((Path(__file__).resolve().parent / "healthguide.sqlite")),
        )
        self.db = SQLiteMemoryDB(db_path)
        self.store = SessionStore(self.db)
        self.gateway = self._build_gateway()
        self.registry = ToolRegistry()
        self.toolset = HealthGuideToolset(self.gateway)
        register_tools(self.registry, self.toolset)

        self.hooks = HookRunner()
        self.hooks.add_after(self._after_tool_call)
        self.executor = AgentExecutor(registry=self.registry, hooks=self.hooks)
        self.model = ModelRouter()
        self.sessions = SessionManager(store=self.store, model=self.model, executor=self.executor)

    def _build_gateway(self) -> SQLiteBookingGateway | PostgrestBookingGateway:
        if (os.getenv("SUPABASE_URL") or "").strip() and (os.getenv("SUPABASE_KEY") or "").strip():
            logger.info("booking gateway: PostgREST at %s", os.getenv("SUPABASE_URL"))
            return PostgrestBookingGateway()
        gateway = SQLiteBookingGateway(self.db)
        if _env_flag("HEALTHGUIDE_SEED_DOCTORS", "true"):
            seeded = gateway.seed_demo_doctors()
            if seeded:
                logger.info("seeded %d demo doctors", seeded)
        return gateway

    async def _after_tool_call(
        self,
        ctx: ExecutionContext,
        tool: ToolDefinition | None,
        call: ToolCall,
        outcome: ToolOutcome,
    ) -> None:
        await asyncio.to_thread(
            self.store.record_tool_event,
            session_id=ctx.session_id,
            call_id=call.call_id,
            tool_name=call.name,
            status="failed" if outcome.is_error else "succeeded",
            details={
                "request_id": ctx.request_id,
                "round": ctx.round_index,
                "transactional": bool(tool and tool.transactional),
                "error": outcome.payload.get("error") if outcome.is_error else None,
            },
        )


container = HealthGuideApp()
app = FastAPI(title="HealthGuide Backend")

allowed_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in allowed_origins],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _emit_sse(event: str, data: dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False)}\n\n"


def _token_deltas(text: str) -> list[str]:
    return re.findall(r"\S+|\s+", text)


def _session_or_404(session_id: str, *, with_history: bool = False) -> dict[str, Any]:
    try:
        return container.store.get_session(session_id, with_history=with_history)
    except SessionNotFoundError:
        raise HTTPException(status_code=404, detail="Session not found") from None


async def _read_attachment(upload: UploadFile | None) -> Attachment | None:
    if upload is None or not (upload.filename or "").strip():
        return None
    limit = max_attachment_bytes()
    raw = await upload.read(limit + 1)
    try:
        return encode_attachment(raw, media_type=upload.content_type, display_name=upload.filename or "")
    except AttachmentTooLargeError as exc:
        raise HTTPException(status_code=413, detail=str(exc)) from exc
    except UnsupportedAttachmentError as exc:
        raise HTTPException(status_code=415, detail=str(exc)) from exc
    except AttachmentError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _stream_exchange(session_id: str, run: Callable[[QueueSink], Awaitable[FinalReply]]) -> StreamingResponse:
    async def event_stream() -> AsyncIterator[str]:
        queue: asyncio.Queue = asyncio.Queue()
        sink = QueueSink(queue)

        async def runner() -> FinalReply:
            try:
                return await run(sink)
            finally:
                await queue.put(None)

        task = asyncio.create_task(runner())
        while True:
            event = await queue.get()
            if event is None:
                break
            kind, data = event
            if kind == "chunk":
                for delta in _token_deltas(data["text"]):
                    yield _emit_sse("token", {"delta": delta})
            elif kind == "booking":
                yield _emit_sse("booking", data)
        try:
            reply = await task
        except Exception:
            logger.exception("chat stream error (session %s)", session_id)
            yield _emit_sse("error", {"message": "Chat pipeline error."})
            return
        yield _emit_sse("message", reply.as_envelope())
        yield _emit_sse("done", {"session_id": session_id, "rounds": reply.rounds})

    return StreamingResponse(event_stream(), media_type="text/event-stream")


@app.get("/languages")
def list_languages():
    return {"items": [{"code": lang.code, "name": lang.name, "flag": lang.flag} for lang in SUPPORTED_LANGUAGES]}


@app.get("/resources/offline")
def get_offline_resources():
    return offline_resources()


@app.get("/doctors")
async def list_doctors():
    result = await container.gateway.list_providers()
    if "error" in result:
        raise HTTPException(status_code=502, detail=result["error"])
    return {"items": result.get("providers", []), "info": result.get("info")}


@app.get("/bookings")
def list_bookings():
    if not isinstance(container.gateway, SQLiteBookingGateway):
        raise HTTPException(status_code=501, detail="Bookings are stored in the external database.")
    return {"items": container.gateway.list_bookings()}


@app.post("/sessions", status_code=201)
def create_session(payload: CreateSessionRequest):
    try:
        return container.sessions.start_session(payload.language, payload.title)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.get("/sessions")
def list_sessions():
    return {"items": container.store.list_sessions(), "active_session_id": container.sessions.active_session_id}


@app.get("/sessions/{session_id}")
def get_session(session_id: str):
    return _session_or_404(session_id, with_history=True)


@app.post("/sessions/{session_id}/select")
def select_session(session_id: str):
    _session_or_404(session_id)
    container.sessions.select_session(session_id)
    return _session_or_404(session_id)


@app.patch("/sessions/{session_id}")
def update_session(session_id: str, payload: UpdateSessionRequest):
    session = _session_or_404(session_id)
    try:
        if payload.language is not None:
            session = container.sessions.change_language(session_id, payload.language)
        if payload.title is not None:
            session = container.sessions.rename_session(session_id, payload.title)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return session


@app.delete("/sessions/{session_id}", status_code=204)
def delete_session(session_id: str):
    _session_or_404(session_id)
    container.sessions.delete_session(session_id)


@app.get("/sessions/{session_id}/tool-events")
def list_tool_events(session_id: str):
    _session_or_404(session_id)
    return {"items": container.store.list_tool_events(session_id)}


@app.post("/sessions/{session_id}/messages")
async def post_message(
    session_id: str,
    message: str = Form(""),
    attachment: UploadFile | None = File(None),
):
    _session_or_404(session_id)
    staged = await _read_attachment(attachment)
    if not message.strip() and staged is None:
        raise HTTPException(status_code=400, detail="Message text or attachment is required.")

    def run(sink: QueueSink) -> Awaitable[FinalReply]:
        return container.sessions.send_message(
            session_id,
            message,
            staged,
            on_chunk=sink.on_chunk,
            on_side_effect=sink.on_side_effect,
        )

    return _stream_exchange(session_id, run)


@app.post("/sessions/{session_id}/retry")
async def retry_message(session_id: str):
    _session_or_404(session_id, with_history=False)
    if not any(turn.get("kind") == "user" for turn in container.store.load_history(session_id)):
        raise HTTPException(status_code=400, detail="There is no message to retry.")

    def run(sink: QueueSink) -> Awaitable[FinalReply]:
        return container.sessions.retry_last(
            session_id,
            on_chunk=sink.on_chunk,
            on_side_effect=sink.on_side_effect,
        )

    return _stream_exchange(session_id, run)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=os.getenv("HEALTHGUIDE_HOST", "127.0.0.1"),
        port=int(os.getenv("HEALTHGUIDE_PORT", "8000")),
    )
