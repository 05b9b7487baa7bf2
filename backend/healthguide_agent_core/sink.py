from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Union

from .models import BookingRecord, Citation

ChunkCallback = Callable[[str, "list[Citation] | None"], Union[None, Awaitable[None]]]
SideEffectCallback = Callable[[BookingRecord], Union[None, Awaitable[None]]]


async def deliver(callback: Callable[..., Any] | None, *args: Any) -> None:
    """Invokes a sink callback that may be a plain function or a coroutine function."""
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


@dataclass
class CallbackSink:
    chunk_callback: ChunkCallback | None = None
    side_effect_callback: SideEffectCallback | None = None

    async def on_chunk(self, text: str, citations: list[Citation] | None = None) -> None:
        await deliver(self.chunk_callback, text, citations)

    async def on_side_effect(self, record: BookingRecord) -> None:
        await deliver(self.side_effect_callback, record)


@dataclass
class CollectingSink:
    chunks: list[str] = field(default_factory=list)
    citations: list[list[Citation]] = field(default_factory=list)
    bookings: list[BookingRecord] = field(default_factory=list)

    def on_chunk(self, text: str, citations: list[Citation] | None = None) -> None:
        self.chunks.append(text)
        self.citations.append(list(citations or []))

    def on_side_effect(self, record: BookingRecord) -> None:
        self.bookings.append(record)

    @property
    def text(self) -> str:
        return self.chunks[-1] if self.chunks else ""


class QueueSink:
    """Forwards sink events onto an asyncio queue for a streaming consumer."""

    def __init__(self, queue: "asyncio.Queue[tuple[str, Any] | None]") -> None:
        self.queue = queue

    async def on_chunk(self, text: str, citations: list[Citation] | None = None) -> None:
        await self.queue.put(("chunk", {"text": text, "citations": [c.as_dict() for c in citations or []]}))

    async def on_side_effect(self, record: BookingRecord) -> None:
        await self.queue.put(("booking", record.as_dict()))
