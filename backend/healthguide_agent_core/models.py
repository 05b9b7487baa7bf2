from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any, Union


def new_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:24]}"


@dataclass(frozen=True)
class Attachment:
    encoded_data: str
    media_type: str
    display_name: str

    def as_dict(self) -> dict[str, Any]:
        return {
            "encoded_data": self.encoded_data,
            "media_type": self.media_type,
            "display_name": self.display_name,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Attachment":
        return cls(
            encoded_data=str(data["encoded_data"]),
            media_type=str(data["media_type"]),
            display_name=str(data.get("display_name") or "attachment"),
        )


@dataclass(frozen=True)
class Citation:
    uri: str
    title: str = ""

    def as_dict(self) -> dict[str, Any]:
        return {"uri": self.uri, "title": self.title}


@dataclass(frozen=True)
class BookingRecord:
    id: str
    provider_id: str
    provider_display_name: str
    patient_name: str
    patient_age: int
    reason: str
    address: str
    zipcode: str
    created_at: str

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "provider_id": self.provider_id,
            "provider_display_name": self.provider_display_name,
            "patient_name": self.patient_name,
            "patient_age": self.patient_age,
            "reason": self.reason,
            "address": self.address,
            "zipcode": self.zipcode,
            "created_at": self.created_at,
        }


@dataclass(frozen=True)
class ToolCall:
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    call_id: str = field(default_factory=new_call_id)

    def as_dict(self) -> dict[str, Any]:
        return {"name": self.name, "arguments": dict(self.arguments), "call_id": self.call_id}


@dataclass(frozen=True)
class ToolOutcome:
    call_id: str
    name: str
    payload: dict[str, Any]
    is_error: bool = False

    @classmethod
    def failure(cls, call: ToolCall, message: str) -> "ToolOutcome":
        return cls(call_id=call.call_id, name=call.name, payload={"error": message}, is_error=True)

    def as_dict(self) -> dict[str, Any]:
        return {"call_id": self.call_id, "name": self.name, "payload": self.payload, "is_error": self.is_error}


@dataclass(frozen=True)
class UserTurn:
    text: str
    attachment: Attachment | None = None
    kind: str = field(default="user", init=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "text": self.text,
            "attachment": self.attachment.as_dict() if self.attachment else None,
        }


@dataclass(frozen=True)
class AssistantTurn:
    text: str
    citations: tuple[Citation, ...] = ()
    degraded: bool = False
    kind: str = field(default="assistant", init=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "text": self.text,
            "citations": [citation.as_dict() for citation in self.citations],
            "degraded": self.degraded,
        }


@dataclass(frozen=True)
class ToolRequestTurn:
    calls: tuple[ToolCall, ...]
    text: str = ""
    kind: str = field(default="tool_request", init=False)

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "text": self.text, "calls": [call.as_dict() for call in self.calls]}


@dataclass(frozen=True)
class ToolResultTurn:
    results: tuple[ToolOutcome, ...]
    kind: str = field(default="tool_result", init=False)

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "results": [result.as_dict() for result in self.results]}


Turn = Union[UserTurn, AssistantTurn, ToolRequestTurn, ToolResultTurn]


def turn_from_dict(data: dict[str, Any]) -> Turn:
    kind = data.get("kind")
    if kind == "user":
        attachment = data.get("attachment")
        return UserTurn(
            text=str(data.get("text") or ""),
            attachment=Attachment.from_dict(attachment) if attachment else None,
        )
    if kind == "assistant":
        return AssistantTurn(
            text=str(data.get("text") or ""),
            citations=tuple(
                Citation(uri=str(item.get("uri", "")), title=str(item.get("title", "")))
                for item in data.get("citations") or []
            ),
            degraded=bool(data.get("degraded", False)),
        )
    if kind == "tool_request":
        return ToolRequestTurn(
            calls=tuple(
                ToolCall(name=str(item["name"]), arguments=dict(item.get("arguments") or {}), call_id=str(item["call_id"]))
                for item in data.get("calls") or []
            ),
            text=str(data.get("text") or ""),
        )
    if kind == "tool_result":
        return ToolResultTurn(
            results=tuple(
                ToolOutcome(
                    call_id=str(item["call_id"]),
                    name=str(item["name"]),
                    payload=dict(item.get("payload") or {}),
                    is_error=bool(item.get("is_error", False)),
                )
                for item in data.get("results") or []
            )
        )
    raise ValueError(f"Unknown turn kind: {kind!r}")


@dataclass
class ModelTurn:
    """One response from the model: text, requested tool calls, or both."""

    text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    citations: list[Citation] = field(default_factory=list)
    provider: str | None = None


@dataclass
class ExecutionContext:
    session_id: str | None
    request_id: str
    language: str = "en"
    round_index: int = 0


@dataclass
class ToolExecutionResult:
    outcome: ToolOutcome
    side_effect: BookingRecord | None = None

    @property
    def status(self) -> str:
        return "failed" if self.outcome.is_error else "succeeded"


@dataclass
class FinalReply:
    text: str
    citations: list[Citation] = field(default_factory=list)
    degraded: bool = False
    error_kind: str | None = None
    rounds: int = 0
    turns: list[Turn] = field(default_factory=list)

    def as_envelope(self) -> dict[str, Any]:
        return {
            "text": self.text,
            "citations": [citation.as_dict() for citation in self.citations],
            "degraded": self.degraded,
            "error_kind": self.error_kind,
            "rounds": self.rounds,
        }
