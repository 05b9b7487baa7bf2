from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Protocol, Sequence

import httpx

from .attachments import AttachmentError, data_url, decode_attachment, is_image
from .models import (
    AssistantTurn,
    Attachment,
    Citation,
    ModelTurn,
    ToolCall,
    ToolRequestTurn,
    ToolResultTurn,
    Turn,
    UserTurn,
    new_call_id,
)
from .registry import ToolRegistry

logger = logging.getLogger(__name__)

_OPENAI_API_BASE = os.getenv("OPENAI_API_BASE_URL", "https://api.openai.com/v1").rstrip("/")
_OPENROUTER_API_BASE = os.getenv("OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1").rstrip("/")
_ANTHROPIC_API_BASE = os.getenv("ANTHROPIC_API_BASE_URL", "https://api.anthropic.com/v1").rstrip("/")
_TEXT_MEDIA_TYPES = {"text/plain", "text/csv"}


class ModelTransportError(Exception):
    """The model could not be reached or answered with an HTTP error."""


class ModelResponseError(ModelTransportError):
    """The model answered, but the payload could not be interpreted."""


class ModelConfigurationError(Exception):
    """No usable credential for any model provider."""


class ModelClient(Protocol):
    async def complete(
        self,
        *,
        system_instruction: str,
        history: Sequence[Turn],
        tools: ToolRegistry,
    ) -> ModelTurn: ...


@dataclass(frozen=True)
class ProviderConfig:
    provider: str
    base_url: str
    api_key: str
    model: str


def provider_candidates() -> list[ProviderConfig]:
    provider_preference = (os.getenv("HEALTHGUIDE_CHAT_PROVIDER") or "auto").strip().lower()
    candidates: list[ProviderConfig] = []

    anthropic_api_key = (os.getenv("ANTHROPIC_API_KEY") or "").strip()
    if anthropic_api_key:
        candidates.append(
            ProviderConfig(
                provider="anthropic",
                base_url=_ANTHROPIC_API_BASE,
                api_key=anthropic_api_key,
                model=(os.getenv("ANTHROPIC_MODEL") or "claude-3-5-sonnet-latest").strip(),
            )
        )

    openrouter_api_key = (os.getenv("OPENROUTER_API_KEY") or "").strip()
    if openrouter_api_key:
        candidates.append(
            ProviderConfig(
                provider="openrouter",
                base_url=_OPENROUTER_API_BASE,
                api_key=openrouter_api_key,
                model=(os.getenv("OPENROUTER_MODEL") or "openai/gpt-4o-mini").strip(),
            )
        )

    openai_api_key = (os.getenv("OPENAI_API_KEY") or "").strip()
    if openai_api_key:
        candidates.append(
            ProviderConfig(
                provider="openai",
                base_url=_OPENAI_API_BASE,
                api_key=openai_api_key,
                model=(os.getenv("HEALTHGUIDE_CHAT_MODEL") or "gpt-4o-mini").strip(),
            )
        )

    if provider_preference in {"", "auto"}:
        return candidates

    aliases = {
        "claude": "anthropic",
        "anthropic": "anthropic",
        "openrouter": "openrouter",
        "openai": "openai",
    }
    canonical = aliases.get(provider_preference)
    if not canonical:
        return candidates
    preferred = [candidate for candidate in candidates if candidate.provider == canonical]
    others = [candidate for candidate in candidates if candidate.provider != canonical]
    return preferred + others


def _provider_error_message(response: httpx.Response) -> str:
    message = response.text.strip()
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        err = payload.get("error")
        if isinstance(err, dict):
            msg = err.get("message")
            if isinstance(msg, str) and msg.strip():
                return msg.strip()
        msg = payload.get("message")
        if isinstance(msg, str) and msg.strip():
            return msg.strip()
    return message or f"HTTP {response.status_code}"


def _raise_for_provider_status(provider: ProviderConfig, response: httpx.Response) -> None:
    if response.status_code in {401, 403}:
        raise ModelConfigurationError(
            f"{provider.provider} rejected the API key: {_provider_error_message(response)}"
        )
    if response.status_code >= 400:
        raise ModelTransportError(f"{provider.provider} HTTP {response.status_code}: {_provider_error_message(response)}")


def _response_json(provider: ProviderConfig, response: httpx.Response) -> dict[str, Any]:
    try:
        payload = response.json()
    except ValueError as exc:
        raise ModelResponseError(f"{provider.provider} returned non-JSON body") from exc
    if not isinstance(payload, dict):
        raise ModelResponseError(f"{provider.provider} returned an unexpected payload")
    return payload


def _attachment_text(attachment: Attachment) -> str:
    try:
        return decode_attachment(attachment).decode("utf-8", errors="replace")
    except AttachmentError:
        return ""


def _parse_arguments(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not isinstance(raw, str) or not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("tool call arguments are not valid JSON: %.200s", raw)
        return {}
    return parsed if isinstance(parsed, dict) else {}


# OpenAI-compatible chat completions


def _openai_user_content(turn: UserTurn) -> str | list[dict[str, Any]]:
    if not turn.attachment:
        return turn.text
    attachment = turn.attachment
    if is_image(attachment.media_type):
        part: dict[str, Any] = {"type": "image_url", "image_url": {"url": data_url(attachment)}}
    elif attachment.media_type in _TEXT_MEDIA_TYPES:
        part = {"type": "text", "text": f"Attached file {attachment.display_name}:\n{_attachment_text(attachment)}"}
    else:
        part = {"type": "file", "file": {"filename": attachment.display_name, "file_data": data_url(attachment)}}
    return [part, {"type": "text", "text": turn.text}]


def openai_messages(system_instruction: str, history: Sequence[Turn]) -> list[dict[str, Any]]:
    messages: list[dict[str, Any]] = [{"role": "system", "content": system_instruction}]
    for turn in history:
        if isinstance(turn, UserTurn):
            messages.append({"role": "user", "content": _openai_user_content(turn)})
        elif isinstance(turn, AssistantTurn):
            messages.append({"role": "assistant", "content": turn.text})
        elif isinstance(turn, ToolRequestTurn):
            messages.append(
                {
                    "role": "assistant",
                    "content": turn.text or None,
                    "tool_calls": [
                        {
                            "id": call.call_id,
                            "type": "function",
                            "function": {"name": call.name, "arguments": json.dumps(call.arguments)},
                        }
                        for call in turn.calls
                    ],
                }
            )
        elif isinstance(turn, ToolResultTurn):
            for result in turn.results:
                messages.append(
                    {
                        "role": "tool",
                        "tool_call_id": result.call_id,
                        "content": json.dumps(result.payload, ensure_ascii=False),
                    }
                )
    return messages


def parse_openai_turn(response_json: dict[str, Any]) -> ModelTurn:
    choices = response_json.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        raise ModelResponseError("completion has no choices")
    message = choices[0].get("message")
    if not isinstance(message, dict):
        raise ModelResponseError("completion choice has no message")

    content = message.get("content")
    text = ""
    if isinstance(content, str):
        text = content
    elif isinstance(content, list):
        text = "\n".join(
            item["text"] for item in content if isinstance(item, dict) and isinstance(item.get("text"), str)
        )

    calls: list[ToolCall] = []
    for raw_call in message.get("tool_calls") or []:
        if not isinstance(raw_call, dict):
            continue
        function = raw_call.get("function") or {}
        name = function.get("name")
        if not isinstance(name, str) or not name:
            raise ModelResponseError("tool call without a function name")
        calls.append(
            ToolCall(
                name=name,
                arguments=_parse_arguments(function.get("arguments")),
                call_id=str(raw_call.get("id") or new_call_id()),
            )
        )

    citations: list[Citation] = []
    for annotation in message.get("annotations") or []:
        if not isinstance(annotation, dict) or annotation.get("type") != "url_citation":
            continue
        detail = annotation.get("url_citation") or {}
        url = detail.get("url")
        if isinstance(url, str) and url:
            citations.append(Citation(uri=url, title=str(detail.get("title") or "")))
    return ModelTurn(text=text.strip(), tool_calls=calls, citations=citations)


# Anthropic messages


def _anthropic_attachment_block(attachment: Attachment) -> dict[str, Any]:
    if is_image(attachment.media_type):
        return {
            "type": "image",
            "source": {"type": "base64", "media_type": attachment.media_type, "data": attachment.encoded_data},
        }
    if attachment.media_type in _TEXT_MEDIA_TYPES:
        return {
            "type": "document",
            "title": attachment.display_name,
            "source": {"type": "text", "media_type": "text/plain", "data": _attachment_text(attachment)},
        }
    return {
        "type": "document",
        "title": attachment.display_name,
        "source": {"type": "base64", "media_type": attachment.media_type, "data": attachment.encoded_data},
    }


def anthropic_messages(history: Sequence[Turn]) -> list[dict[str, Any]]:
    messages: list[dict[str, Any]] = []

    def push(role: str, blocks: list[dict[str, Any]]) -> None:
        if messages and messages[-1]["role"] == role:
            messages[-1]["content"].extend(blocks)
        else:
            messages.append({"role": role, "content": blocks})

    for turn in history:
        if isinstance(turn, UserTurn):
            blocks: list[dict[str, Any]] = []
            if turn.attachment:
                blocks.append(_anthropic_attachment_block(turn.attachment))
            blocks.append({"type": "text", "text": turn.text})
            push("user", blocks)
        elif isinstance(turn, AssistantTurn):
            push("assistant", [{"type": "text", "text": turn.text or "(no response)"}])
        elif isinstance(turn, ToolRequestTurn):
            blocks = [{"type": "text", "text": turn.text}] if turn.text else []
            blocks.extend(
                {"type": "tool_use", "id": call.call_id, "name": call.name, "input": call.arguments}
                for call in turn.calls
            )
            push("assistant", blocks)
        elif isinstance(turn, ToolResultTurn):
            push(
                "user",
                [
                    {
                        "type": "tool_result",
                        "tool_use_id": result.call_id,
                        "content": json.dumps(result.payload, ensure_ascii=False),
                        "is_error": result.is_error,
                    }
                    for result in turn.results
                ],
            )
    return messages


def parse_anthropic_turn(response_json: dict[str, Any]) -> ModelTurn:
    content = response_json.get("content")
    if not isinstance(content, list):
        raise ModelResponseError("message has no content blocks")
    parts: list[str] = []
    calls: list[ToolCall] = []
    citations: list[Citation] = []
    for item in content:
        if not isinstance(item, dict):
            continue
        if item.get("type") == "text" and isinstance(item.get("text"), str):
            parts.append(item["text"])
            for citation in item.get("citations") or []:
                if isinstance(citation, dict) and isinstance(citation.get("url"), str):
                    citations.append(Citation(uri=citation["url"], title=str(citation.get("title") or "")))
        elif item.get("type") == "tool_use":
            name = item.get("name")
            if not isinstance(name, str) or not name:
                raise ModelResponseError("tool_use block without a name")
            calls.append(
                ToolCall(
                    name=name,
                    arguments=_parse_arguments(item.get("input")),
                    call_id=str(item.get("id") or new_call_id()),
                )
            )
    return ModelTurn(text="".join(parts).strip(), tool_calls=calls, citations=citations)


class ModelRouter:
    """Tries each configured provider in preference order until one answers."""

    def __init__(
        self,
        providers: list[ProviderConfig] | None = None,
        *,
        timeout_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.providers = provider_candidates() if providers is None else list(providers)
        self.timeout_seconds = timeout_seconds or float(os.getenv("HEALTHGUIDE_CHAT_TIMEOUT_SECONDS", "25"))
        self.temperature = float(os.getenv("HEALTHGUIDE_CHAT_TEMPERATURE", "0.1"))
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout_seconds, connect=8.0),
            transport=self._transport,
        )

    async def complete(
        self,
        *,
        system_instruction: str,
        history: Sequence[Turn],
        tools: ToolRegistry,
    ) -> ModelTurn:
        if not self.providers:
            raise ModelConfigurationError("no model provider key found in runtime env")

        failures: list[str] = []
        auth_failures = 0
        for provider in self.providers:
            try:
                if provider.provider == "anthropic":
                    turn = await self._anthropic_chat(provider, system_instruction, history, tools)
                else:
                    turn = await self._openai_compatible_chat(provider, system_instruction, history, tools)
            except ModelConfigurationError as exc:
                auth_failures += 1
                failures.append(str(exc))
                logger.warning("chat llm provider misconfigured (%s): %s", provider.provider, exc)
                continue
            except ModelTransportError as exc:
                failures.append(str(exc))
                logger.warning("chat llm call failed (%s): %s", provider.provider, exc)
                continue
            turn.provider = provider.provider
            logger.info("chat llm provider used (%s), %d tool call(s)", provider.provider, len(turn.tool_calls))
            return turn

        if auth_failures == len(self.providers):
            raise ModelConfigurationError("; ".join(failures))
        raise ModelTransportError("; ".join(failures))

    async def _post(self, provider: ProviderConfig, url: str, headers: dict[str, str], payload: dict[str, Any]) -> dict[str, Any]:
        try:
            async with self._client() as client:
                response = await client.post(url, headers=headers, json=payload)
        except httpx.TimeoutException as exc:
            raise ModelTransportError(f"{provider.provider} timed out") from exc
        except httpx.HTTPError as exc:
            raise ModelTransportError(f"{provider.provider} request failed: {exc}") from exc
        _raise_for_provider_status(provider, response)
        return _response_json(provider, response)

    async def _openai_compatible_chat(
        self,
        provider: ProviderConfig,
        system_instruction: str,
        history: Sequence[Turn],
        tools: ToolRegistry,
    ) -> ModelTurn:
        payload: dict[str, Any] = {
            "model": provider.model,
            "temperature": self.temperature,
            "messages": openai_messages(system_instruction, history),
        }
        declared = tools.openai_tools()
        if declared:
            payload["tools"] = declared
        headers = {
            "Authorization": f"Bearer {provider.api_key}",
            "Content-Type": "application/json",
        }
        if provider.provider == "openrouter":
            site_url = (os.getenv("OPENROUTER_SITE_URL") or "").strip()
            app_name = (os.getenv("OPENROUTER_APP_NAME") or "HealthGuide").strip()
            if site_url:
                headers["HTTP-Referer"] = site_url
            if app_name:
                headers["X-Title"] = app_name
        response_json = await self._post(provider, f"{provider.base_url}/chat/completions", headers, payload)
        return parse_openai_turn(response_json)

    async def _anthropic_chat(
        self,
        provider: ProviderConfig,
        system_instruction: str,
        history: Sequence[Turn],
        tools: ToolRegistry,
    ) -> ModelTurn:
        payload: dict[str, Any] = {
            "model": provider.model,
            "max_tokens": int(os.getenv("HEALTHGUIDE_MAX_OUTPUT_TOKENS", "1024")),
            "temperature": self.temperature,
            "system": system_instruction,
            "messages": anthropic_messages(history),
        }
        declared = tools.anthropic_tools()
        if declared:
            payload["tools"] = declared
        headers = {
            "x-api-key": provider.api_key,
            "anthropic-version": os.getenv("ANTHROPIC_API_VERSION", "2023-06-01"),
            "Content-Type": "application/json",
        }
        response_json = await self._post(provider, f"{provider.base_url}/messages", headers, payload)
        return parse_anthropic_turn(response_json)
