from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from healthguide_agent_core import (
    AssistantTurn,
    ModelConfigurationError,
    ModelResponseError,
    ModelRouter,
    ModelTransportError,
    ToolCall,
    ToolOutcome,
    ToolRequestTurn,
    ToolResultTurn,
    UserTurn,
)
from healthguide_agent_core.attachments import encode_attachment
from healthguide_agent_core.providers import (
    ProviderConfig,
    anthropic_messages,
    openai_messages,
    parse_anthropic_turn,
    parse_openai_turn,
    provider_candidates,
)

OPENAI = ProviderConfig(provider="openai", base_url="https://openai.test/v1", api_key="sk-openai", model="gpt-test")
ANTHROPIC = ProviderConfig(
    provider="anthropic", base_url="https://anthropic.test/v1", api_key="sk-ant", model="claude-test"
)


def _complete(router: ModelRouter, registry, history=None):
    return asyncio.run(
        router.complete(
            system_instruction="You are HealthGuide AI.",
            history=tuple(history or [UserTurn(text="Show me doctors")]),
            tools=registry,
        )
    )


def _openai_body(message: dict) -> dict:
    return {"choices": [{"message": message}]}


def test_openai_tool_call_round_trip(executor):
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        assert request.headers["Authorization"] == "Bearer sk-openai"
        return httpx.Response(
            200,
            json=_openai_body(
                {
                    "content": None,
                    "tool_calls": [
                        {
                            "id": "call_abc",
                            "type": "function",
                            "function": {"name": "get_doctors", "arguments": "{}"},
                        }
                    ],
                }
            ),
        )

    router = ModelRouter([OPENAI], transport=httpx.MockTransport(handler))
    turn = _complete(router, executor.registry)

    assert turn.provider == "openai"
    assert turn.text == ""
    assert [(call.name, call.call_id, call.arguments) for call in turn.tool_calls] == [("get_doctors", "call_abc", {})]
    payload = seen[0]
    assert payload["model"] == "gpt-test"
    assert payload["messages"][0] == {"role": "system", "content": "You are HealthGuide AI."}
    assert {tool["function"]["name"] for tool in payload["tools"]} == {"get_doctors", "book_appointment"}


def test_anthropic_text_and_tool_use_are_parsed(executor):
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={
                "content": [
                    {"type": "text", "text": "Let me check the directory."},
                    {"type": "tool_use", "id": "toolu_1", "name": "get_doctors", "input": {}},
                ]
            },
        )

    router = ModelRouter([ANTHROPIC], transport=httpx.MockTransport(handler))
    turn = _complete(router, executor.registry)

    assert turn.provider == "anthropic"
    assert turn.text == "Let me check the directory."
    assert turn.tool_calls[0].call_id == "toolu_1"
    request = seen[0]
    assert request.url.path == "/v1/messages"
    assert request.headers["x-api-key"] == "sk-ant"
    body = json.loads(request.content)
    assert body["system"] == "You are HealthGuide AI."
    assert body["tools"][0]["input_schema"]["type"] == "object"


def test_router_fails_over_to_next_provider(executor):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "anthropic.test":
            return httpx.Response(529, json={"error": {"message": "overloaded"}})
        return httpx.Response(200, json=_openai_body({"content": "Hello from the fallback."}))

    router = ModelRouter([ANTHROPIC, OPENAI], transport=httpx.MockTransport(handler))
    turn = _complete(router, executor.registry)

    assert turn.provider == "openai"
    assert turn.text == "Hello from the fallback."


def test_rejected_keys_everywhere_is_a_configuration_error(executor):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": {"message": "invalid x-api-key"}})

    router = ModelRouter([ANTHROPIC, OPENAI], transport=httpx.MockTransport(handler))
    with pytest.raises(ModelConfigurationError):
        _complete(router, executor.registry)


def test_mixed_failures_are_a_transport_error(executor):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "anthropic.test":
            return httpx.Response(401, json={"error": {"message": "invalid x-api-key"}})
        raise httpx.ConnectError("connection refused", request=request)

    router = ModelRouter([ANTHROPIC, OPENAI], transport=httpx.MockTransport(handler))
    with pytest.raises(ModelTransportError) as excinfo:
        _complete(router, executor.registry)
    assert not isinstance(excinfo.value, ModelConfigurationError)


def test_no_configured_provider_is_a_configuration_error(executor):
    with pytest.raises(ModelConfigurationError):
        _complete(ModelRouter([]), executor.registry)


def test_malformed_payload_is_a_response_error():
    with pytest.raises(ModelResponseError):
        parse_openai_turn({"choices": []})
    with pytest.raises(ModelResponseError):
        parse_anthropic_turn({"content": "plain string"})


def test_openai_citations_and_string_arguments():
    turn = parse_openai_turn(
        _openai_body(
            {
                "content": "See the CDC guidance.",
                "annotations": [
                    {"type": "url_citation", "url_citation": {"url": "https://cdc.gov", "title": "CDC"}},
                ],
                "tool_calls": [
                    {
                        "id": "call_1",
                        "function": {"name": "book_appointment", "arguments": '{"doctorId": "Dr. Chen"}'},
                    }
                ],
            }
        )
    )
    assert turn.citations[0].uri == "https://cdc.gov"
    assert turn.tool_calls[0].arguments == {"doctorId": "Dr. Chen"}


def test_openai_messages_place_attachment_first_and_split_tool_results():
    attachment = encode_attachment(b"\x89PNG\r\n", media_type="image/png", display_name="xray.png")
    call = ToolCall(name="get_doctors", call_id="call_1")
    history = [
        UserTurn(text="What is this?", attachment=attachment),
        ToolRequestTurn(calls=(call,)),
        ToolResultTurn(results=(ToolOutcome(call_id="call_1", name="get_doctors", payload={"providers": []}),)),
        AssistantTurn(text="No doctors yet."),
    ]

    messages = openai_messages("system", history)

    user_content = messages[1]["content"]
    assert user_content[0]["type"] == "image_url"
    assert user_content[0]["image_url"]["url"].startswith("data:image/png;base64,")
    assert user_content[1] == {"type": "text", "text": "What is this?"}
    assert messages[2]["tool_calls"][0]["id"] == "call_1"
    assert messages[3] == {"role": "tool", "tool_call_id": "call_1", "content": '{"providers": []}'}
    assert messages[4] == {"role": "assistant", "content": "No doctors yet."}


def test_anthropic_messages_merge_tool_results_with_next_user_turn():
    call = ToolCall(name="book_appointment", call_id="toolu_9")
    history = [
        UserTurn(text="Book me"),
        ToolRequestTurn(calls=(call,), text="Booking now."),
        ToolResultTurn(results=(ToolOutcome.failure(call, "Missing required fields: zipcode."),)),
        UserTurn(text="It is 15213"),
    ]

    messages = anthropic_messages(history)

    assert [message["role"] for message in messages] == ["user", "assistant", "user"]
    assistant_blocks = messages[1]["content"]
    assert assistant_blocks[0] == {"type": "text", "text": "Booking now."}
    assert assistant_blocks[1]["type"] == "tool_use"
    result_block, text_block = messages[2]["content"]
    assert result_block["tool_use_id"] == "toolu_9"
    assert result_block["is_error"] is True
    assert text_block == {"type": "text", "text": "It is 15213"}


def test_provider_preference_reorders_candidates(monkeypatch):
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant")
    monkeypatch.setenv("OPENAI_API_KEY", "sk-openai")
    monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)
    monkeypatch.setenv("HEALTHGUIDE_CHAT_PROVIDER", "openai")

    assert [candidate.provider for candidate in provider_candidates()] == ["openai", "anthropic"]

    monkeypatch.setenv("HEALTHGUIDE_CHAT_PROVIDER", "auto")
    assert [candidate.provider for candidate in provider_candidates()] == ["anthropic", "openai"]
