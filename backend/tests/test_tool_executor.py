from __future__ import annotations

import asyncio

from healthguide_agent_core import (
    AgentExecutor,
    BookingRecord,
    ExecutionContext,
    HookDecision,
    HookRunner,
    ToolCall,
    ToolDefinition,
    ToolName,
    ToolRegistry,
)
from healthguide_agent_core.registry import BOOK_APPOINTMENT, DECLARATIONS, GET_DOCTORS


def _ctx() -> ExecutionContext:
    return ExecutionContext(session_id="session-a", request_id="req-1", round_index=1)


def _record() -> BookingRecord:
    return BookingRecord(
        id="b-1",
        provider_id="d-1",
        provider_display_name="Dr. Test",
        patient_name="Ana",
        patient_age=40,
        reason="Checkup",
        address="1 Main St",
        zipcode="15213",
        created_at="2026-01-01T00:00:00+00:00",
    )


def test_tool_names_are_a_closed_set():
    assert {name.value for name in ToolName} == {"get_doctors", "book_appointment"}
    assert ToolName.parse("get_doctors") is ToolName.GET_DOCTORS
    assert ToolName.parse("delete_everything") is None
    assert set(DECLARATIONS) == set(ToolName)


def test_declarations_expose_provider_schemas(executor):
    registry = executor.registry
    assert registry.list_names() == ["book_appointment", "get_doctors"]

    openai_tools = registry.openai_tools()
    assert [tool["function"]["name"] for tool in openai_tools] == ["get_doctors", "book_appointment"]
    booking_schema = openai_tools[1]["function"]["parameters"]
    assert booking_schema["required"] == list(BOOK_APPOINTMENT.required)
    assert booking_schema["properties"]["patientAge"]["type"] == "number"

    anthropic_tools = registry.anthropic_tools()
    assert anthropic_tools[0]["input_schema"] == GET_DOCTORS.json_schema()
    assert anthropic_tools[0]["input_schema"]["required"] == []


def test_missing_arguments_treats_blank_strings_as_missing():
    missing = ToolRegistry.missing_arguments(
        BOOK_APPOINTMENT,
        {"doctorId": "d-1", "patientName": "  ", "patientAge": 0, "reason": None},
    )
    assert missing == ["patientName", "reason", "address", "zipcode"]


def test_before_hook_veto_skips_the_handler():
    invoked: list[str] = []

    async def handler(ctx, call):
        invoked.append(call.call_id)
        return {"status": "succeeded", "data": {}, "errors": []}

    registry = ToolRegistry()
    registry.register(ToolDefinition(GET_DOCTORS, handler))
    hooks = HookRunner()
    hooks.add_before(lambda ctx, tool, call: HookDecision.deny("blocked", "Directory is offline."))
    executor = AgentExecutor(registry=registry, hooks=hooks)

    result = asyncio.run(executor.execute(_ctx(), ToolCall(name="get_doctors")))

    assert invoked == []
    assert result.status == "failed"
    assert result.outcome.payload == {"error": "Directory is offline."}


def test_handler_exception_becomes_error_outcome_and_after_hooks_run():
    seen: list[tuple[str, bool]] = []

    async def handler(ctx, call):
        raise RuntimeError("disk full")

    registry = ToolRegistry()
    registry.register(ToolDefinition(GET_DOCTORS, handler))
    hooks = HookRunner()
    hooks.add_after(lambda ctx, tool, call, outcome: seen.append((call.name, outcome.is_error)))
    executor = AgentExecutor(registry=registry, hooks=hooks)

    result = asyncio.run(executor.execute(_ctx(), ToolCall(name="get_doctors")))

    assert result.outcome.is_error
    assert result.outcome.payload["error"] == "Tool failed: disk full"
    assert seen == [("get_doctors", True)]


def test_after_hook_failure_does_not_change_the_outcome():
    async def handler(ctx, call):
        return {"status": "succeeded", "data": {"providers": []}, "errors": []}

    def broken_hook(ctx, tool, call, outcome):
        raise RuntimeError("audit log unavailable")

    registry = ToolRegistry()
    registry.register(ToolDefinition(GET_DOCTORS, handler))
    hooks = HookRunner()
    hooks.add_after(broken_hook)
    executor = AgentExecutor(registry=registry, hooks=hooks)

    result = asyncio.run(executor.execute(_ctx(), ToolCall(name="get_doctors")))

    assert result.status == "succeeded"
    assert result.outcome.payload == {"providers": []}


def test_side_effect_is_only_kept_for_booking_records():
    record = _record()

    async def booking_handler(ctx, call):
        return {"status": "succeeded", "data": {"success": True}, "errors": [], "side_effect": record}

    async def odd_handler(ctx, call):
        return {"status": "succeeded", "data": {}, "errors": [], "side_effect": {"id": "not-a-record"}}

    registry = ToolRegistry()
    registry.register(ToolDefinition(BOOK_APPOINTMENT, booking_handler, transactional=True))
    registry.register(ToolDefinition(GET_DOCTORS, odd_handler))
    executor = AgentExecutor(registry=registry, hooks=HookRunner())
    args = {key: "x" for key in BOOK_APPOINTMENT.required}

    booked = asyncio.run(executor.execute(_ctx(), ToolCall(name="book_appointment", arguments=args)))
    listed = asyncio.run(executor.execute(_ctx(), ToolCall(name="get_doctors")))

    assert booked.side_effect is record
    assert listed.side_effect is None


def test_failed_envelope_uses_first_error_message():
    async def handler(ctx, call):
        return {"status": "failed", "data": {}, "errors": [{"code": "x", "message": "Doctor is on leave."}]}

    registry = ToolRegistry()
    registry.register(ToolDefinition(GET_DOCTORS, handler))
    executor = AgentExecutor(registry=registry, hooks=HookRunner())

    result = asyncio.run(executor.execute(_ctx(), ToolCall(name="get_doctors", call_id="call-7")))

    assert result.outcome.call_id == "call-7"
    assert result.outcome.payload == {"error": "Doctor is on leave."}


def test_every_after_hook_runs_even_if_one_fails():
    seen: list[str] = []

    async def handler(ctx, call):
        return {"status": "succeeded", "data": {}, "errors": []}

    def broken_hook(ctx, tool, call, outcome):
        raise RuntimeError("audit log unavailable")

    registry = ToolRegistry()
    registry.register(ToolDefinition(GET_DOCTORS, handler))
    hooks = HookRunner()
    hooks.add_after(broken_hook)
    hooks.add_after(lambda ctx, tool, call, outcome: seen.append(call.call_id))
    executor = AgentExecutor(registry=registry, hooks=hooks)

    asyncio.run(executor.execute(_ctx(), ToolCall(name="get_doctors", call_id="call-9")))

    assert seen == ["call-9"]


def test_async_after_hooks_are_awaited_in_order():
    async def handler(ctx, call):
        return {"status": "succeeded", "data": {"providers": []}, "errors": []}

    seen = []

    async def audit_hook(ctx, tool, call, outcome):
        await asyncio.sleep(0)
        seen.append(("audit", call.call_id))

    registry = ToolRegistry()
    registry.register(ToolDefinition(GET_DOCTORS, handler))
    hooks = HookRunner()
    hooks.add_after(audit_hook)
    hooks.add_after(lambda ctx, tool, call, outcome: seen.append(("sync", call.call_id)))
    executor = AgentExecutor(registry=registry, hooks=hooks)
    call = ToolCall(name="get_doctors")

    asyncio.run(executor.execute(_ctx(), call))

    assert seen == [("audit", call.call_id), ("sync", call.call_id)]
