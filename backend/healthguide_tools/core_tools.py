from __future__ import annotations

from typing import Any

from healthguide_agent_core.models import ExecutionContext, ToolCall
from healthguide_agent_core.registry import BOOK_APPOINTMENT, GET_DOCTORS, ToolDefinition, ToolRegistry

from .gateway import BookingGateway

MAX_PATIENT_AGE = 130


def _safe_age(value: Any) -> int | None:
    try:
        if value is None or isinstance(value, bool):
            return None
        numeric = float(str(value).strip())
    except (TypeError, ValueError):
        return None
    if not numeric.is_integer() or not (0 <= numeric <= MAX_PATIENT_AGE):
        return None
    return int(numeric)


def _failed(code: str, message: str) -> dict[str, Any]:
    return {"status": "failed", "data": {}, "errors": [{"code": code, "message": message}]}


class HealthGuideToolset:
    def __init__(self, gateway: BookingGateway) -> None:
        self.gateway = gateway

    async def get_doctors(self, ctx: ExecutionContext, call: ToolCall) -> dict[str, Any]:
        result = await self.gateway.list_providers()
        if "error" in result:
            return _failed("directory_error", str(result["error"]))
        return {"status": "succeeded", "data": result, "errors": []}

    async def book_appointment(self, ctx: ExecutionContext, call: ToolCall) -> dict[str, Any]:
        args = call.arguments
        age = _safe_age(args.get("patientAge"))
        if age is None:
            return _failed(
                "invalid_age",
                f"patientAge must be a whole number between 0 and {MAX_PATIENT_AGE}; ask the user to confirm it.",
            )
        result = await self.gateway.create_booking(
            str(args["doctorId"]).strip(),
            str(args["patientName"]).strip(),
            age,
            str(args["reason"]).strip(),
            str(args["address"]).strip(),
            str(args["zipcode"]).strip(),
        )
        if "error" in result:
            return _failed("booking_failed", str(result["error"]))
        record = result["record"]
        return {
            "status": "succeeded",
            "data": {"success": True, "booking": record.as_dict()},
            "errors": [],
            "side_effect": record,
        }


def register_tools(registry: ToolRegistry, toolset: HealthGuideToolset) -> None:
    registry.register(ToolDefinition(GET_DOCTORS, toolset.get_doctors))
    registry.register(ToolDefinition(BOOK_APPOINTMENT, toolset.book_appointment, transactional=True))
