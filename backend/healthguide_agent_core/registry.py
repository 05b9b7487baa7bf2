from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

from .models import ExecutionContext, ToolCall

ToolHandler = Callable[[ExecutionContext, ToolCall], Awaitable[Any]]


class ToolName(str, Enum):
    GET_DOCTORS = "get_doctors"
    BOOK_APPOINTMENT = "book_appointment"

    @classmethod
    def parse(cls, name: str) -> "ToolName | None":
        try:
            return cls(name)
        except ValueError:
            return None


@dataclass(frozen=True)
class ToolDeclaration:
    name: ToolName
    description: str
    properties: dict[str, dict[str, Any]] = field(default_factory=dict)
    required: tuple[str, ...] = ()

    def json_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": self.properties,
            "required": list(self.required),
        }


GET_DOCTORS = ToolDeclaration(
    name=ToolName.GET_DOCTORS,
    description="Fetch the list of available doctors from the database.",
)

BOOK_APPOINTMENT = ToolDeclaration(
    name=ToolName.BOOK_APPOINTMENT,
    description="Save patient details to the database and confirm an appointment.",
    properties={
        "doctorId": {"type": "string", "description": "The UUID of the doctor (preferred) or their full name."},
        "patientName": {"type": "string", "description": "Patient name."},
        "patientAge": {"type": "number", "description": "Patient age."},
        "reason": {"type": "string", "description": "Reason for visit."},
        "address": {"type": "string", "description": "Street address."},
        "zipcode": {"type": "string", "description": "Zipcode."},
    },
    required=("doctorId", "patientName", "patientAge", "reason", "address", "zipcode"),
)

DECLARATIONS: dict[ToolName, ToolDeclaration] = {
    GET_DOCTORS.name: GET_DOCTORS,
    BOOK_APPOINTMENT.name: BOOK_APPOINTMENT,
}


@dataclass
class ToolDefinition:
    declaration: ToolDeclaration
    handler: ToolHandler
    transactional: bool = False

    @property
    def name(self) -> ToolName:
        return self.declaration.name


class ToolRegistry:
    def __init__(self) -> None:
        self._tools: dict[ToolName, ToolDefinition] = {}

    def register(self, tool: ToolDefinition) -> None:
        self._tools[tool.name] = tool

    def resolve(self, name: str) -> ToolDefinition:
        canonical = ToolName.parse(name)
        tool = self._tools.get(canonical) if canonical else None
        if not tool:
            raise KeyError(f"Tool not found: {name}")
        return tool

    def list_names(self) -> list[str]:
        return sorted(name.value for name in self._tools)

    def declarations(self) -> list[ToolDeclaration]:
        return [self._tools[name].declaration for name in ToolName if name in self._tools]

    def openai_tools(self) -> list[dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {
                    "name": declaration.name.value,
                    "description": declaration.description,
                    "parameters": declaration.json_schema(),
                },
            }
            for declaration in self.declarations()
        ]

    def anthropic_tools(self) -> list[dict[str, Any]]:
        return [
            {
                "name": declaration.name.value,
                "description": declaration.description,
                "input_schema": declaration.json_schema(),
            }
            for declaration in self.declarations()
        ]

    @staticmethod
    def missing_arguments(declaration: ToolDeclaration, arguments: dict[str, Any]) -> list[str]:
        missing: list[str] = []
        for key in declaration.required:
            value = arguments.get(key)
            if value is None or (isinstance(value, str) and not value.strip()):
                missing.append(key)
        return missing
