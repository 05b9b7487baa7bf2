from .executor import AgentExecutor
from .hooks import HookDecision, HookRunner
from .models import (
    AssistantTurn,
    Attachment,
    BookingRecord,
    Citation,
    ExecutionContext,
    FinalReply,
    ModelTurn,
    ToolCall,
    ToolExecutionResult,
    ToolOutcome,
    ToolRequestTurn,
    ToolResultTurn,
    Turn,
    UserTurn,
    turn_from_dict,
)
from .orchestrator import MAX_TOOL_ROUNDS, ConversationOrchestrator
from .providers import ModelConfigurationError, ModelResponseError, ModelRouter, ModelTransportError
from .registry import ToolDefinition, ToolName, ToolRegistry
from .sessions import SessionManager
from .sink import CallbackSink, CollectingSink, QueueSink

__all__ = [
    "MAX_TOOL_ROUNDS",
    "AgentExecutor",
    "AssistantTurn",
    "Attachment",
    "BookingRecord",
    "CallbackSink",
    "Citation",
    "CollectingSink",
    "ConversationOrchestrator",
    "ExecutionContext",
    "FinalReply",
    "HookDecision",
    "HookRunner",
    "ModelConfigurationError",
    "ModelResponseError",
    "ModelRouter",
    "ModelTransportError",
    "ModelTurn",
    "QueueSink",
    "SessionManager",
    "ToolCall",
    "ToolDefinition",
    "ToolExecutionResult",
    "ToolName",
    "ToolOutcome",
    "ToolRegistry",
    "ToolRequestTurn",
    "ToolResultTurn",
    "Turn",
    "UserTurn",
    "turn_from_dict",
]
