"""Agent event taxonomy.

Every event is a frozen msgspec struct tagged by its `type` field, so the
whole log encodes to JSON and decodes back into the typed classes below.
"""

from typing import Any, Literal, get_args

from msgspec import field

from mmagent.errors import (
    AgentAbortedError,
    LLMProviderError,
    MMAgentConfigurationError,
    MMAgentValidationError,
)
from mmagent.interface import Record
from mmagent.llm.models import MessageContent, ToolCall

EventType = Literal[
    "user_message",
    "assistant_message",
    "assistant_streaming_message",
    "assistant_thinking_message",
    "assistant_streaming_thinking_message",
    "assistant_streaming_tool_call",
    "tool_call",
    "tool_result",
    "system",
    "agent_run_start",
    "agent_run_end",
    "environment_input",
    "plan_start",
    "plan_update",
    "plan_finish",
]

RunStatus = Literal["completed", "max_iterations", "aborted", "error"]
SystemLevel = Literal["info", "warning", "error"]
RunErrorCode = Literal[
    "provider_error",
    "provider_timeout",
    "configuration_error",
    "validation_error",
    "internal_error",
    "aborted",
]


class RunError(Record):
    """Structured failure surfaced to callers of a run."""

    code: RunErrorCode
    message: str
    details: dict[str, Any] | None = None

    @classmethod
    def from_exception(cls, exc: BaseException) -> "RunError":
        match exc:
            case TimeoutError():
                return cls(code="provider_timeout", message=str(exc) or "timed out")
            case LLMProviderError(status_code=status):
                details = {"status_code": status} if status is not None else None
                return cls(code="provider_error", message=str(exc), details=details)
            case AgentAbortedError():
                return cls(code="aborted", message=str(exc))
            case MMAgentConfigurationError():
                return cls(code="configuration_error", message=str(exc))
            case MMAgentValidationError():
                return cls(code="validation_error", message=str(exc))
            case _:
                return cls(
                    code="internal_error",
                    message=str(exc),
                    details={"exception": type(exc).__name__},
                )


class ToolInfo(Record):
    name: str
    description: str
    parameters: dict[str, Any]


class PlanStep(Record):
    content: str
    done: bool = False


class BaseEvent(Record, tag_field="type"):
    """Fields shared by every event: identity and ordering."""

    id: str
    timestamp: int
    """Milliseconds since epoch, non-decreasing within one stream."""

    @property
    def event_type(self) -> EventType:
        return self.__struct_config__.tag  # type: ignore[return-value]


class UserMessageEvent(BaseEvent, tag="user_message"):
    content: MessageContent


class AssistantMessageEvent(BaseEvent, tag="assistant_message"):
    content: str = ""
    """Visible answer text, with any engine-specific tool markup removed."""
    raw_content: str | None = None
    """Text exactly as the model produced it."""
    tool_calls: list[ToolCall] | None = None
    finish_reason: str | None = None
    message_id: str | None = None
    response_id: str | None = None
    elapsed_ms: int | None = None


class AssistantStreamingMessageEvent(BaseEvent, tag="assistant_streaming_message"):
    content: str
    """Delta only."""
    message_id: str
    is_complete: bool = False


class AssistantThinkingMessageEvent(BaseEvent, tag="assistant_thinking_message"):
    content: str
    message_id: str | None = None
    is_complete: bool = True


class AssistantStreamingThinkingMessageEvent(
    BaseEvent, tag="assistant_streaming_thinking_message"
):
    content: str
    message_id: str
    is_complete: bool = False


class AssistantStreamingToolCallEvent(BaseEvent, tag="assistant_streaming_tool_call"):
    tool_call_id: str
    tool_name: str
    arguments: str
    """Delta of the raw arguments text."""
    message_id: str
    is_complete: bool = False


class ToolCallEvent(BaseEvent, tag="tool_call"):
    tool_call_id: str
    name: str
    arguments: dict[str, Any]
    """Parsed arguments; empty when the model produced unparsable JSON."""
    start_time: int
    tool: ToolInfo


class ToolResultEvent(BaseEvent, tag="tool_result"):
    tool_call_id: str
    name: str
    content: MessageContent
    elapsed_ms: int
    processed_content: MessageContent | None = None
    """Content after `on_after_tool_call`; what the model sees when set."""
    error: str | None = None
    is_error: bool = False

    @property
    def model_content(self) -> MessageContent:
        if self.processed_content is not None:
            return self.processed_content
        return self.content


class SystemEvent(BaseEvent, tag="system"):
    level: SystemLevel
    message: str
    details: dict[str, Any] | None = None


class AgentRunStartEvent(BaseEvent, tag="agent_run_start"):
    session_id: str
    run_options: dict[str, Any] = field(default_factory=dict)
    provider: str | None = None
    model: str | None = None


class AgentRunEndEvent(BaseEvent, tag="agent_run_end"):
    session_id: str
    iterations: int
    elapsed_ms: int
    status: RunStatus
    successful: bool
    error: RunError | None = None


class EnvironmentInputEvent(BaseEvent, tag="environment_input"):
    content: MessageContent
    description: str | None = None


class PlanStartEvent(BaseEvent, tag="plan_start"):
    session_id: str


class PlanUpdateEvent(BaseEvent, tag="plan_update"):
    session_id: str
    steps: list[PlanStep]


class PlanFinishEvent(BaseEvent, tag="plan_finish"):
    session_id: str
    summary: str


type AgentEvent = (
    UserMessageEvent
    | AssistantMessageEvent
    | AssistantStreamingMessageEvent
    | AssistantThinkingMessageEvent
    | AssistantStreamingThinkingMessageEvent
    | AssistantStreamingToolCallEvent
    | ToolCallEvent
    | ToolResultEvent
    | SystemEvent
    | AgentRunStartEvent
    | AgentRunEndEvent
    | EnvironmentInputEvent
    | PlanStartEvent
    | PlanUpdateEvent
    | PlanFinishEvent
)

EVENT_CLASSES: dict[EventType, type[BaseEvent]] = {
    cls.__struct_config__.tag: cls for cls in get_args(AgentEvent.__value__)
}

STREAMING_EVENT_TYPES: frozenset[EventType] = frozenset(
    {
        "assistant_streaming_message",
        "assistant_streaming_thinking_message",
        "assistant_streaming_tool_call",
    }
)


def is_streaming_event(event: BaseEvent) -> bool:
    return event.event_type in STREAMING_EVENT_TYPES
