"""Tool call engine contract and shared stream-processing models."""

from abc import ABC, abstractmethod
from typing import Any

from msgspec import Struct, field

from mmagent.events import AssistantMessageEvent, ToolResultEvent
from mmagent.interface import Record
from mmagent.llm.models import (
    LLMMessage,
    MessageContent,
    ResolvedModel,
    TextPart,
    ToolCall,
    content_images,
    content_text,
    new_tool_call_id,
)
from mmagent.tools import Tool


class StreamingToolCallUpdate(Record):
    tool_call_id: str
    tool_name: str
    arguments_delta: str
    is_complete: bool = False


class StreamChunkResult(Record):
    """What one provider chunk contributed, as deltas."""

    content: str = ""
    reasoning_content: str = ""
    tool_call_updates: list[StreamingToolCallUpdate] = field(default_factory=list)


class ParsedModelResponse(Record):
    content: str = ""
    raw_content: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)
    reasoning_content: str = ""
    finish_reason: str = "stop"
    response_id: str | None = None


class PartialToolCall(Struct, kw_only=True):
    id: str = ""
    name: str = ""
    arguments: str = ""

    def finalize(self) -> ToolCall:
        return ToolCall(
            id=self.id or new_tool_call_id(), name=self.name, arguments=self.arguments
        )


class StreamProcessingState(Struct, kw_only=True):
    """Mutable accumulation for one streamed response; engines extend it."""

    content: str = ""
    """Visible text released so far."""
    raw_content: str = ""
    """Every text delta as received."""
    reasoning_content: str = ""
    finish_reason: str | None = None
    response_id: str | None = None


class PrepareRequestContext(Record):
    model: ResolvedModel
    messages: list[LLMMessage]
    tools: list[Tool[..., Any]] = field(default_factory=list)
    temperature: float | None = None
    max_tokens: int | None = None
    previous_response_id: str | None = None


def chat_delta(chunk: Any) -> tuple[Any | None, str | None]:
    """First choice delta and finish reason of a chat-completions chunk."""
    choices = getattr(chunk, "choices", None) or []
    if not choices:
        return None, None
    choice = choices[0]
    return choice.delta, choice.finish_reason


def delta_reasoning(delta: Any) -> str:
    # Non-standard field emitted by reasoning models on OpenAI-compatible endpoints.
    return getattr(delta, "reasoning_content", None) or ""


def tool_result_text(result: ToolResultEvent) -> str:
    content = content_text(result.model_content)
    if result.is_error:
        return f"Error: {result.error or content}"
    return content


class ToolCallEngine[S: StreamProcessingState](ABC):
    """Strategy deciding how tools are advertised and how calls are recovered."""

    name: str

    @abstractmethod
    def prepare_system_prompt(self, base_prompt: str, tools: list[Tool[..., Any]]) -> str: ...

    @abstractmethod
    def prepare_request(
        self, context: PrepareRequestContext, use_responses_api: bool = False
    ) -> dict[str, Any]:
        """Provider request kwargs; `stream` is always on."""

    @abstractmethod
    def init_stream_processing_state(self) -> S: ...

    @abstractmethod
    def process_streaming_chunk(self, chunk: Any, state: S) -> StreamChunkResult: ...

    def process_response_api_streaming_chunk(
        self, chunk: Any, state: S
    ) -> StreamChunkResult:
        """Responses API events; text-only engines only need text and ids."""
        match getattr(chunk, "type", None):
            case "response.created" | "response.completed":
                state.response_id = chunk.response.id
                if chunk.type == "response.completed":
                    state.finish_reason = state.finish_reason or "stop"
                return StreamChunkResult()
            case "response.output_text.delta":
                return self._consume_text(chunk.delta, state)
            case "response.reasoning_summary_text.delta":
                state.reasoning_content += chunk.delta
                return StreamChunkResult(reasoning_content=chunk.delta)
            case _:
                return StreamChunkResult()

    def _consume_text(self, text: str, state: S) -> StreamChunkResult:
        state.raw_content += text
        state.content += text
        return StreamChunkResult(content=text)

    @abstractmethod
    def finalize_stream_processing(self, state: S) -> ParsedModelResponse:
        """Assemble the final response; never raises on malformed model output."""

    def build_historical_assistant_message(
        self, event: AssistantMessageEvent
    ) -> LLMMessage:
        return LLMMessage(role="assistant", content=event.content)

    def build_historical_tool_call_result_messages(
        self, results: list[ToolResultEvent]
    ) -> list[LLMMessage]:
        """Tool results replayed as user text, for engines without native tool roles."""
        messages: list[LLMMessage] = []
        for result in results:
            text = (
                f"Tool: {result.name}\n"
                f"Call ID: {result.tool_call_id}\n"
                f"Result:\n{tool_result_text(result)}"
            )
            images = content_images(result.model_content)
            content: MessageContent = [TextPart(text=text), *images] if images else text
            messages.append(LLMMessage(role="user", content=content))
        return messages
