from typing import Any

from msgspec import field

from mmagent.events import AssistantMessageEvent, ToolResultEvent
from mmagent.llm.models import (
    LLMMessage,
    content_images,
    to_responses_input,
)
from mmagent.tools import Tool

from .base import (
    ParsedModelResponse,
    PartialToolCall,
    PrepareRequestContext,
    StreamChunkResult,
    StreamingToolCallUpdate,
    StreamProcessingState,
    ToolCallEngine,
    chat_delta,
    delta_reasoning,
    tool_result_text,
)


class NativeStreamState(StreamProcessingState, kw_only=True):
    tool_calls: dict[int | str, PartialToolCall] = field(default_factory=dict)
    """Chat chunks key partial calls by index, Responses events by item id."""


def _incremental_input(messages: list[LLMMessage]) -> list[LLMMessage]:
    """Messages after the last assistant turn; the provider already holds the rest."""
    for idx in range(len(messages) - 1, -1, -1):
        if messages[idx].role == "assistant":
            return messages[idx + 1 :]
    return messages


class NativeToolCallEngine(ToolCallEngine[NativeStreamState]):
    """Uses the provider's function-calling API."""

    name = "native"

    def prepare_system_prompt(self, base_prompt: str, tools: list[Tool[..., Any]]) -> str:
        return base_prompt

    def prepare_request(
        self, context: PrepareRequestContext, use_responses_api: bool = False
    ) -> dict[str, Any]:
        model = context.model
        if use_responses_api:
            messages = context.messages
            if context.previous_response_id:
                messages = _incremental_input(messages)
            request: dict[str, Any] = {
                "model": model.id,
                "input": to_responses_input(messages),
                "stream": True,
            }
            if context.previous_response_id:
                request["previous_response_id"] = context.previous_response_id
            if context.tools:
                request["tools"] = [
                    {"type": "function", **t.definition} for t in context.tools
                ]
            if context.max_tokens is not None:
                request["max_output_tokens"] = context.max_tokens
        else:
            request = {
                "model": model.id,
                "messages": [m.asdict() for m in context.messages],
                "stream": True,
            }
            if context.tools:
                request["tools"] = [
                    {"type": "function", "function": t.definition}
                    for t in context.tools
                ]
            if context.max_tokens is not None:
                request["max_tokens"] = context.max_tokens
        if context.temperature is not None:
            request["temperature"] = context.temperature
        return request

    def init_stream_processing_state(self) -> NativeStreamState:
        return NativeStreamState()

    def process_streaming_chunk(
        self, chunk: Any, state: NativeStreamState
    ) -> StreamChunkResult:
        delta, finish_reason = chat_delta(chunk)
        if finish_reason:
            state.finish_reason = finish_reason
        if delta is None:
            return StreamChunkResult()

        content = delta.content or ""
        reasoning = delta_reasoning(delta)
        state.content += content
        state.raw_content += content
        state.reasoning_content += reasoning

        updates: list[StreamingToolCallUpdate] = []
        for tc in delta.tool_calls or []:
            partial = state.tool_calls.setdefault(tc.index, PartialToolCall())
            if tc.id:
                partial.id = tc.id
            fn = tc.function
            # Some compatible endpoints repeat the full name on every delta.
            if fn is not None and fn.name and not partial.name.endswith(fn.name):
                partial.name += fn.name
            args_delta = (fn.arguments or "") if fn is not None else ""
            partial.arguments += args_delta
            updates.append(
                StreamingToolCallUpdate(
                    tool_call_id=partial.id,
                    tool_name=partial.name,
                    arguments_delta=args_delta,
                )
            )
        return StreamChunkResult(
            content=content, reasoning_content=reasoning, tool_call_updates=updates
        )

    def process_response_api_streaming_chunk(
        self, chunk: Any, state: NativeStreamState
    ) -> StreamChunkResult:
        match getattr(chunk, "type", None):
            case "response.output_item.added" if chunk.item.type == "function_call":
                item = chunk.item
                partial = PartialToolCall(
                    id=item.call_id, name=item.name, arguments=item.arguments or ""
                )
                state.tool_calls[item.id] = partial
                return StreamChunkResult(
                    tool_call_updates=[
                        StreamingToolCallUpdate(
                            tool_call_id=partial.id,
                            tool_name=partial.name,
                            arguments_delta=partial.arguments,
                        )
                    ]
                )
            case "response.function_call_arguments.delta":
                partial = state.tool_calls.get(chunk.item_id)
                if partial is None:
                    return StreamChunkResult()
                partial.arguments += chunk.delta
                return StreamChunkResult(
                    tool_call_updates=[
                        StreamingToolCallUpdate(
                            tool_call_id=partial.id,
                            tool_name=partial.name,
                            arguments_delta=chunk.delta,
                        )
                    ]
                )
            case "response.output_item.done" if chunk.item.type == "function_call":
                partial = state.tool_calls.get(chunk.item.id)
                if partial is None:
                    return StreamChunkResult()
                partial.arguments = chunk.item.arguments or partial.arguments
                return StreamChunkResult(
                    tool_call_updates=[
                        StreamingToolCallUpdate(
                            tool_call_id=partial.id,
                            tool_name=partial.name,
                            arguments_delta="",
                            is_complete=True,
                        )
                    ]
                )
            case _:
                return super().process_response_api_streaming_chunk(chunk, state)

    def finalize_stream_processing(self, state: NativeStreamState) -> ParsedModelResponse:
        tool_calls = [
            partial.finalize()
            for partial in state.tool_calls.values()
            if partial.name
        ]
        if tool_calls:
            finish_reason = "tool_calls"
        else:
            finish_reason = state.finish_reason or "stop"
        return ParsedModelResponse(
            content=state.content,
            raw_content=state.raw_content,
            tool_calls=tool_calls,
            reasoning_content=state.reasoning_content,
            finish_reason=finish_reason,
            response_id=state.response_id,
        )

    def build_historical_assistant_message(
        self, event: AssistantMessageEvent
    ) -> LLMMessage:
        return LLMMessage(
            role="assistant", content=event.content, tool_calls=event.tool_calls or None
        )

    def build_historical_tool_call_result_messages(
        self, results: list[ToolResultEvent]
    ) -> list[LLMMessage]:
        """One `tool` message per result; images follow in a user message.

        Chat providers only accept text on the tool role.
        """
        messages: list[LLMMessage] = []
        images = []
        for result in results:
            messages.append(
                LLMMessage(
                    role="tool",
                    tool_call_id=result.tool_call_id,
                    content=tool_result_text(result),
                )
            )
            images.extend(content_images(result.model_content))
        if images:
            messages.append(LLMMessage(role="user", content=images))
        return messages

