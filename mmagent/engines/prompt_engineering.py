"""Tool calling for models without a function-calling API.

Tools are described in the system prompt and the model writes calls inline:

    <tool_call>
    {"name": "get_weather", "parameters": {"location": "Boston"}}
    </tool_call>

The stream is scanned with a two-state machine. Text that might be the start
of a delimiter is held back in `pending` until the next chunk decides it, so
a delimiter split at any character boundary parses exactly like an unsplit
one.
"""

import logging
from enum import Enum
from typing import Any

from json_repair import repair_json
from msgspec import DecodeError, field
from msgspec.json import decode, encode, format

from mmagent.events import AssistantMessageEvent
from mmagent.llm.models import (
    LLMMessage,
    ToolCall,
    new_tool_call_id,
    to_responses_input,
)
from mmagent.tools import Tool

from .base import (
    ParsedModelResponse,
    PrepareRequestContext,
    StreamChunkResult,
    StreamingToolCallUpdate,
    StreamProcessingState,
    ToolCallEngine,
    chat_delta,
    delta_reasoning,
)

logger = logging.getLogger(__name__)

TOOL_CALL_OPEN = "<tool_call>"
TOOL_CALL_CLOSE = "</tool_call>"


class ScanMode(Enum):
    SCANNING_CONTENT = "scanning_content"
    BUFFERING_TOOL_CALL = "buffering_tool_call"


class PromptEngineeringStreamState(StreamProcessingState, kw_only=True):
    mode: ScanMode = ScanMode.SCANNING_CONTENT
    pending: str = ""
    call_buffer: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)


def _held_back(text: str, delimiter: str) -> int:
    """Length of the longest suffix of `text` that is a proper prefix of `delimiter`."""
    for size in range(min(len(text), len(delimiter) - 1), 0, -1):
        if delimiter.startswith(text[-size:]):
            return size
    return 0


def parse_tool_call_block(body: str, *, strict: bool = False) -> ToolCall | None:
    """Parse the JSON between tool call delimiters, `None` when it is not a call."""
    text = body.strip()
    if not text:
        return None
    if strict:
        try:
            obj = decode(text)
        except DecodeError:
            return None
    else:
        obj = repair_json(text, return_objects=True)

    if not isinstance(obj, dict):
        return None
    name = obj.get("name")
    if not isinstance(name, str) or not name:
        return None
    params = obj.get("parameters", obj.get("arguments", {}))
    if isinstance(params, str):
        params = repair_json(params, return_objects=True) if params.strip() else {}
    if not isinstance(params, dict):
        return None
    return ToolCall(
        id=new_tool_call_id(), name=name, arguments=encode(params).decode("utf-8")
    )


def render_tool_call(call: ToolCall) -> str:
    payload = encode({"name": call.name, "parameters": decode(call.arguments or "{}")})
    return f"{TOOL_CALL_OPEN}\n{payload.decode('utf-8')}\n{TOOL_CALL_CLOSE}"


class PromptEngineeringToolCallEngine(ToolCallEngine[PromptEngineeringStreamState]):
    name = "prompt_engineering"

    def prepare_system_prompt(self, base_prompt: str, tools: list[Tool[..., Any]]) -> str:
        if not tools:
            return base_prompt
        docs = "\n\n".join(
            f"## {t.name}\n"
            f"Description: {t.description}\n"
            f"Parameters (JSON Schema):\n"
            f"{format(encode(t.parameters), indent=2).decode('utf-8')}"
            for t in tools
        )
        return (
            f"{base_prompt}\n\n"
            "<tools>\n"
            "You have access to the following tools:\n\n"
            f"{docs}\n"
            "</tools>\n\n"
            "To use a tool, reply with one block per call in exactly this format:\n"
            f"{TOOL_CALL_OPEN}\n"
            '{"name": "tool_name", "parameters": {"param": "value"}}\n'
            f"{TOOL_CALL_CLOSE}\n\n"
            "The block must contain valid JSON. You may write a short explanation "
            "before the block. Results will be returned to you in the next message. "
            "When no tool is needed, answer directly without any tool_call block."
        )

    def prepare_request(
        self, context: PrepareRequestContext, use_responses_api: bool = False
    ) -> dict[str, Any]:
        request: dict[str, Any] = {"model": context.model.id, "stream": True}
        if use_responses_api:
            request["input"] = to_responses_input(context.messages)
            if context.max_tokens is not None:
                request["max_output_tokens"] = context.max_tokens
        else:
            request["messages"] = [m.asdict() for m in context.messages]
            if context.max_tokens is not None:
                request["max_tokens"] = context.max_tokens
        if context.temperature is not None:
            request["temperature"] = context.temperature
        return request

    def init_stream_processing_state(self) -> PromptEngineeringStreamState:
        return PromptEngineeringStreamState()

    def process_streaming_chunk(
        self, chunk: Any, state: PromptEngineeringStreamState
    ) -> StreamChunkResult:
        delta, finish_reason = chat_delta(chunk)
        if finish_reason:
            state.finish_reason = finish_reason
        if delta is None:
            return StreamChunkResult()
        reasoning = delta_reasoning(delta)
        state.reasoning_content += reasoning
        result = self._consume_text(delta.content or "", state)
        if reasoning:
            return StreamChunkResult(
                content=result.content,
                reasoning_content=reasoning,
                tool_call_updates=result.tool_call_updates,
            )
        return result

    def _consume_text(
        self, text: str, state: PromptEngineeringStreamState
    ) -> StreamChunkResult:
        if not text:
            return StreamChunkResult()
        state.raw_content += text
        data = state.pending + text
        state.pending = ""
        visible: list[str] = []
        updates: list[StreamingToolCallUpdate] = []

        while data:
            if state.mode is ScanMode.SCANNING_CONTENT:
                idx = data.find(TOOL_CALL_OPEN)
                if idx >= 0:
                    visible.append(data[:idx])
                    data = data[idx + len(TOOL_CALL_OPEN) :]
                    state.mode = ScanMode.BUFFERING_TOOL_CALL
                    state.call_buffer = ""
                    continue
                keep = _held_back(data, TOOL_CALL_OPEN)
                visible.append(data[: len(data) - keep])
                state.pending = data[len(data) - keep :]
                break

            idx = data.find(TOOL_CALL_CLOSE)
            if idx >= 0:
                state.call_buffer += data[:idx]
                data = data[idx + len(TOOL_CALL_CLOSE) :]
                state.mode = ScanMode.SCANNING_CONTENT
                call = parse_tool_call_block(state.call_buffer)
                if call is None:
                    logger.warning("Malformed tool call block kept as visible text")
                    visible.append(TOOL_CALL_OPEN + state.call_buffer + TOOL_CALL_CLOSE)
                else:
                    state.tool_calls.append(call)
                    updates.append(
                        StreamingToolCallUpdate(
                            tool_call_id=call.id,
                            tool_name=call.name,
                            arguments_delta=call.arguments,
                            is_complete=True,
                        )
                    )
                state.call_buffer = ""
                continue
            keep = _held_back(data, TOOL_CALL_CLOSE)
            state.call_buffer += data[: len(data) - keep]
            state.pending = data[len(data) - keep :]
            break

        released = "".join(visible)
        state.content += released
        return StreamChunkResult(content=released, tool_call_updates=updates)

    def finalize_stream_processing(
        self, state: PromptEngineeringStreamState
    ) -> ParsedModelResponse:
        tool_calls = list(state.tool_calls)
        content = state.content
        if state.mode is ScanMode.SCANNING_CONTENT:
            content += state.pending
        else:
            # Unterminated block: accept it only when it is complete JSON already.
            body = state.call_buffer + state.pending
            call = parse_tool_call_block(body, strict=True)
            if call is None:
                content += TOOL_CALL_OPEN + body
            else:
                tool_calls.append(call)

        return ParsedModelResponse(
            content=content,
            raw_content=state.raw_content,
            tool_calls=tool_calls,
            reasoning_content=state.reasoning_content,
            finish_reason="tool_calls" if tool_calls else state.finish_reason or "stop",
            response_id=state.response_id,
        )

    def build_historical_assistant_message(
        self, event: AssistantMessageEvent
    ) -> LLMMessage:
        if event.raw_content is not None:
            return LLMMessage(role="assistant", content=event.raw_content)
        blocks = [render_tool_call(tc) for tc in event.tool_calls or []]
        text = "\n".join([event.content, *blocks]) if blocks else event.content
        return LLMMessage(role="assistant", content=text)
