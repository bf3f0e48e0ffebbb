"""Tool calling through a JSON-schema constrained response.

The model always answers with one JSON object, either

    {"content": "Checking the weather", "toolCall": {"name": "...", "args": {...}}}

or

    {"finalAnswer": "It is sunny."}

While the object streams in, it is repaired into something parseable after
every chunk and the growing answer text is released as visible content.
"""

import logging
import re
from typing import Any

from json_repair import repair_json
from msgspec import DecodeError
from msgspec.json import decode, encode, format

from mmagent.llm.models import ToolCall, new_tool_call_id, to_responses_input
from mmagent.tools import Tool

from .base import (
    ParsedModelResponse,
    PrepareRequestContext,
    StreamChunkResult,
    StreamProcessingState,
    ToolCallEngine,
    chat_delta,
    delta_reasoning,
)

logger = logging.getLogger(__name__)

RESPONSE_SCHEMA_NAME = "agent_response"
RESPONSE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "content": {
            "type": "string",
            "description": "Short explanation shown to the user while a tool runs",
        },
        "toolCall": {
            "type": "object",
            "properties": {
                "name": {"type": "string"},
                "args": {"type": "object"},
            },
            "required": ["name", "args"],
        },
        "finalAnswer": {
            "type": "string",
            "description": "The final answer, when no tool call is needed",
        },
    },
}

_VISIBLE_KEYS = ("finalAnswer", "content")
# A lone backslash, a short \u escape, or a high surrogate still missing its pair.
_PARTIAL_ESCAPE = re.compile(r"\\(?:u[0-9a-fA-F]{0,3}|u[dD][89abAB][0-9a-fA-F]{2})?$")


class StructuredOutputsStreamState(StreamProcessingState, kw_only=True):
    json_start: int | None = None
    """Offset in `raw_content` of the first `{`; text before it is plain."""
    visible_key: str | None = None
    """JSON field currently streamed as visible text, fixed once chosen."""
    visible_from_json: str = ""


def _is_escape_start(text: str, index: int) -> bool:
    """Whether the backslash at `index` starts an escape rather than ending one."""
    run = 0
    while index >= 0 and text[index] == "\\":
        run += 1
        index -= 1
    return run % 2 == 1


def _trim_partial_escape(body: str) -> str:
    """Drop an escape sequence cut off by the end of the buffer."""
    while True:
        match = _PARTIAL_ESCAPE.search(body)
        if match is None or not _is_escape_start(body, match.start()):
            return body
        body = body[: match.start()]


def _join_surrogates(text: str) -> str:
    # Repair decodes each \u escape on its own, splitting surrogate pairs.
    return text.encode("utf-16", "surrogatepass").decode("utf-16", "surrogatepass")


def _pick_visible_key(obj: dict[str, Any]) -> str | None:
    for key in _VISIBLE_KEYS:
        if isinstance(obj.get(key), str):
            return key
    return None


class StructuredOutputsToolCallEngine(ToolCallEngine[StructuredOutputsStreamState]):
    name = "structured_outputs"

    def prepare_system_prompt(self, base_prompt: str, tools: list[Tool[..., Any]]) -> str:
        tool_docs = "\n".join(
            f"- {t.name}: {t.description}\n"
            f"  parameters: {encode(t.parameters).decode('utf-8')}"
            for t in tools
        )
        tools_section = (
            f"AVAILABLE TOOLS:\n{tool_docs}\n\n" if tools else "No tools are available.\n\n"
        )
        return (
            f"{base_prompt}\n\n"
            f"{tools_section}"
            "Always respond with a single JSON object that follows this schema:\n"
            f"{format(encode(RESPONSE_SCHEMA), indent=2).decode('utf-8')}\n\n"
            "To call a tool respond with "
            '{"content": "what you are doing", "toolCall": {"name": "tool_name", "args": {...}}}.\n'
            'When you are done respond with {"finalAnswer": "your answer"}.'
        )

    def prepare_request(
        self, context: PrepareRequestContext, use_responses_api: bool = False
    ) -> dict[str, Any]:
        request: dict[str, Any] = {"model": context.model.id, "stream": True}
        if use_responses_api:
            request["input"] = to_responses_input(context.messages)
            request["text"] = {
                "format": {
                    "type": "json_schema",
                    "name": RESPONSE_SCHEMA_NAME,
                    "schema": RESPONSE_SCHEMA,
                    "strict": False,
                }
            }
            if context.max_tokens is not None:
                request["max_output_tokens"] = context.max_tokens
        else:
            request["messages"] = [m.asdict() for m in context.messages]
            request["response_format"] = {
                "type": "json_schema",
                "json_schema": {
                    "name": RESPONSE_SCHEMA_NAME,
                    "schema": RESPONSE_SCHEMA,
                    "strict": False,
                },
            }
            if context.max_tokens is not None:
                request["max_tokens"] = context.max_tokens
        if context.temperature is not None:
            request["temperature"] = context.temperature
        return request

    def init_stream_processing_state(self) -> StructuredOutputsStreamState:
        return StructuredOutputsStreamState()

    def process_streaming_chunk(
        self, chunk: Any, state: StructuredOutputsStreamState
    ) -> StreamChunkResult:
        delta, finish_reason = chat_delta(chunk)
        if finish_reason:
            state.finish_reason = finish_reason
        if delta is None:
            return StreamChunkResult()
        reasoning = delta_reasoning(delta)
        state.reasoning_content += reasoning
        visible = self._consume_text(delta.content or "", state).content
        return StreamChunkResult(content=visible, reasoning_content=reasoning)

    def _consume_text(
        self, text: str, state: StructuredOutputsStreamState
    ) -> StreamChunkResult:
        if not text:
            return StreamChunkResult()
        state.raw_content += text

        if state.json_start is None:
            brace = text.find("{")
            if brace < 0:
                state.content += text
                return StreamChunkResult(content=text)
            state.json_start = len(state.raw_content) - len(text) + brace
            plain = text[:brace]
            state.content += plain
            return StreamChunkResult(content=plain + self._advance_json(state))

        return StreamChunkResult(content=self._advance_json(state))

    def _advance_json(self, state: StructuredOutputsStreamState) -> str:
        assert state.json_start is not None
        body = _trim_partial_escape(state.raw_content[state.json_start :])
        obj = repair_json(body, return_objects=True, stream_stable=True)
        if not isinstance(obj, dict):
            return ""
        key = state.visible_key or _pick_visible_key(obj)
        if key is None:
            return ""
        state.visible_key = key
        value = obj.get(key)
        if not isinstance(value, str):
            return ""
        value = _join_surrogates(value)
        # The last character of an open string may still be rewritten by repair.
        stable = value[:-1]
        if not stable.startswith(state.visible_from_json):
            return ""
        released = stable[len(state.visible_from_json) :]
        state.visible_from_json = stable
        state.content += released
        return released

    def finalize_stream_processing(
        self, state: StructuredOutputsStreamState
    ) -> ParsedModelResponse:
        tool_calls: list[ToolCall] = []
        if state.json_start is None:
            content = state.content
        else:
            plain = state.raw_content[: state.json_start]
            body = state.raw_content[state.json_start :]
            try:
                obj = decode(body)
            except DecodeError:
                logger.debug("Structured response is not valid JSON, repairing")
                obj = repair_json(
                    _trim_partial_escape(body), return_objects=True, stream_stable=True
                )

            if not isinstance(obj, dict):
                content = state.raw_content
            else:
                call = obj.get("toolCall")
                if isinstance(call, dict) and isinstance(call.get("name"), str):
                    args = call.get("args")
                    tool_calls.append(
                        ToolCall(
                            id=new_tool_call_id(),
                            name=call["name"],
                            arguments=encode(args if isinstance(args, dict) else {}).decode(
                                "utf-8"
                            ),
                        )
                    )
                key = state.visible_key or _pick_visible_key(obj)
                value = obj.get(key) if key else None
                content = plain + (_join_surrogates(value) if isinstance(value, str) else "")

        return ParsedModelResponse(
            content=content,
            raw_content=state.raw_content,
            tool_calls=tool_calls,
            reasoning_content=state.reasoning_content,
            finish_reason="tool_calls" if tool_calls else state.finish_reason or "stop",
            response_id=state.response_id,
        )

