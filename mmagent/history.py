"""Provider message history derived from the event log, plus context compaction."""

import logging
from typing import Any

from mmagent.engines.base import ToolCallEngine
from mmagent.event_stream import EventStream
from mmagent.events import (
    AssistantMessageEvent,
    EnvironmentInputEvent,
    ToolResultEvent,
    UserMessageEvent,
)
from mmagent.llm.models import (
    ContentPart,
    ImagePart,
    LLMMessage,
    MessageContent,
    TextPart,
    ToolCall,
)
from mmagent.tools import Tool

logger = logging.getLogger(__name__)

IMAGE_PLACEHOLDER = "[Image omitted to conserve context]"
ELISION_MARKER = "\n\n[... {count} characters omitted to conserve context ...]\n\n"
MISSING_RESULT_TEXT = "Tool call did not complete; no result is available."


def truncate_middle(text: str, max_chars: int) -> str:
    """Keep head and tail of `text` around an elision marker, within `max_chars`."""
    if len(text) <= max_chars:
        return text
    # The marker length depends on the count it reports; settle it in two passes.
    marker = ELISION_MARKER.format(count=len(text))
    for _ in range(2):
        keep = max(max_chars - len(marker), 0)
        marker = ELISION_MARKER.format(count=len(text) - keep)
    keep = max(max_chars - len(marker), 0)
    if keep == 0:
        return text[:max_chars]
    head = keep - keep // 2
    tail = keep // 2
    return text[:head] + marker + (text[-tail:] if tail else "")


def _compact_content(
    content: MessageContent, images_left: list[int], max_text_chars: int
) -> MessageContent:
    if isinstance(content, str):
        return truncate_middle(content, max_text_chars)
    parts: list[ContentPart] = []
    for part in content:
        if isinstance(part, ImagePart):
            if images_left[0] > 0:
                images_left[0] -= 1
                parts.append(part)
            else:
                parts.append(TextPart(text=IMAGE_PLACEHOLDER))
        else:
            parts.append(TextPart(text=truncate_middle(part.text, max_text_chars)))
    return parts


def compact_messages(
    messages: list[LLMMessage], *, max_images: int, max_text_chars: int
) -> list[LLMMessage]:
    """Bound images and text size without reordering or dropping messages.

    The newest `max_images` images survive; older ones become a text
    placeholder. Applying this twice gives the same result as once.
    """
    images_left = [max_images]
    compacted: list[LLMMessage] = []
    # Walk newest first so the budget goes to recent images.
    for message in reversed(messages):
        compacted.append(
            LLMMessage(
                role=message.role,
                content=_compact_content(message.content, images_left, max_text_chars),
                tool_calls=message.tool_calls,
                tool_call_id=message.tool_call_id,
            )
        )
    compacted.reverse()
    return compacted


class MessageHistory:
    def __init__(
        self,
        event_stream: EventStream,
        *,
        max_images: int = 5,
        max_text_chars: int = 100_000,
    ):
        self._event_stream = event_stream
        self.max_images = max_images
        self.max_text_chars = max_text_chars

    def to_message_history(
        self,
        engine: ToolCallEngine[Any],
        system_prompt: str,
        tools: list[Tool[..., Any]],
    ) -> list[LLMMessage]:
        messages = [
            LLMMessage(
                role="system", content=engine.prepare_system_prompt(system_prompt, tools)
            )
        ]
        events = self._event_stream.get_events(
            ["user_message", "environment_input", "assistant_message", "tool_result"]
        )
        results: dict[str, ToolResultEvent] = {
            e.tool_call_id: e for e in events if isinstance(e, ToolResultEvent)
        }

        for event in events:
            match event:
                case UserMessageEvent(content=content):
                    self._append_user(messages, content)
                case EnvironmentInputEvent(content=content):
                    self._append_user(messages, content)
                case AssistantMessageEvent():
                    messages.append(engine.build_historical_assistant_message(event))
                    calls = event.tool_calls or []
                    if calls:
                        paired = [self._result_for(call, results) for call in calls]
                        messages.extend(
                            engine.build_historical_tool_call_result_messages(paired)
                        )
                case _:
                    pass

        return compact_messages(
            messages, max_images=self.max_images, max_text_chars=self.max_text_chars
        )

    @staticmethod
    def _append_user(messages: list[LLMMessage], content: MessageContent) -> None:
        message = LLMMessage(role="user", content=content)
        if messages[-1].role == "user":
            messages[-1] |= message
        else:
            messages.append(message)

    def _result_for(
        self, call: ToolCall, results: dict[str, ToolResultEvent]
    ) -> ToolResultEvent:
        if result := results.get(call.id):
            return result
        logger.debug("No tool result for call %s, inserting placeholder", call.id)
        return ToolResultEvent(
            id=f"missing-{call.id}",
            timestamp=0,
            tool_call_id=call.id,
            name=call.name,
            content=MISSING_RESULT_TEXT,
            elapsed_ms=0,
            error=MISSING_RESULT_TEXT,
            is_error=True,
        )
