"""Shared LLM data models: chat messages, content parts, tool calls and models."""

from typing import Any, Iterable, Literal, Self
from uuid import uuid4

from msgspec import Struct, to_builtins

from mmagent.interface import MessageRole, Record


class ImageURL(Record, omit_defaults=True):
    url: str
    """Remote URL or `data:` URI of the image."""

    detail: Literal["auto", "low", "high"] | None = None


class TextPart(Record, tag="text", tag_field="type"):
    """Plain text chunk of a multimodal message."""

    text: str


class ImagePart(Record, tag="image_url", tag_field="type"):
    """Image chunk of a multimodal message, encoded the way chat providers expect."""

    image_url: ImageURL


type ContentPart = TextPart | ImagePart
type MessageContent = str | list[ContentPart]


def text_part(text: str) -> TextPart:
    return TextPart(text=text)


def image_part(url: str, detail: Literal["auto", "low", "high"] | None = None) -> ImagePart:
    return ImagePart(image_url=ImageURL(url=url, detail=detail))


def as_parts(content: MessageContent) -> list[ContentPart]:
    if isinstance(content, str):
        return [TextPart(text=content)] if content else []
    return list(content)


def content_text(content: MessageContent) -> str:
    """Concatenate the text of `content`, ignoring non-text parts."""
    if isinstance(content, str):
        return content
    return "\n".join(part.text for part in content if isinstance(part, TextPart))


def content_images(content: MessageContent) -> list[ImagePart]:
    if isinstance(content, str):
        return []
    return [part for part in content if isinstance(part, ImagePart)]


def new_tool_call_id() -> str:
    return f"call_{uuid4().hex}"


class ToolCall(Record, kw_only=True):
    """Normalized tool invocation requested by the model."""

    id: str
    """Stable identifier correlating the call, its events and its result."""

    name: str
    """Registered tool name the model wants to invoke."""

    arguments: str
    """Raw JSON payload emitted by the model; opaque until the tool decodes it."""

    type: Literal["function"] = "function"

    def to_openai(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "function": {"name": self.name, "arguments": self.arguments},
        }


class LLMMessage(Struct, kw_only=True):
    """One provider-facing chat turn, derived from the event log for each request."""

    role: MessageRole
    content: MessageContent = ""
    tool_calls: list[ToolCall] | None = None
    tool_call_id: str | None = None

    def __ior__(self, other: "LLMMessage") -> Self:
        if self.role != other.role:
            raise ValueError(f"Can't merge {other}, {self.role=}, {other.role=}")
        if isinstance(self.content, str) and isinstance(other.content, str):
            self.content = "\n\n".join(c for c in (self.content, other.content) if c)
        else:
            self.content = as_parts(self.content) + as_parts(other.content)
        return self

    @property
    def text(self) -> str:
        return content_text(self.content)

    def asdict(self) -> dict[str, Any]:
        """Chat-completions payload for this message."""
        res: dict[str, Any] = {"role": self.role, "content": to_builtins(self.content)}
        if self.tool_calls:
            res["tool_calls"] = [tc.to_openai() for tc in self.tool_calls]
        if self.tool_call_id is not None:
            res["tool_call_id"] = self.tool_call_id
        return res

    @classmethod
    def build(cls, role: MessageRole, content: MessageContent) -> "LLMMessage":
        return cls(role=role, content=content)


class ResolvedModel(Record, kw_only=True):
    """Provider, model id and endpoint credentials used for one iteration."""

    provider: str
    id: str
    api_key: str | None = None
    base_url: str | None = None
    reasoning: bool = False

    @property
    def client_key(self) -> tuple[str, str | None, str | None]:
        return (self.provider, self.base_url, self.api_key)


def _responses_content(role: MessageRole, content: MessageContent) -> Any:
    if isinstance(content, str):
        return content
    text_type = "output_text" if role == "assistant" else "input_text"
    items: list[dict[str, Any]] = []
    for part in content:
        match part:
            case TextPart(text=text):
                items.append({"type": text_type, "text": text})
            case ImagePart(image_url=image):
                item: dict[str, Any] = {"type": "input_image", "image_url": image.url}
                if image.detail:
                    item["detail"] = image.detail
                items.append(item)
    return items


def to_responses_input(messages: Iterable[LLMMessage]) -> list[dict[str, Any]]:
    """Project chat messages into Responses API input items."""
    formatted: list[dict[str, Any]] = []
    for message in messages:
        if message.role == "tool":
            formatted.append(
                {
                    "type": "function_call_output",
                    "call_id": message.tool_call_id,
                    "output": message.text,
                }
            )
            continue
        if message.content:
            formatted.append(
                {
                    "role": message.role,
                    "content": _responses_content(message.role, message.content),
                }
            )
        for tc in message.tool_calls or []:
            formatted.append(
                {
                    "type": "function_call",
                    "call_id": tc.id,
                    "name": tc.name,
                    "arguments": tc.arguments,
                }
            )
    return formatted
