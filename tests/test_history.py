from mmagent.engines import NativeToolCallEngine, PromptEngineeringToolCallEngine
from mmagent.event_stream import EventStream
from mmagent.events import ToolInfo
from mmagent.history import (
    IMAGE_PLACEHOLDER,
    MISSING_RESULT_TEXT,
    MessageHistory,
    compact_messages,
    truncate_middle,
)
from mmagent.llm.models import ImagePart, LLMMessage, TextPart, ToolCall, image_part


def _weather_call(call_id: str = "call_1") -> ToolCall:
    return ToolCall(id=call_id, name="get_weather", arguments='{"city":"Boston"}')


def test_native_history_pairs_tool_results_with_calls() -> None:
    stream = EventStream()
    stream.emit("user_message", content="Weather in Boston?")
    stream.emit("assistant_message", content="", tool_calls=[_weather_call()])
    stream.emit(
        "tool_call",
        tool_call_id="call_1",
        name="get_weather",
        arguments={"city": "Boston"},
        start_time=0,
        tool=ToolInfo(name="get_weather", description="", parameters={}),
    )
    stream.emit("tool_result", tool_call_id="call_1", name="get_weather", content="72F", elapsed_ms=3)
    stream.emit("assistant_message", content="It is 72F.")

    messages = MessageHistory(stream).to_message_history(
        NativeToolCallEngine(), "be brief", []
    )

    assert [m.role for m in messages] == ["system", "user", "assistant", "tool", "assistant"]
    assert messages[0].content == "be brief"
    assert messages[2].tool_calls == [_weather_call()]
    assert messages[3].tool_call_id == "call_1"
    assert messages[3].content == "72F"


def test_missing_result_gets_placeholder_so_calls_stay_answered() -> None:
    stream = EventStream()
    stream.emit("user_message", content="go")
    stream.emit("assistant_message", content="", tool_calls=[_weather_call("a"), _weather_call("b")])
    stream.emit("tool_result", tool_call_id="b", name="get_weather", content="ok", elapsed_ms=1)

    messages = MessageHistory(stream).to_message_history(NativeToolCallEngine(), "sys", [])

    tool_messages = [m for m in messages if m.role == "tool"]
    assert [m.tool_call_id for m in tool_messages] == ["a", "b"]
    assert MISSING_RESULT_TEXT in tool_messages[0].text
    assert tool_messages[1].content == "ok"


def test_error_results_are_prefixed() -> None:
    stream = EventStream()
    stream.emit("user_message", content="go")
    stream.emit("assistant_message", content="", tool_calls=[_weather_call()])
    stream.emit(
        "tool_result",
        tool_call_id="call_1",
        name="get_weather",
        content="Error: boom",
        error="boom",
        is_error=True,
        elapsed_ms=1,
    )

    messages = MessageHistory(stream).to_message_history(NativeToolCallEngine(), "sys", [])

    assert messages[-1].content == "Error: boom"


def test_processed_content_is_what_the_model_sees() -> None:
    stream = EventStream()
    stream.emit("user_message", content="go")
    stream.emit("assistant_message", content="", tool_calls=[_weather_call()])
    stream.emit(
        "tool_result",
        tool_call_id="call_1",
        name="get_weather",
        content="raw",
        processed_content="redacted",
        elapsed_ms=1,
    )

    messages = MessageHistory(stream).to_message_history(NativeToolCallEngine(), "sys", [])

    assert messages[-1].content == "redacted"


def test_consecutive_user_inputs_merge_into_one_turn() -> None:
    stream = EventStream()
    stream.emit("user_message", content="Look at this")
    stream.emit(
        "environment_input",
        content=[image_part("data:image/png;base64,AAAA")],
        description="screenshot",
    )

    messages = MessageHistory(stream).to_message_history(NativeToolCallEngine(), "sys", [])

    assert [m.role for m in messages] == ["system", "user"]
    content = messages[1].content
    assert isinstance(content, list)
    assert isinstance(content[0], TextPart)
    assert isinstance(content[1], ImagePart)


def test_prompt_engineering_history_replays_raw_text_and_results_as_user() -> None:
    stream = EventStream()
    raw = 'Checking.<tool_call>{"name": "get_weather", "parameters": {"city": "Boston"}}</tool_call>'
    stream.emit("user_message", content="Weather?")
    stream.emit("assistant_message", content="Checking.", raw_content=raw, tool_calls=[_weather_call()])
    stream.emit("tool_result", tool_call_id="call_1", name="get_weather", content="72F", elapsed_ms=1)

    messages = MessageHistory(stream).to_message_history(
        PromptEngineeringToolCallEngine(), "sys", []
    )

    assert [m.role for m in messages] == ["system", "user", "assistant", "user"]
    assert messages[2].content == raw
    assert "Call ID: call_1" in messages[3].text
    assert "72F" in messages[3].text


def test_truncate_middle_respects_limit_and_is_idempotent() -> None:
    text = "a" * 500 + "b" * 500

    once = truncate_middle(text, 200)

    assert len(once) <= 200
    assert once.startswith("a")
    assert once.endswith("b")
    assert "omitted" in once
    assert truncate_middle(once, 200) == once
    assert truncate_middle("short", 200) == "short"


def test_compaction_keeps_newest_images() -> None:
    messages = [
        LLMMessage(role="user", content=[image_part(f"https://img/{i}")])
        for i in range(4)
    ]

    compacted = compact_messages(messages, max_images=2, max_text_chars=1000)

    kinds = [type(m.content[0]).__name__ for m in compacted]  # type: ignore[index]
    assert kinds == ["TextPart", "TextPart", "ImagePart", "ImagePart"]
    assert compacted[0].content[0] == TextPart(text=IMAGE_PLACEHOLDER)  # type: ignore[index]
    assert [m.role for m in compacted] == [m.role for m in messages]


def test_compaction_is_idempotent() -> None:
    messages = [
        LLMMessage(role="system", content="s" * 300),
        LLMMessage(role="user", content=[TextPart(text="t" * 400), image_part("https://img/1")]),
        LLMMessage(role="assistant", content="ok"),
        LLMMessage(role="user", content=[image_part("https://img/2"), image_part("https://img/3")]),
    ]

    once = compact_messages(messages, max_images=1, max_text_chars=120)
    twice = compact_messages(once, max_images=1, max_text_chars=120)

    assert once == twice
    assert sum(
        isinstance(p, ImagePart) for m in once if isinstance(m.content, list) for p in m.content
    ) == 1
