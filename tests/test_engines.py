from types import SimpleNamespace
from typing import Annotated, Any

import pytest
from msgspec.json import decode

from fakes import TEST_MODEL, chunk, tool_call_delta, tool_call_stream

from mmagent.engines import (
    NativeToolCallEngine,
    PrepareRequestContext,
    PromptEngineeringToolCallEngine,
    StructuredOutputsToolCallEngine,
    ToolCallEngine,
    create_tool_call_engine,
)
from mmagent.engines.prompt_engineering import parse_tool_call_block
from mmagent.errors import MMAgentConfigurationError
from mmagent.llm.models import LLMMessage
from mmagent.tools import param, tool


@tool
def get_weather(city: Annotated[str, param("City name")]) -> str:
    """Current weather for a city."""
    return f"sunny in {city}"


def run_chunks(engine: ToolCallEngine[Any], chunks: list[Any]) -> tuple[str, Any]:
    state = engine.init_stream_processing_state()
    streamed = "".join(engine.process_streaming_chunk(c, state).content for c in chunks)
    return streamed, engine.finalize_stream_processing(state)


def run_text(engine: ToolCallEngine[Any], pieces: list[str]) -> tuple[str, Any]:
    return run_chunks(engine, [chunk(p) for p in pieces] + [chunk(finish_reason="stop")])


def _context(**kwargs: Any) -> PrepareRequestContext:
    return PrepareRequestContext(
        model=TEST_MODEL,
        messages=[LLMMessage(role="system", content="sys"), LLMMessage(role="user", content="hi")],
        **kwargs,
    )


def test_create_tool_call_engine_by_name() -> None:
    assert isinstance(create_tool_call_engine("native"), NativeToolCallEngine)
    with pytest.raises(MMAgentConfigurationError):
        create_tool_call_engine("telepathy")


# native


def test_native_request_advertises_tools() -> None:
    request = NativeToolCallEngine().prepare_request(
        _context(tools=[get_weather], temperature=0.5, max_tokens=100)
    )

    assert request["model"] == "gpt-test"
    assert request["stream"] is True
    assert request["temperature"] == 0.5
    assert request["max_tokens"] == 100
    assert request["tools"][0]["type"] == "function"
    assert request["tools"][0]["function"]["name"] == "get_weather"
    assert request["messages"][1] == {"role": "user", "content": "hi"}


def test_native_responses_request_uses_previous_response_id() -> None:
    context = PrepareRequestContext(
        model=TEST_MODEL,
        messages=[
            LLMMessage(role="system", content="sys"),
            LLMMessage(role="user", content="hi"),
            LLMMessage(role="assistant", content="hello"),
            LLMMessage(role="user", content="again"),
        ],
        tools=[get_weather],
        max_tokens=50,
        previous_response_id="resp_1",
    )

    request = NativeToolCallEngine().prepare_request(context, use_responses_api=True)

    assert request["previous_response_id"] == "resp_1"
    assert request["input"] == [{"role": "user", "content": "again"}]
    assert request["max_output_tokens"] == 50
    assert request["tools"][0]["name"] == "get_weather"


def test_native_accumulates_split_tool_call_arguments() -> None:
    engine = NativeToolCallEngine()
    chunks = tool_call_stream(
        ("call_a", "get_weather", '{"city": "Boston"}'),
        ("call_b", "get_weather", '{"city": "Paris"}'),
        content="Checking",
    )

    streamed, response = run_chunks(engine, chunks)

    assert streamed == "Checking"
    assert response.content == "Checking"
    assert response.finish_reason == "tool_calls"
    assert [(c.id, c.name) for c in response.tool_calls] == [
        ("call_a", "get_weather"),
        ("call_b", "get_weather"),
    ]
    assert decode(response.tool_calls[1].arguments) == {"city": "Paris"}


def test_native_ignores_repeated_tool_names() -> None:
    engine = NativeToolCallEngine()
    chunks = [
        chunk(tool_calls=[tool_call_delta(0, id="c", name="get_weather", arguments='{"ci')]),
        chunk(tool_calls=[tool_call_delta(0, name="get_weather", arguments='ty": "x"}')]),
    ]

    _, response = run_chunks(engine, chunks)

    assert response.tool_calls[0].name == "get_weather"
    assert decode(response.tool_calls[0].arguments) == {"city": "x"}


def test_native_collects_reasoning_content() -> None:
    engine = NativeToolCallEngine()
    state = engine.init_stream_processing_state()

    result = engine.process_streaming_chunk(chunk(reasoning="thinking..."), state)
    engine.process_streaming_chunk(chunk("done", finish_reason="stop"), state)
    response = engine.finalize_stream_processing(state)

    assert result.reasoning_content == "thinking..."
    assert response.reasoning_content == "thinking..."
    assert response.finish_reason == "stop"


def test_native_responses_api_events() -> None:
    engine = NativeToolCallEngine()
    state = engine.init_stream_processing_state()
    item = SimpleNamespace(
        type="function_call", id="fc_1", call_id="call_1", name="get_weather", arguments=""
    )
    events = [
        SimpleNamespace(type="response.created", response=SimpleNamespace(id="resp_9")),
        SimpleNamespace(type="response.output_text.delta", delta="On it"),
        SimpleNamespace(type="response.output_item.added", item=item),
        SimpleNamespace(
            type="response.function_call_arguments.delta", item_id="fc_1", delta='{"city":'
        ),
        SimpleNamespace(
            type="response.function_call_arguments.delta", item_id="fc_1", delta='"Oslo"}'
        ),
        SimpleNamespace(type="response.completed", response=SimpleNamespace(id="resp_9")),
    ]

    for event in events:
        engine.process_response_api_streaming_chunk(event, state)
    response = engine.finalize_stream_processing(state)

    assert response.response_id == "resp_9"
    assert response.content == "On it"
    assert response.tool_calls[0].id == "call_1"
    assert decode(response.tool_calls[0].arguments) == {"city": "Oslo"}


# prompt engineering

PE_RESPONSE = (
    "Let me check.\n"
    '<tool_call>\n{"name": "get_weather", "parameters": {"city": "Boston"}}\n</tool_call>'
    "\nDone."
)


def test_prompt_engineering_system_prompt_documents_tools() -> None:
    prompt = PromptEngineeringToolCallEngine().prepare_system_prompt("base", [get_weather])

    assert prompt.startswith("base")
    assert "<tools>" in prompt
    assert "get_weather" in prompt
    assert "<tool_call>" in prompt


def test_prompt_engineering_request_has_no_native_tools() -> None:
    request = PromptEngineeringToolCallEngine().prepare_request(_context(tools=[get_weather]))

    assert "tools" not in request


def test_prompt_engineering_parses_inline_block() -> None:
    streamed, response = run_text(PromptEngineeringToolCallEngine(), [PE_RESPONSE])

    assert streamed == "Let me check.\n\nDone."
    assert response.content == streamed
    assert response.raw_content == PE_RESPONSE
    assert response.finish_reason == "tool_calls"
    assert response.tool_calls[0].name == "get_weather"
    assert decode(response.tool_calls[0].arguments) == {"city": "Boston"}


@pytest.mark.parametrize("split_at", range(1, len(PE_RESPONSE)))
def test_prompt_engineering_split_anywhere_matches_unsplit(split_at: int) -> None:
    _, whole = run_text(PromptEngineeringToolCallEngine(), [PE_RESPONSE])

    streamed, split = run_text(
        PromptEngineeringToolCallEngine(), [PE_RESPONSE[:split_at], PE_RESPONSE[split_at:]]
    )

    assert streamed == whole.content
    assert split.content == whole.content
    assert [(c.name, c.arguments) for c in split.tool_calls] == [
        (c.name, c.arguments) for c in whole.tool_calls
    ]


def test_prompt_engineering_char_by_char_stream() -> None:
    streamed, response = run_text(PromptEngineeringToolCallEngine(), list(PE_RESPONSE))

    assert streamed == "Let me check.\n\nDone."
    assert len(response.tool_calls) == 1


def test_prompt_engineering_malformed_block_stays_visible() -> None:
    text = "Hi <tool_call>not json at all</tool_call> bye"

    streamed, response = run_text(PromptEngineeringToolCallEngine(), [text])

    assert response.tool_calls == []
    assert response.content == text
    assert streamed == text
    assert response.finish_reason == "stop"


def test_prompt_engineering_repairs_slightly_broken_json() -> None:
    text = '<tool_call>{"name": "get_weather", "parameters": {"city": "Rome",}}</tool_call>'

    _, response = run_text(PromptEngineeringToolCallEngine(), [text])

    assert decode(response.tool_calls[0].arguments) == {"city": "Rome"}


def test_prompt_engineering_unterminated_block() -> None:
    complete = '<tool_call>{"name": "get_weather", "parameters": {"city": "Rome"}}'
    _, response = run_text(PromptEngineeringToolCallEngine(), [complete])
    assert response.tool_calls[0].name == "get_weather"

    truncated = 'Sure <tool_call>{"name": "get_wea'
    _, response = run_text(PromptEngineeringToolCallEngine(), [truncated])
    assert response.tool_calls == []
    assert response.content == truncated


def test_prompt_engineering_partial_delimiter_at_end_is_text() -> None:
    streamed, response = run_text(PromptEngineeringToolCallEngine(), ["a < b <tool_"])

    assert streamed == "a < b "
    assert response.content == "a < b <tool_"


def test_parse_tool_call_block_accepts_arguments_key() -> None:
    call = parse_tool_call_block('{"name": "f", "arguments": "{\\"x\\": 1}"}')

    assert call is not None
    assert decode(call.arguments) == {"x": 1}
    assert parse_tool_call_block('{"parameters": {}}') is None


# structured outputs


def test_structured_outputs_request_uses_json_schema() -> None:
    engine = StructuredOutputsToolCallEngine()

    chat = engine.prepare_request(_context(tools=[get_weather]))
    responses = engine.prepare_request(_context(tools=[get_weather]), use_responses_api=True)

    assert chat["response_format"]["type"] == "json_schema"
    assert responses["text"]["format"]["type"] == "json_schema"
    assert "tools" not in chat
    assert "get_weather" in engine.prepare_system_prompt("base", [get_weather])


def test_structured_outputs_streams_final_answer_text() -> None:
    payload = '{"finalAnswer": "It is sunny in Boston."}'
    pieces = [payload[i : i + 5] for i in range(0, len(payload), 5)]

    streamed, response = run_text(StructuredOutputsToolCallEngine(), pieces)

    assert response.content == "It is sunny in Boston."
    assert response.tool_calls == []
    assert response.content.startswith(streamed)
    assert response.raw_content == payload


def test_structured_outputs_tool_call() -> None:
    payload = (
        '{"content": "Checking the weather", '
        '"toolCall": {"name": "get_weather", "args": {"city": "Boston"}}}'
    )

    streamed, response = run_text(StructuredOutputsToolCallEngine(), list(payload))

    assert response.content == "Checking the weather"
    assert streamed and response.content.startswith(streamed)
    assert response.finish_reason == "tool_calls"
    assert response.tool_calls[0].name == "get_weather"
    assert decode(response.tool_calls[0].arguments) == {"city": "Boston"}


def test_structured_outputs_plain_text_passes_through() -> None:
    streamed, response = run_text(StructuredOutputsToolCallEngine(), ["no json ", "here"])

    assert streamed == "no json here"
    assert response.content == "no json here"
    assert response.tool_calls == []


@pytest.mark.parametrize(
    "payload, answer",
    [
        ('{"finalAnswer": "line one\\nline two"}', "line one\nline two"),
        ('{"finalAnswer": "say \\"hi\\" now"}', 'say "hi" now'),
        ('{"finalAnswer": "Caf\\u00e9 is open"}', "Café is open"),
        ('{"finalAnswer": "smile \\ud83d\\ude00 ok"}', "smile \U0001f600 ok"),
        ('{"finalAnswer": "C:\\\\temp\\\\u1"}', "C:\\temp\\u1"),
    ],
)
def test_structured_outputs_escapes_split_char_by_char(payload: str, answer: str) -> None:
    streamed, response = run_text(StructuredOutputsToolCallEngine(), list(payload))

    assert response.content == answer
    assert response.content.startswith(streamed)
    assert len(streamed) == len(answer) - 1


def test_structured_outputs_holds_back_only_the_open_tail() -> None:
    engine = StructuredOutputsToolCallEngine()
    state = engine.init_stream_processing_state()

    first = engine.process_streaming_chunk(chunk('{"finalAnswer": "ab\\'), state).content
    second = engine.process_streaming_chunk(chunk('ncd"}'), state).content

    assert first == "a"
    assert second == "b\nc"
    assert engine.finalize_stream_processing(state).content == "ab\ncd"
