from pathlib import Path

import pytest

from mmagent.errors import MMAgentValidationError
from mmagent.event_stream import EventStream
from mmagent.events import AssistantMessageEvent, ToolResultEvent
from mmagent.llm.models import ToolCall, image_part, text_part
from mmagent.storage import JsonlEventStore, load_events, replay


def record_session(stream: EventStream) -> None:
    stream.emit("agent_run_start", session_id="s1")
    stream.emit("user_message", content=[text_part("what is this?"), image_part("data:image/png;base64,AAAA")])
    stream.emit("assistant_streaming_message", content="Let me", message_id="m1")
    stream.emit(
        "assistant_message",
        content="Let me check.",
        tool_calls=[ToolCall(id="c1", name="lookup", arguments='{"q": "x"}')],
        finish_reason="tool_calls",
        message_id="m1",
    )
    stream.emit("tool_result", tool_call_id="c1", name="lookup", content="a cat", elapsed_ms=3)
    stream.emit(
        "agent_run_end",
        session_id="s1",
        iterations=1,
        elapsed_ms=10,
        status="completed",
        successful=True,
    )


def test_store_writes_non_streaming_events(tmp_path: Path) -> None:
    stream = EventStream()
    path = tmp_path / "logs" / "session.jsonl"

    with JsonlEventStore(path).attach(stream):
        record_session(stream)

    events = load_events(path)

    assert [e.event_type for e in events] == [
        "agent_run_start",
        "user_message",
        "assistant_message",
        "tool_result",
        "agent_run_end",
    ]
    assert events == [e for e in stream.get_events() if e.event_type != "assistant_streaming_message"]
    assistant = events[2]
    assert isinstance(assistant, AssistantMessageEvent)
    assert assistant.tool_calls is not None
    assert assistant.tool_calls[0].name == "lookup"


def test_store_stops_writing_after_close(tmp_path: Path) -> None:
    stream = EventStream()
    path = tmp_path / "session.jsonl"
    store = JsonlEventStore(path).attach(stream)

    stream.emit("user_message", content="one")
    store.close()
    stream.emit("user_message", content="two")

    assert len(load_events(path)) == 1


def test_attach_twice_is_rejected(tmp_path: Path) -> None:
    store = JsonlEventStore(tmp_path / "session.jsonl").attach(EventStream())

    with pytest.raises(MMAgentValidationError):
        store.attach(EventStream())
    store.close()


def test_load_reports_the_bad_line(tmp_path: Path) -> None:
    path = tmp_path / "broken.jsonl"
    stream = EventStream()
    with JsonlEventStore(path).attach(stream):
        stream.emit("user_message", content="fine")
    with path.open("ab") as f:
        f.write(b'{"type": "mystery"}\n')

    with pytest.raises(MMAgentValidationError, match="line 2"):
        load_events(path)


def test_replay_resumes_a_session(tmp_path: Path) -> None:
    original = EventStream()
    path = tmp_path / "session.jsonl"
    with JsonlEventStore(path).attach(original):
        record_session(original)

    resumed = EventStream()
    replay(load_events(path), resumed)

    assert len(resumed) == 5
    results = resumed.get_latest_tool_results()
    assert isinstance(results[0], ToolResultEvent)
    assert results[0].content == "a cat"
    assert resumed.emit("user_message", content="next").timestamp >= results[0].timestamp
