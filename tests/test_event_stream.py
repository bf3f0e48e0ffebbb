import pytest

from mmagent.errors import MMAgentValidationError
from mmagent.event_stream import EventStream
from mmagent.events import AgentEvent, AssistantMessageEvent, UserMessageEvent


class FakeClock:
    def __init__(self, *ticks: int):
        self._ticks = list(ticks)
        self._last = 0

    def __call__(self) -> int:
        if self._ticks:
            self._last = self._ticks.pop(0)
        return self._last


def test_emit_assigns_id_and_timestamp() -> None:
    stream = EventStream(clock=FakeClock(100))

    event = stream.emit("user_message", content="hi")

    assert isinstance(event, UserMessageEvent)
    assert event.event_type == "user_message"
    assert event.timestamp == 100
    assert len(event.id) == 32
    assert stream.get_events() == [event]


def test_timestamps_never_decrease_even_when_clock_goes_back() -> None:
    stream = EventStream(clock=FakeClock(200, 150, 300))

    events = [stream.emit("system", level="info", message=str(i)) for i in range(3)]

    assert [e.timestamp for e in events] == [200, 200, 300]


def test_send_event_restamps_events_older_than_the_tail() -> None:
    stream = EventStream(clock=FakeClock(10, 50))
    early = stream.create_event("user_message", content="created first")
    stream.emit("system", level="info", message="sent first")

    stored = stream.send_event(early)

    assert stored.timestamp == 50
    assert stored.id == early.id
    assert stream.get_events()[-1] is stored


def test_unknown_event_type_is_rejected() -> None:
    stream = EventStream()

    with pytest.raises(MMAgentValidationError):
        stream.emit("not_an_event", content="x")  # type: ignore[arg-type]


def test_subscribers_see_events_in_append_order() -> None:
    stream = EventStream()
    first: list[str] = []
    second: list[str] = []
    stream.subscribe(lambda e: first.append(e.id))
    stream.subscribe(lambda e: second.append(e.id))

    ids = [stream.emit("user_message", content=str(i)).id for i in range(5)]

    assert first == ids
    assert second == ids


def test_failing_subscriber_does_not_block_others(caplog: pytest.LogCaptureFixture) -> None:
    stream = EventStream()
    seen: list[AgentEvent] = []

    def broken(event: AgentEvent) -> None:
        raise RuntimeError("subscriber bug")

    stream.subscribe(broken)
    stream.subscribe(seen.append)

    event = stream.emit("user_message", content="hi")

    assert seen == [event]
    assert "subscriber" in caplog.text.lower()


def test_unsubscribe_is_idempotent() -> None:
    stream = EventStream()
    seen: list[AgentEvent] = []
    unsubscribe = stream.subscribe(seen.append)

    stream.emit("user_message", content="one")
    unsubscribe()
    unsubscribe()
    stream.emit("user_message", content="two")

    assert len(seen) == 1


def test_typed_and_streaming_subscriptions_filter() -> None:
    stream = EventStream()
    typed: list[AgentEvent] = []
    streaming: list[AgentEvent] = []
    stream.subscribe_to_types(["tool_result"], typed.append)
    stream.subscribe_to_streaming_events(streaming.append)

    stream.emit("assistant_streaming_message", content="He", message_id="m1")
    stream.emit("assistant_message", content="Hello", message_id="m1")
    stream.emit(
        "tool_result", tool_call_id="c1", name="t", content="ok", elapsed_ms=1
    )

    assert [e.event_type for e in typed] == ["tool_result"]
    assert [e.event_type for e in streaming] == ["assistant_streaming_message"]


def test_queries_filter_and_limit() -> None:
    stream = EventStream()
    for i in range(3):
        stream.emit("user_message", content=str(i))
        stream.emit("assistant_message", content=f"answer {i}")

    latest_two = stream.get_events(["user_message"], limit=2)
    assert [e.content for e in latest_two] == ["1", "2"]  # type: ignore[union-attr]
    assert stream.get_events(limit=0) == []

    latest = stream.get_latest_assistant_response()
    assert isinstance(latest, AssistantMessageEvent)
    assert latest.content == "answer 2"


def test_latest_tool_results_stop_at_last_assistant_message() -> None:
    stream = EventStream()
    stream.emit("tool_result", tool_call_id="old", name="t", content="x", elapsed_ms=0)
    stream.emit("assistant_message", content="", tool_calls=None)
    stream.emit("tool_result", tool_call_id="a", name="t", content="1", elapsed_ms=0)
    stream.emit("tool_result", tool_call_id="b", name="t", content="2", elapsed_ms=0)

    assert [r.tool_call_id for r in stream.get_latest_tool_results()] == ["a", "b"]


def test_persistable_events_skip_streaming_variants() -> None:
    stream = EventStream()
    stream.emit("assistant_streaming_message", content="He", message_id="m1")
    stream.emit("assistant_streaming_thinking_message", content="hm", message_id="m1")
    final = stream.emit("assistant_message", content="Hello", message_id="m1")

    assert stream.persistable_events() == [final]
