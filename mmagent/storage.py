"""Durable event log: newline-delimited msgspec JSON, one event per line."""

import logging
from pathlib import Path
from typing import IO

from msgspec import DecodeError
from msgspec.json import Decoder, Encoder

from mmagent.errors import MMAgentValidationError
from mmagent.event_stream import EventStream, Unsubscribe
from mmagent.events import AgentEvent, is_streaming_event

logger = logging.getLogger(__name__)

_encoder = Encoder()
_decoder = Decoder(AgentEvent.__value__)


class JsonlEventStore:
    """Appends every non-streaming event of a stream to a `.jsonl` file.

    Streaming deltas are skipped, the final `assistant_message` carries the
    same content.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._file: IO[bytes] | None = None
        self._unsubscribe: Unsubscribe | None = None

    def attach(self, event_stream: EventStream) -> "JsonlEventStore":
        if self._unsubscribe is not None:
            raise MMAgentValidationError("JsonlEventStore is already attached")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._file = self.path.open("ab")
        self._unsubscribe = event_stream.subscribe(self.append)
        return self

    def append(self, event: AgentEvent) -> None:
        if is_streaming_event(event):
            return
        if self._file is None:
            raise MMAgentValidationError("JsonlEventStore is not attached")
        self._file.write(_encoder.encode(event) + b"\n")
        self._file.flush()

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._file is not None:
            self._file.close()
            self._file = None

    def __enter__(self) -> "JsonlEventStore":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


def load_events(path: str | Path) -> list[AgentEvent]:
    """Decode a log written by `JsonlEventStore` back into typed events."""
    events: list[AgentEvent] = []
    with Path(path).open("rb") as f:
        for lineno, line in enumerate(f, start=1):
            if not line.strip():
                continue
            try:
                events.append(_decoder.decode(line))
            except DecodeError as err:
                raise MMAgentValidationError(
                    f"Invalid event on line {lineno} of {path}: {err}"
                ) from err
    return events


def replay(events: list[AgentEvent], event_stream: EventStream) -> None:
    """Resume a session by sending stored events into a fresh stream."""
    for event in events:
        event_stream.send_event(event)
    logger.debug("Replayed %d events", len(events))
