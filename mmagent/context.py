"""Per-run bookkeeping shared by the loop, the LLM processor and the tool processor."""

from typing import Any, Literal

from msgspec import Struct, field

from mmagent.llm.models import ToolCall

ToolCallStatus = Literal["pending", "running", "succeeded", "failed", "aborted"]


class ToolCallRecord(Struct, kw_only=True):
    call: ToolCall
    arguments: dict[str, Any] = field(default_factory=dict)
    status: ToolCallStatus = "pending"
    elapsed_ms: int = 0


class RunContext(Struct, kw_only=True):
    """State of one run, keyed by tool call id; discarded when the run ends."""

    session_id: str
    iteration: int = 0
    tool_calls: dict[str, ToolCallRecord] = field(default_factory=dict)
    tool_call_counts: dict[str, int] = field(default_factory=dict)

    def track(self, call: ToolCall, arguments: dict[str, Any]) -> ToolCallRecord:
        record = ToolCallRecord(call=call, arguments=arguments)
        self.tool_calls[call.id] = record
        return record

    def settle(self, call_id: str, status: ToolCallStatus, elapsed_ms: int) -> None:
        record = self.tool_calls[call_id]
        record.status = status
        record.elapsed_ms = elapsed_ms

    def unsettled(self) -> list[ToolCallRecord]:
        return [
            r for r in self.tool_calls.values() if r.status in ("pending", "running")
        ]
