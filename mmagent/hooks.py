"""Extension points the runtime calls during a run.

Subclass `AgentHooks` and override what you need. Hooks are coroutines so
overrides can await I/O.
Failures inside hooks are logged by the caller and never end a run.
"""

import logging
from typing import Any, Awaitable

from mmagent.events import AgentRunEndEvent
from mmagent.interface import Record
from mmagent.llm.models import MessageContent, ToolCall
from mmagent.tools import Tool

logger = logging.getLogger(__name__)


class PreparedRequest(Record):
    """What `on_prepare_request` may rewrite before the model is called."""

    system_prompt: str
    tools: list[Tool[..., Any]]


class LLMRequestInfo(Record):
    session_id: str
    iteration: int
    request: dict[str, Any]


class LLMResponseInfo(Record):
    session_id: str
    iteration: int
    content: str
    tool_calls: list[ToolCall]
    finish_reason: str
    chunks: list[Any]


class ToolCallResult(Record):
    """A result produced without running the tool, or a rewritten result."""

    content: MessageContent
    is_error: bool = False


class AgentHooks:
    def __init__(self, tools: list[Tool[..., Any]] | None = None):
        self._tools = list(tools or [])

    def register_tools(self, tools: list[Tool[..., Any]]) -> None:
        """Add tools offered by the default `get_available_tools`."""
        self._tools.extend(tools)

    async def on_each_agent_loop_start(self, session_id: str, iteration: int) -> None:
        return None

    async def get_available_tools(self) -> list[Tool[..., Any]]:
        return list(self._tools)

    async def on_prepare_request(self, request: PreparedRequest) -> PreparedRequest:
        return request

    async def on_llm_request(self, info: LLMRequestInfo) -> None:
        return None

    async def on_llm_response(self, info: LLMResponseInfo) -> None:
        return None

    async def on_llm_streaming_response(self, info: LLMResponseInfo) -> None:
        return None

    async def on_before_tool_call(
        self, session_id: str, call: ToolCall, arguments: dict[str, Any]
    ) -> ToolCallResult | None:
        """Return a result to skip running the tool, e.g. to mock it in tests."""
        return None

    async def on_after_tool_call(
        self, session_id: str, call: ToolCall, result: MessageContent
    ) -> MessageContent:
        return result

    async def on_tool_call_error(
        self, session_id: str, call: ToolCall, error: Exception
    ) -> MessageContent:
        return f"Error: {error}"

    async def on_agent_loop_end(self, event: AgentRunEndEvent) -> None:
        return None


async def run_hook[T](name: str, awaitable: Awaitable[T], fallback: T) -> T:
    """Await a hook, logging and falling back when it raises."""
    try:
        return await awaitable
    except Exception:
        logger.exception("Hook %s failed, continuing with defaults", name)
        return fallback
