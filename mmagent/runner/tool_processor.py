import asyncio
import logging
from contextlib import suppress
from time import perf_counter
from typing import Any

from msgspec import DecodeError
from msgspec.json import decode

from mmagent.abort import AbortSignal
from mmagent.context import RunContext, ToolCallStatus
from mmagent.errors import ToolNotFoundError
from mmagent.event_stream import EventStream, now_ms
from mmagent.events import ToolInfo, ToolResultEvent
from mmagent.hooks import AgentHooks, run_hook
from mmagent.llm.models import MessageContent, ToolCall
from mmagent.tools import Tool, ToolExecutor
from mmagent.tools.executor import ITimer

logger = logging.getLogger(__name__)

ABORTED_RESULT = "Tool execution aborted"


def parse_arguments(raw: str) -> dict[str, Any]:
    """Arguments as shown in `tool_call` events; `{}` when not a JSON object."""
    try:
        parsed = decode(raw.strip() or "{}")
    except DecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


class ToolProcessor:
    """Runs one turn's tool calls and records exactly one result per call."""

    def __init__(
        self,
        event_stream: EventStream,
        executor: ToolExecutor,
        hooks: AgentHooks,
        *,
        abort_grace_seconds: float = 5.0,
        timer: ITimer = perf_counter,
    ):
        self._event_stream = event_stream
        self._executor = executor
        self._hooks = hooks
        self._abort_grace_seconds = abort_grace_seconds
        self._timer = timer
        self._execution_tools: dict[str, Tool[..., Any]] = {}

    def set_execution_tools(self, tools: list[Tool[..., Any]]) -> None:
        self._execution_tools = {t.name: t for t in tools}

    async def process_tool_calls(
        self,
        tool_calls: list[ToolCall],
        *,
        run_context: RunContext,
        abort_signal: AbortSignal | None = None,
    ) -> list[ToolResultEvent]:
        ids = {call.id for call in tool_calls}
        for call in tool_calls:
            self._announce(call, run_context)

        tasks = [
            asyncio.create_task(self._run_one(call, run_context), name=f"tool:{call.id}")
            for call in tool_calls
        ]
        try:
            if tasks:
                await self._wait(tasks, abort_signal)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()

        for record in run_context.unsettled():
            if record.call.id in ids:
                self._emit_result(
                    record.call,
                    run_context,
                    content=ABORTED_RESULT,
                    error=ABORTED_RESULT,
                    elapsed_ms=0,
                    status="aborted",
                )

        return [
            e
            for e in self._event_stream.get_events(["tool_result"])
            if isinstance(e, ToolResultEvent) and e.tool_call_id in ids
        ]

    async def _wait(
        self, tasks: list[asyncio.Task[None]], abort_signal: AbortSignal | None
    ) -> None:
        if abort_signal is None:
            await asyncio.wait(tasks)
            return

        abort_wait = asyncio.ensure_future(abort_signal.wait())
        try:
            while not abort_signal.aborted:
                running = [t for t in tasks if not t.done()]
                if not running:
                    break
                await asyncio.wait(
                    [*running, abort_wait], return_when=asyncio.FIRST_COMPLETED
                )
        finally:
            abort_wait.cancel()
            with suppress(asyncio.CancelledError):
                await abort_wait

        pending = [t for t in tasks if not t.done()]
        if not pending:
            return
        logger.info(
            "Abort requested, waiting up to %.1fs for %d tool(s)",
            self._abort_grace_seconds,
            len(pending),
        )
        _, still_running = await asyncio.wait(pending, timeout=self._abort_grace_seconds)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)

    def _announce(self, call: ToolCall, run_context: RunContext) -> None:
        arguments = parse_arguments(call.arguments)
        run_context.track(call, arguments)
        t = self._execution_tools.get(call.name)
        info = (
            ToolInfo(name=t.name, description=t.description, parameters=t.parameters)
            if t is not None
            else ToolInfo(name=call.name, description="", parameters={})
        )
        self._event_stream.emit(
            "tool_call",
            tool_call_id=call.id,
            name=call.name,
            arguments=arguments,
            start_time=now_ms(),
            tool=info,
        )

    async def _run_one(self, call: ToolCall, run_context: RunContext) -> None:
        session_id = run_context.session_id
        run_context.tool_calls[call.id].status = "running"
        start = self._timer()
        error: str | None = None
        try:
            t = self._execution_tools.get(call.name)
            if t is None:
                raise ToolNotFoundError(call.name)
            arguments = t.decode_arguments(call.arguments)
            mocked = await run_hook(
                "on_before_tool_call",
                self._hooks.on_before_tool_call(session_id, call, arguments),
                None,
            )
            if mocked is not None:
                content: MessageContent = mocked.content
                if mocked.is_error:
                    error = content if isinstance(content, str) else "Tool call failed"
            else:
                content = await self._executor.execute_tool(
                    t, arguments, call_id=call.id, run_context=run_context
                )
        except Exception as exc:
            logger.warning("Tool call %s (%s) failed: %s", call.id, call.name, exc)
            error = str(exc) or type(exc).__name__
            content = await run_hook(
                "on_tool_call_error",
                self._hooks.on_tool_call_error(session_id, call, exc),
                f"Error: {error}",
            )

        processed = None
        if error is None:
            processed = await run_hook(
                "on_after_tool_call",
                self._hooks.on_after_tool_call(session_id, call, content),
                content,
            )
            if processed == content:
                processed = None

        self._emit_result(
            call,
            run_context,
            content=content,
            processed_content=processed,
            error=error,
            elapsed_ms=int((self._timer() - start) * 1000),
            status="failed" if error is not None else "succeeded",
        )

    def _emit_result(
        self,
        call: ToolCall,
        run_context: RunContext,
        *,
        content: MessageContent,
        error: str | None,
        elapsed_ms: int,
        status: ToolCallStatus,
        processed_content: MessageContent | None = None,
    ) -> None:
        run_context.settle(call.id, status, elapsed_ms)
        self._event_stream.emit(
            "tool_result",
            tool_call_id=call.id,
            name=call.name,
            content=content,
            processed_content=processed_content,
            elapsed_ms=elapsed_ms,
            error=error,
            is_error=error is not None,
        )
