import logging
from enum import Enum
from time import perf_counter
from typing import Any, AsyncIterator
from uuid import uuid4

from msgspec import field
from opentelemetry import trace
from opentelemetry.trace import SpanKind

from mmagent.abort import AbortSignal, iterate_until_abort
from mmagent.context import RunContext
from mmagent.engines.base import (
    ParsedModelResponse,
    PrepareRequestContext,
    StreamChunkResult,
    StreamProcessingState,
    ToolCallEngine,
)
from mmagent.errors import AgentAbortedError
from mmagent.event_stream import EventStream
from mmagent.events import AssistantMessageEvent, ToolResultEvent
from mmagent.history import MessageHistory
from mmagent.hooks import (
    AgentHooks,
    LLMRequestInfo,
    LLMResponseInfo,
    PreparedRequest,
    run_hook,
)
from mmagent.interface import Record
from mmagent.llm.models import ResolvedModel
from mmagent.llm.service import LLMService
from mmagent.tools.executor import ITimer
from mmagent.tracing import get_trace_ctx

from .tool_processor import ToolProcessor

logger = logging.getLogger(__name__)


class ProcessorPhase(Enum):
    IDLE = "idle"
    PREPARING = "preparing"
    REQUESTING = "requesting"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    DONE = "done"
    ABORTED = "aborted"


class IterationOutcome(Record):
    """What one model round trip produced."""

    response: ParsedModelResponse | None = None
    assistant_event: AssistantMessageEvent | None = None
    tool_results: list[ToolResultEvent] = field(default_factory=list)
    aborted: bool = False

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.response and self.response.tool_calls)


class LLMProcessor:
    """Drives one model request: prepare, stream, finalize, then run tools."""

    def __init__(
        self,
        event_stream: EventStream,
        llm_service: LLMService,
        tool_processor: ToolProcessor,
        hooks: AgentHooks,
        history: MessageHistory,
        *,
        temperature: float | None = None,
        max_tokens: int | None = None,
        use_responses_api: bool = False,
        enable_streaming_tool_call_events: bool = False,
        tracer: trace.Tracer | None = None,
        timer: ITimer = perf_counter,
    ):
        self._event_stream = event_stream
        self._llm_service = llm_service
        self._tool_processor = tool_processor
        self._hooks = hooks
        self._history = history
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._use_responses_api = use_responses_api
        self._streaming_tool_call_events = enable_streaming_tool_call_events
        self._tracer = tracer or trace.get_tracer("mmagent.llm")
        self._timer = timer
        self.phase = ProcessorPhase.IDLE

    async def process_request(
        self,
        *,
        model: ResolvedModel,
        system_prompt: str,
        engine: ToolCallEngine[Any],
        run_context: RunContext,
        streaming_mode: bool,
        abort_signal: AbortSignal | None = None,
    ) -> IterationOutcome:
        session_id = run_context.session_id
        iteration = run_context.iteration
        if abort_signal is not None and abort_signal.aborted:
            self.phase = ProcessorPhase.ABORTED
            return IterationOutcome(aborted=True)

        self.phase = ProcessorPhase.PREPARING
        await run_hook(
            "on_each_agent_loop_start",
            self._hooks.on_each_agent_loop_start(session_id, iteration),
            None,
        )
        tools = await run_hook(
            "get_available_tools", self._hooks.get_available_tools(), []
        )
        default_request = PreparedRequest(system_prompt=system_prompt, tools=tools)
        prepared = await run_hook(
            "on_prepare_request",
            self._hooks.on_prepare_request(default_request),
            default_request,
        )
        self._tool_processor.set_execution_tools(prepared.tools)

        if engine.name == "structured_outputs" and self._streaming_tool_call_events:
            logger.warning(
                "structured_outputs engine cannot stream tool call arguments; "
                "assistant_streaming_tool_call events will only mark completed calls"
            )

        messages = self._history.to_message_history(
            engine, prepared.system_prompt, prepared.tools
        )
        previous_response_id = None
        if self._use_responses_api:
            latest = self._event_stream.get_latest_assistant_response()
            previous_response_id = latest.response_id if latest else None

        request = engine.prepare_request(
            PrepareRequestContext(
                model=model,
                messages=messages,
                tools=prepared.tools,
                temperature=self._temperature,
                max_tokens=self._max_tokens,
                previous_response_id=previous_response_id,
            ),
            self._use_responses_api,
        )
        request["stream"] = True
        await run_hook(
            "on_llm_request",
            self._hooks.on_llm_request(
                LLMRequestInfo(session_id=session_id, iteration=iteration, request=request)
            ),
            None,
        )

        message_id = f"msg_{uuid4().hex}"
        start = self._timer()
        with self._tracer.start_as_current_span(
            "llm.request",
            kind=SpanKind.CLIENT,
            record_exception=True,
            set_status_on_exception=True,
            context=get_trace_ctx(),
            attributes={
                "llm.provider": model.provider,
                "llm.model": model.id,
                "llm.engine": engine.name,
                "llm.message_count": len(messages),
                "agent.iteration": iteration,
            },
        ) as span:
            self.phase = ProcessorPhase.REQUESTING
            if self._use_responses_api:
                stream = self._llm_service.stream_response(model, request)
            else:
                stream = self._llm_service.stream_chat(model, request)

            state = engine.init_stream_processing_state()
            chunks: list[Any] = []
            try:
                streamed = await self._consume_stream(
                    stream, engine, state, chunks, message_id, streaming_mode, abort_signal
                )
            except AgentAbortedError:
                logger.info("Stream aborted, discarding partial response")
                self.phase = ProcessorPhase.ABORTED
                span.set_attribute("llm.aborted", True)
                return IterationOutcome(aborted=True)
            finally:
                await stream.aclose()

            self.phase = ProcessorPhase.FINALIZING
            response = engine.finalize_stream_processing(state)
            span.set_attribute("llm.finish_reason", response.finish_reason)
            span.set_attribute("llm.tool_call_count", len(response.tool_calls))

        elapsed_ms = int((self._timer() - start) * 1000)
        if streaming_mode:
            self._flush_remaining(response.content, streamed, message_id)
        assistant_event = self._emit_final_events(response, message_id, elapsed_ms)

        info = LLMResponseInfo(
            session_id=session_id,
            iteration=iteration,
            content=response.content,
            tool_calls=response.tool_calls,
            finish_reason=response.finish_reason,
            chunks=chunks,
        )
        await run_hook("on_llm_response", self._hooks.on_llm_response(info), None)
        if streaming_mode:
            await run_hook(
                "on_llm_streaming_response", self._hooks.on_llm_streaming_response(info), None
            )

        tool_results: list[ToolResultEvent] = []
        if response.tool_calls and not (abort_signal and abort_signal.aborted):
            tool_results = await self._tool_processor.process_tool_calls(
                response.tool_calls, run_context=run_context, abort_signal=abort_signal
            )

        aborted = bool(abort_signal and abort_signal.aborted)
        self.phase = ProcessorPhase.ABORTED if aborted else ProcessorPhase.DONE
        return IterationOutcome(
            response=response,
            assistant_event=assistant_event,
            tool_results=tool_results,
            aborted=aborted,
        )

    async def _consume_stream(
        self,
        stream: AsyncIterator[Any],
        engine: ToolCallEngine[Any],
        state: StreamProcessingState,
        chunks: list[Any],
        message_id: str,
        streaming_mode: bool,
        abort_signal: AbortSignal | None,
    ) -> str:
        """Feed chunks to the engine, emitting deltas; returns the streamed text."""
        streamed: list[str] = []
        async for chunk in iterate_until_abort(stream, abort_signal):
            if self.phase is ProcessorPhase.REQUESTING:
                self.phase = ProcessorPhase.STREAMING
            chunks.append(chunk)
            if self._use_responses_api:
                result = engine.process_response_api_streaming_chunk(chunk, state)
            else:
                result = engine.process_streaming_chunk(chunk, state)
            if result.content:
                streamed.append(result.content)
            if streaming_mode:
                self._emit_deltas(result, message_id)
        return "".join(streamed)

    def _emit_deltas(self, result: StreamChunkResult, message_id: str) -> None:
        if result.reasoning_content:
            self._event_stream.emit(
                "assistant_streaming_thinking_message",
                content=result.reasoning_content,
                message_id=message_id,
            )
        if result.content:
            self._event_stream.emit(
                "assistant_streaming_message",
                content=result.content,
                message_id=message_id,
            )
        if self._streaming_tool_call_events:
            for update in result.tool_call_updates:
                self._event_stream.emit(
                    "assistant_streaming_tool_call",
                    tool_call_id=update.tool_call_id,
                    tool_name=update.tool_name,
                    arguments=update.arguments_delta,
                    is_complete=update.is_complete,
                    message_id=message_id,
                )

    def _flush_remaining(self, content: str, streamed: str, message_id: str) -> None:
        # Engines may hold text back until the stream ends (e.g. a partial delimiter).
        if len(content) > len(streamed) and content.startswith(streamed):
            self._event_stream.emit(
                "assistant_streaming_message",
                content=content[len(streamed) :],
                message_id=message_id,
            )
        elif content != streamed:
            logger.warning(
                "Final content diverged from streamed deltas for message %s", message_id
            )

    def _emit_final_events(
        self, response: ParsedModelResponse, message_id: str, elapsed_ms: int
    ) -> AssistantMessageEvent | None:
        assistant_event: AssistantMessageEvent | None = None
        if response.content or response.tool_calls:
            event = self._event_stream.emit(
                "assistant_message",
                content=response.content,
                raw_content=response.raw_content,
                tool_calls=response.tool_calls or None,
                finish_reason=response.finish_reason,
                message_id=message_id,
                response_id=response.response_id,
                elapsed_ms=elapsed_ms,
            )
            assert isinstance(event, AssistantMessageEvent)
            assistant_event = event
        if response.reasoning_content:
            self._event_stream.emit(
                "assistant_thinking_message",
                content=response.reasoning_content,
                message_id=message_id,
            )
        return assistant_event
