import asyncio
import logging
from contextlib import suppress
from enum import Enum
from time import perf_counter
from typing import Any, AsyncIterator
from uuid import uuid4

from ididi import Graph
from msgspec import field
from opentelemetry import trace

from mmagent.abort import AbortController, AbortSignal
from mmagent.config import AgentOptions
from mmagent.context import RunContext
from mmagent.engines import create_tool_call_engine
from mmagent.errors import AgentBusyError
from mmagent.event_stream import EventStream
from mmagent.events import (
    AgentEvent,
    AgentRunEndEvent,
    AssistantMessageEvent,
    RunError,
    RunStatus,
)
from mmagent.history import MessageHistory
from mmagent.hooks import AgentHooks
from mmagent.interface import Record
from mmagent.llm import LLMService, MessageContent, ResolvedModel, resolve_model
from mmagent.llm.client import LLMClientFactory, create_llm_client
from mmagent.planner import Planner
from mmagent.reflection import ReflectionService
from mmagent.runner import AgentLoop, LLMProcessor, ToolProcessor
from mmagent.tools import ILogger, LoggingToolExecutor, Tool, ToolExecutor
from mmagent.tools.executor import ITimer

logger = logging.getLogger(__name__)


class AgentStatus(Enum):
    IDLE = "idle"
    EXECUTING = "executing"


class AgentRunOptions(Record):
    input: MessageContent
    session_id: str | None = None
    stream: bool = False
    """Emit streaming delta events while the model responds."""
    provider: str | None = None
    model: str | None = None
    """Session-level model override, applied from the next iteration on."""
    environment_input: MessageContent | None = None
    """Extra context observed by the host, e.g. a screenshot."""
    environment_description: str | None = None
    abort_signal: AbortSignal | None = None

    def summary(self) -> dict[str, Any]:
        return {
            "stream": self.stream,
            "provider": self.provider,
            "model": self.model,
            "has_environment_input": self.environment_input is not None,
        }


class AgentRunResult(Record):
    session_id: str
    status: RunStatus
    iterations: int
    final_event: AssistantMessageEvent | None = None
    error: RunError | None = None
    events: list[AgentEvent] = field(default_factory=list)

    @property
    def content(self) -> str:
        return self.final_event.content if self.final_event else ""

    @property
    def successful(self) -> bool:
        return self.status == "completed"


class Agent:
    """Multimodal tool-using agent over an append-only event stream.

    Each run appends `agent_run_start`, the user input, then model and tool
    events until an answer, the iteration cap, an abort or an error ends it
    with exactly one `agent_run_end`.
    """

    def __init__(
        self,
        options: AgentOptions | None = None,
        *,
        tools: list[Tool[..., Any]] | None = None,
        hooks: AgentHooks | None = None,
        llm_service: LLMService | None = None,
        client_factory: LLMClientFactory = create_llm_client,
        event_stream: EventStream | None = None,
        graph: Graph | None = None,
        tool_logger: ILogger | None = None,
        tracer: trace.Tracer | None = None,
        timer: ITimer = perf_counter,
    ):
        self.options = options = options or AgentOptions()
        self.event_stream = event_stream or EventStream()
        self.llm_service = llm_service or LLMService(
            client_factory, timeout_seconds=options.request_timeout_seconds
        )
        self.hooks = hooks or AgentHooks()
        self.planner = Planner(self.event_stream) if options.planning else None

        all_tools = [*(tools or []), *(self.planner.tools if self.planner else [])]
        self.hooks.register_tools(all_tools)
        graph = graph or Graph()
        if tool_logger is not None:
            self.executor: ToolExecutor = LoggingToolExecutor(
                graph, all_tools, tool_logger, timer=timer, tracer=tracer
            )
        else:
            self.executor = ToolExecutor(graph, all_tools, tracer=tracer)

        self.engine = create_tool_call_engine(options.tool_call_engine)
        self.history = MessageHistory(
            self.event_stream,
            max_images=options.context.max_images,
            max_text_chars=options.context.max_text_chars,
        )
        self.tool_processor = ToolProcessor(
            self.event_stream,
            self.executor,
            self.hooks,
            abort_grace_seconds=options.abort_grace_seconds,
            timer=timer,
        )
        self.llm_processor = LLMProcessor(
            self.event_stream,
            self.llm_service,
            self.tool_processor,
            self.hooks,
            self.history,
            temperature=options.temperature,
            max_tokens=options.max_tokens,
            use_responses_api=options.model.use_responses_api,
            enable_streaming_tool_call_events=options.enable_streaming_tool_call_events,
            tracer=tracer,
            timer=timer,
        )
        self.reflection = (
            ReflectionService(
                self.llm_service,
                self.event_stream,
                temperature=options.reflection.temperature,
                max_tokens=options.reflection.max_tokens,
            )
            if options.reflection.enabled
            else None
        )
        instructions = (
            self.planner.prompt(options.instructions)
            if self.planner
            else options.instructions
        )
        self.loop = AgentLoop(
            self.event_stream,
            self.llm_processor,
            engine=self.engine,
            system_prompt=instructions,
            resolve_model=self.current_model,
            max_iterations=options.max_iterations,
            hooks=self.hooks,
            reflection=self.reflection,
            tracer=tracer,
            timer=timer,
        )

        self._model = options.model.resolve()
        self._model_override: ResolvedModel | None = None
        self._pending_override: tuple[str, str] | None = None
        self._controller: AbortController | None = None
        self.status = AgentStatus.IDLE

    def current_model(self) -> ResolvedModel:
        if self._pending_override is not None:
            # Resolved inside the run so a bad override ends it with a RunError.
            self.set_model(*self._pending_override)
            self._pending_override = None
        return self._model_override or self._model

    def set_model(self, provider: str, model_id: str) -> None:
        """Override the model for this session; in-flight requests keep theirs."""
        base = self.options.model
        same_provider = provider == base.provider
        self._model_override = resolve_model(
            provider,
            model_id,
            api_key=base.api_key if same_provider else None,
            base_url=base.base_url if same_provider else None,
            reasoning=base.reasoning,
        )
        logger.info("Model override set to %s/%s", provider, model_id)

    def clear_model_override(self) -> None:
        self._model_override = None

    def abort(self, reason: str | None = None) -> bool:
        """Abort the executing run; returns False when nothing is running."""
        if self._controller is None:
            return False
        logger.info("Aborting run: %s", reason or "requested")
        self._controller.abort(reason)
        return True

    def _begin(self) -> AbortController:
        if self.status is AgentStatus.EXECUTING:
            raise AgentBusyError("Agent is already executing a run")
        self.status = AgentStatus.EXECUTING
        self._controller = AbortController()
        return self._controller

    def _end(self) -> None:
        self.status = AgentStatus.IDLE
        self._controller = None

    @staticmethod
    async def _forward_abort(source: AbortSignal, controller: AbortController) -> None:
        await source.wait()
        controller.abort(source.reason)

    async def run(self, run_options: AgentRunOptions | MessageContent) -> AgentRunResult:
        """Run to completion; failures are reported in the result, not raised."""
        if not isinstance(run_options, AgentRunOptions):
            run_options = AgentRunOptions(input=run_options)
        controller = self._begin()
        try:
            return await self._execute(run_options, controller)
        finally:
            self._end()

    async def ask(self, question: MessageContent) -> str:
        """Run to completion and return the final answer text."""
        result = await self.run(AgentRunOptions(input=question))
        return result.content

    async def stream(
        self, run_options: AgentRunOptions | MessageContent
    ) -> AsyncIterator[AgentEvent]:
        """Yield the run's events as they are appended, ending with `agent_run_end`."""
        if not isinstance(run_options, AgentRunOptions):
            run_options = AgentRunOptions(input=run_options, stream=True)
        controller = self._begin()
        queue: asyncio.Queue[AgentEvent] = asyncio.Queue()
        unsubscribe = self.event_stream.subscribe(queue.put_nowait)

        async def runner() -> AgentRunResult:
            try:
                return await self._execute(run_options, controller)
            finally:
                self._end()

        task = asyncio.create_task(runner())
        try:
            while True:
                if queue.empty():
                    if task.done():
                        # The run ended without a final event; surface its failure.
                        await task
                        break
                    getter = asyncio.ensure_future(queue.get())
                    await asyncio.wait(
                        {getter, task}, return_when=asyncio.FIRST_COMPLETED
                    )
                    if not getter.done():
                        getter.cancel()
                        with suppress(asyncio.CancelledError):
                            await getter
                        continue
                    event = getter.result()
                else:
                    event = queue.get_nowait()
                yield event
                if isinstance(event, AgentRunEndEvent):
                    break
            await task
        finally:
            unsubscribe()
            if not task.done():
                controller.abort("stream closed")
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task

    async def _execute(
        self, run_options: AgentRunOptions, controller: AbortController
    ) -> AgentRunResult:
        session_id = run_options.session_id or uuid4().hex
        if run_options.provider or run_options.model:
            current = self._model_override or self._model
            self._pending_override = (
                run_options.provider or current.provider,
                run_options.model or current.id,
            )
        if self.planner is not None:
            self.planner.begin(session_id)

        inputs = [self.event_stream.create_event("user_message", content=run_options.input)]
        if run_options.environment_input is not None:
            inputs.append(
                self.event_stream.create_event(
                    "environment_input",
                    content=run_options.environment_input,
                    description=run_options.environment_description,
                )
            )

        forward: asyncio.Task[None] | None = None
        if run_options.abort_signal is not None:
            forward = asyncio.create_task(
                self._forward_abort(run_options.abort_signal, controller)
            )

        first = len(self.event_stream)
        run_context = RunContext(session_id=session_id)
        try:
            outcome = await self.loop.execute(
                run_context=run_context,
                streaming_mode=run_options.stream,
                abort_signal=controller.signal,
                run_options=run_options.summary(),
                inputs=inputs,
            )
        finally:
            self._pending_override = None
            if forward is not None:
                forward.cancel()
                with suppress(asyncio.CancelledError):
                    await forward

        return AgentRunResult(
            session_id=session_id,
            status=outcome.status,
            iterations=outcome.iterations,
            final_event=outcome.final_event,
            error=outcome.error,
            events=self.event_stream.get_events()[first:],
        )
