import asyncio
import logging
from time import perf_counter
from typing import Any, Callable, Sequence

from opentelemetry import trace
from opentelemetry.trace import SpanKind

from mmagent.abort import AbortSignal, race_abort
from mmagent.context import RunContext
from mmagent.engines.base import ToolCallEngine
from mmagent.errors import AgentAbortedError
from mmagent.event_stream import EventStream
from mmagent.events import (
    AgentEvent,
    AgentRunEndEvent,
    AssistantMessageEvent,
    RunError,
    RunStatus,
)
from mmagent.hooks import AgentHooks, run_hook
from mmagent.interface import Record
from mmagent.llm.models import ResolvedModel
from mmagent.reflection import ReflectionService
from mmagent.tools.executor import ITimer
from mmagent.tracing import get_trace_ctx, parent_span

from .llm_processor import LLMProcessor

logger = logging.getLogger(__name__)

type ModelResolver = Callable[[], ResolvedModel]

REFLECTION_NUDGE = (
    "Your previous answer does not complete the task yet: {reason}\n"
    "Continue working on the task, using tools if they help."
)


class RunOutcome(Record):
    status: RunStatus
    iterations: int
    final_event: AssistantMessageEvent | None = None
    error: RunError | None = None
    end_event: AgentRunEndEvent | None = None


class AgentLoop:
    """Iterates model requests until an answer, the iteration cap, an abort or an error."""

    def __init__(
        self,
        event_stream: EventStream,
        llm_processor: LLMProcessor,
        *,
        engine: ToolCallEngine[Any],
        system_prompt: str,
        resolve_model: ModelResolver,
        max_iterations: int,
        hooks: AgentHooks,
        reflection: ReflectionService | None = None,
        tracer: trace.Tracer | None = None,
        timer: ITimer = perf_counter,
    ):
        self._event_stream = event_stream
        self._llm_processor = llm_processor
        self._engine = engine
        self._system_prompt = system_prompt
        self._resolve_model = resolve_model
        self._max_iterations = max_iterations
        self._hooks = hooks
        self._reflection = reflection
        self._tracer = tracer or trace.get_tracer("mmagent.agent")
        self._timer = timer

    async def execute(
        self,
        *,
        run_context: RunContext,
        streaming_mode: bool,
        abort_signal: AbortSignal | None = None,
        run_options: dict[str, Any] | None = None,
        inputs: Sequence[AgentEvent] = (),
    ) -> RunOutcome:
        """Run to completion; `inputs` are appended right after `agent_run_start`."""
        session_id = run_context.session_id
        start = self._timer()
        status: RunStatus = "error"
        final_event: AssistantMessageEvent | None = None
        error: RunError | None = None
        end_event: AgentRunEndEvent | None = None

        with self._tracer.start_as_current_span(
            "agent.run",
            kind=SpanKind.INTERNAL,
            context=get_trace_ctx(),
            attributes={"agent.session_id": session_id},
        ) as span, parent_span(span):
            provider, model_id = self._describe_model()
            self._event_stream.emit(
                "agent_run_start",
                session_id=session_id,
                run_options=run_options or {},
                provider=provider,
                model=model_id,
            )
            for event in inputs:
                self._event_stream.send_event(event)
            try:
                status, final_event = await self._iterate(
                    run_context, streaming_mode, abort_signal
                )
            except AgentAbortedError:
                status = "aborted"
            except asyncio.CancelledError:
                status = "aborted"
                raise
            except Exception as exc:
                logger.exception("Agent run %s failed", session_id)
                status = "error"
                error = RunError.from_exception(exc)
                self._event_stream.emit(
                    "system",
                    level="error",
                    message=error.message,
                    details={"code": error.code},
                )
            finally:
                span.set_attribute("agent.status", status)
                span.set_attribute("agent.iterations", run_context.iteration)
                event = self._event_stream.emit(
                    "agent_run_end",
                    session_id=session_id,
                    iterations=run_context.iteration,
                    elapsed_ms=int((self._timer() - start) * 1000),
                    status=status,
                    successful=status == "completed",
                    error=error,
                )
                assert isinstance(event, AgentRunEndEvent)
                end_event = event

        await run_hook("on_agent_loop_end", self._hooks.on_agent_loop_end(end_event), None)
        return RunOutcome(
            status=status,
            iterations=run_context.iteration,
            final_event=final_event,
            error=error,
            end_event=end_event,
        )

    def _describe_model(self) -> tuple[str | None, str | None]:
        try:
            model = self._resolve_model()
        except Exception:
            # Surfaced as a run error by the first iteration.
            return None, None
        return model.provider, model.id

    async def _iterate(
        self,
        run_context: RunContext,
        streaming_mode: bool,
        abort_signal: AbortSignal | None,
    ) -> tuple[RunStatus, AssistantMessageEvent | None]:
        best_content = ""
        while True:
            if abort_signal is not None and abort_signal.aborted:
                return "aborted", None

            run_context.iteration += 1
            iteration = run_context.iteration
            # Resolved every iteration so a session-level model override applies mid-run.
            model = self._resolve_model()
            with self._tracer.start_as_current_span(
                "agent.iteration",
                kind=SpanKind.INTERNAL,
                context=get_trace_ctx(),
                attributes={"agent.iteration": iteration, "llm.model": model.id},
            ) as span, parent_span(span):
                outcome = await self._llm_processor.process_request(
                    model=model,
                    system_prompt=self._system_prompt,
                    engine=self._engine,
                    run_context=run_context,
                    streaming_mode=streaming_mode,
                    abort_signal=abort_signal,
                )

            if outcome.aborted:
                return "aborted", None
            response = outcome.response
            if response is not None and response.content:
                best_content = response.content

            if outcome.has_tool_calls:
                if iteration >= self._max_iterations:
                    logger.warning(
                        "Reached max iterations (%d) while tools were still requested",
                        self._max_iterations,
                    )
                    event = self._event_stream.emit(
                        "assistant_message",
                        content=best_content,
                        finish_reason="max_iterations",
                    )
                    assert isinstance(event, AssistantMessageEvent)
                    return "max_iterations", event
                continue

            content = response.content if response is not None else ""
            if self._reflection is not None and iteration < self._max_iterations:
                verdict = await race_abort(
                    self._reflection.evaluate(model, content), abort_signal
                )
                if not verdict.finished:
                    logger.info("Reflection asked to continue: %s", verdict.reason)
                    self._event_stream.emit(
                        "environment_input",
                        content=REFLECTION_NUDGE.format(reason=verdict.reason),
                        description="reflection",
                    )
                    continue

            if outcome.assistant_event is None:
                logger.warning(
                    "Iteration %d ended with an empty response and no tool calls", iteration
                )
            return "completed", outcome.assistant_event
