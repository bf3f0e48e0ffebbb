from time import perf_counter
from typing import Any, Callable

from ididi import Graph
from opentelemetry import trace
from opentelemetry.trace import SpanKind

from mmagent.context import RunContext
from mmagent.errors import MMAgentConfigurationError
from mmagent.llm.models import MessageContent
from mmagent.tracing import get_trace_ctx

from .tool import Tool


class ToolExecutor:
    """Registry of tools plus dependency-injected invocation."""

    def __init__(
        self,
        graph: Graph,
        tools: list[Tool[..., Any]],
        tracer: trace.Tracer | None = None,
    ):
        self.graph = graph
        self.tools: dict[str, Tool[..., Any]] = {}
        for t in tools:
            self.add_tool(t)
        self._tracer = tracer or trace.get_tracer("mmagent.tools")

    def add_tool(self, t: Tool[..., Any]) -> None:
        if t.name in self.tools:
            raise MMAgentConfigurationError(f"Duplicate tool name {t.name!r}")
        self.tools[t.name] = t

    async def resolve_tool(self, t: Tool[..., Any], /, **params: Any) -> Any:
        dep_params = {
            dname: await self.graph.aresolve(dep)
            for dname, dep in t.dep_nodes.items()
        }
        result = t(**params, **dep_params)
        return await result if t.is_async else result

    async def execute_tool(
        self,
        t: Tool[..., Any],
        arguments: dict[str, Any],
        *,
        call_id: str,
        run_context: RunContext,
    ) -> MessageContent:
        limit = t.metadata.max_calls_per_run
        if limit is not None:
            if run_context.tool_call_counts.get(t.name, 0) >= limit:
                return (
                    f"the tool {t.name} exceeds its max calls in this run, "
                    "do not call it again"
                )
            run_context.tool_call_counts[t.name] = (
                run_context.tool_call_counts.get(t.name, 0) + 1
            )

        with self._tracer.start_as_current_span(
            f"tool.{t.name}",
            kind=SpanKind.INTERNAL,
            record_exception=True,
            set_status_on_exception=True,
            context=get_trace_ctx(),
            attributes={
                "tool.call_id": call_id,
                "tool.session_id": run_context.session_id,
                "tool.dep_count": len(t.dep_nodes),
            },
        ):
            result = await self.resolve_tool(t, **arguments)
            return t.encode_result(result)


class ILogger:
    def info(self, msg: str, /, **kwargs: Any) -> None: ...

    def success(self, msg: str, /, **kwargs: Any) -> None: ...

    def exception(self, msg: str, /, **kwargs: Any) -> None: ...


type ITimer = Callable[[], float]


class LoggingToolExecutor(ToolExecutor):
    def __init__(
        self,
        graph: Graph,
        tools: list[Tool[..., Any]],
        logger: ILogger,
        timer: ITimer = perf_counter,
        tracer: trace.Tracer | None = None,
    ) -> None:
        super().__init__(graph, tools, tracer=tracer)
        self.logger = logger
        self.timer = timer

    async def execute_tool(
        self,
        t: Tool[..., Any],
        arguments: dict[str, Any],
        *,
        call_id: str,
        run_context: RunContext,
    ) -> MessageContent:
        self.logger.info(f"Tool {t.name} starting (call_id={call_id}) with {arguments}")
        start = self.timer()
        try:
            result = await super().execute_tool(
                t, arguments, call_id=call_id, run_context=run_context
            )
        except Exception:
            self.logger.exception(
                f"Tool {t.name} failed after {self.timer() - start:.2f}s"
            )
            raise
        self.logger.success(f"Tool {t.name} finished in {self.timer() - start:.2f}s")
        return result
