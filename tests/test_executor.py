import httpx
import pytest
from ididi import Graph, use
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from mmagent.context import RunContext
from mmagent.errors import MMAgentConfigurationError
from mmagent.tools import Annotated, LoggingToolExecutor, ToolExecutor, param, tool


class FakeLogger:
    def __init__(self):
        self.info_messages: list[str] = []
        self.success_messages: list[str] = []
        self.exception_messages: list[str] = []

    def info(self, msg: str, /, **_: object) -> None:
        self.info_messages.append(msg)

    def success(self, msg: str, /, **_: object) -> None:
        self.success_messages.append(msg)

    def exception(self, msg: str, /, **_: object) -> None:
        self.exception_messages.append(msg)


class StepTimer:
    def __init__(self, *ticks: float):
        self._ticks = iter(ticks)

    def __call__(self) -> float:
        return next(self._ticks)


class UserRepo:
    def __init__(self, label: str):
        self.label = label


def provide_user_repo() -> UserRepo:
    return UserRepo("primary")


@tool
def describe_user(
    repo: Annotated[UserRepo, use(provide_user_repo)],
    user_id: Annotated[int, param("User identifier")],
) -> str:
    """Describe a user."""
    return f"{repo.label}:{user_id}"


@tool
async def async_increment(value: Annotated[int, param("Value to increment")]) -> int:
    """Increment a value."""
    return value + 1


@tool
def unreliable_tool(value: Annotated[int, param("Value that triggers failure")]) -> int:
    """Always fails."""
    raise RuntimeError("expected failure")


def build_async_client() -> httpx.AsyncClient:
    return httpx.AsyncClient()


@tool
async def identify_httpx_client(
    client: Annotated[httpx.AsyncClient, use(build_async_client)],
) -> str:
    """Name the injected client class."""
    try:
        return client.__class__.__name__
    finally:
        await client.aclose()


def run_context() -> RunContext:
    return RunContext(session_id="session-1")


@pytest.mark.anyio
async def test_tool_executor_executes_tool_with_dep_graph() -> None:
    executor = ToolExecutor(Graph(), [describe_user])

    result = await executor.execute_tool(
        describe_user, {"user_id": 7}, call_id="call-123", run_context=run_context()
    )

    assert result == "primary:7"


@pytest.mark.anyio
async def test_tool_executor_awaits_async_tool_results() -> None:
    executor = ToolExecutor(Graph(), [async_increment])

    result = await executor.execute_tool(
        async_increment, {"value": 2}, call_id="call-async", run_context=run_context()
    )

    assert result == "3"


@pytest.mark.anyio
async def test_tool_executor_resolves_httpx_async_client() -> None:
    executor = ToolExecutor(Graph(), [identify_httpx_client])

    result = await executor.execute_tool(
        identify_httpx_client, {}, call_id="req-httpx", run_context=run_context()
    )

    assert result == "AsyncClient"


def test_duplicate_tool_names_are_rejected() -> None:
    with pytest.raises(MMAgentConfigurationError, match="Duplicate tool name"):
        ToolExecutor(Graph(), [async_increment, async_increment])


@pytest.mark.anyio
async def test_max_calls_per_run_counts_per_run_context() -> None:
    @tool(max_calls_per_run=2)
    def limited() -> str:
        """Limited."""
        return "ok"

    executor = ToolExecutor(Graph(), [limited])
    first_run = run_context()

    results = [
        await executor.execute_tool(limited, {}, call_id=f"c{i}", run_context=first_run)
        for i in range(3)
    ]

    assert results[:2] == ["ok", "ok"]
    assert "exceeds its max calls" in str(results[2])
    fresh = await executor.execute_tool(limited, {}, call_id="c4", run_context=run_context())
    assert fresh == "ok"


@pytest.mark.anyio
async def test_logging_tool_executor_logs_successful_calls() -> None:
    logger = FakeLogger()
    executor = LoggingToolExecutor(
        Graph(), [async_increment], logger, timer=StepTimer(10.0, 10.5, 10.5)
    )

    result = await executor.execute_tool(
        async_increment, {"value": 2}, call_id="req-success", run_context=run_context()
    )

    assert result == "3"
    assert logger.info_messages == [
        "Tool async_increment starting (call_id=req-success) with {'value': 2}"
    ]
    assert logger.success_messages == ["Tool async_increment finished in 0.50s"]
    assert logger.exception_messages == []


@pytest.mark.anyio
async def test_logging_tool_executor_logs_and_reraises_failures() -> None:
    logger = FakeLogger()
    executor = LoggingToolExecutor(
        Graph(), [unreliable_tool], logger, timer=StepTimer(5.0, 6.25)
    )

    with pytest.raises(RuntimeError, match="expected failure"):
        await executor.execute_tool(
            unreliable_tool, {"value": 1}, call_id="req-fail", run_context=run_context()
        )

    assert logger.info_messages == [
        "Tool unreliable_tool starting (call_id=req-fail) with {'value': 1}"
    ]
    assert logger.exception_messages == ["Tool unreliable_tool failed after 1.25s"]
    assert logger.success_messages == []


@pytest.mark.anyio
async def test_tool_span_records_call_attributes_and_errors() -> None:
    exporter = InMemorySpanExporter()
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    executor = ToolExecutor(
        Graph(), [describe_user, unreliable_tool], tracer=provider.get_tracer("test")
    )

    await executor.execute_tool(
        describe_user, {"user_id": 1}, call_id="ok-call", run_context=run_context()
    )
    with pytest.raises(RuntimeError):
        await executor.execute_tool(
            unreliable_tool, {"value": 1}, call_id="bad-call", run_context=run_context()
        )

    ok_span, bad_span = exporter.get_finished_spans()
    assert ok_span.name == "tool.describe_user"
    assert ok_span.attributes is not None
    assert ok_span.attributes["tool.call_id"] == "ok-call"
    assert ok_span.attributes["tool.dep_count"] == 1
    assert bad_span.name == "tool.unreliable_tool"
    assert not bad_span.status.is_ok
