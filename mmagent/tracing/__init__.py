from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator

from opentelemetry.context import Context
from opentelemetry.trace import Span, set_span_in_context

_TRACE_CTX: ContextVar[Context | None] = ContextVar("mmagent_trace_ctx", default=None)


def get_trace_ctx() -> Context | None:
    return _TRACE_CTX.get()


@contextmanager
def parent_span(span: Span) -> Iterator[Context]:
    """Make `span` the parent of spans opened by tool and llm calls below it.

    Tool calls run in their own asyncio tasks, so the active span is carried
    explicitly through a context variable rather than relying on the implicit
    otel context alone.
    """
    ctx = set_span_in_context(span, get_trace_ctx())
    token = _TRACE_CTX.set(ctx)
    try:
        yield ctx
    finally:
        _TRACE_CTX.reset(token)
