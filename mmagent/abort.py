"""Cooperative cancellation shared by one agent run."""

import asyncio
from contextlib import suppress
from typing import AsyncIterator, Awaitable

from mmagent.errors import AgentAbortedError


class AbortSignal:
    """Read side of an abort: checked at every suspension point of a run."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def raise_if_aborted(self) -> None:
        if self.aborted:
            raise AgentAbortedError(self._reason or "aborted")

    async def wait(self) -> None:
        await self._event.wait()

    def _fire(self, reason: str | None) -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()


class AbortController:
    def __init__(self) -> None:
        self.signal = AbortSignal()

    def abort(self, reason: str | None = None) -> None:
        self.signal._fire(reason)


async def race_abort[T](awaitable: Awaitable[T], signal: AbortSignal | None) -> T:
    """Await `awaitable`, raising `AgentAbortedError` as soon as `signal` fires.

    The pending awaitable is cancelled when the abort wins.
    """
    if signal is None:
        return await awaitable
    signal.raise_if_aborted()

    work = asyncio.ensure_future(awaitable)
    stop = asyncio.ensure_future(signal.wait())
    try:
        await asyncio.wait({work, stop}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        if not stop.done():
            stop.cancel()
            with suppress(asyncio.CancelledError):
                await stop

    if work.done():
        return work.result()

    work.cancel()
    with suppress(asyncio.CancelledError, StopAsyncIteration):
        await work
    raise AgentAbortedError(signal.reason or "aborted")


async def iterate_until_abort[T](
    stream: AsyncIterator[T], signal: AbortSignal | None
) -> AsyncIterator[T]:
    """Yield items of `stream`, stopping with `AgentAbortedError` once aborted."""
    while True:
        try:
            item = await race_abort(anext(stream), signal)
        except StopAsyncIteration:
            return
        yield item
