"""Cancellable token channel for streamed completions."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Union

logger = logging.getLogger(__name__)

TokenSink = Callable[[str], Union[None, Awaitable[None]]]
DoneSink = Callable[[str], Union[None, Awaitable[None]]]

_END = object()


class _Failure:
    __slots__ = ("exc",)

    def __init__(self, exc: BaseException):
        self.exc = exc


async def _maybe_await(result: Any) -> None:
    if inspect.isawaitable(result):
        await result


class TokenStream:
    """Async iterator of tokens fed by a producer task through a queue.

    The producer starts on construction (a running loop is required). Errors
    raised by the source are re-raised to the consumer after the tokens that
    preceded them. ``cancel()`` stops the producer and ends iteration.

    Usage::

        stream = TokenStream(llm.stream(messages, model))
        async for token in stream:
            ...
    """

    def __init__(self, source: AsyncIterator[str], *, maxsize: int = 0):
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=maxsize)
        self._parts: list[str] = []
        self._finished = False
        self._cancelled = False
        self._task = asyncio.get_running_loop().create_task(self._produce(source))

    async def _produce(self, source: AsyncIterator[str]) -> None:
        try:
            async for token in source:
                await self._queue.put(token)
        except asyncio.CancelledError:
            await self._queue.put(_END)
            raise
        except Exception as e:  # forwarded to the consumer
            await self._queue.put(_Failure(e))
            return
        finally:
            aclose = getattr(source, "aclose", None)
            if aclose is not None:
                try:
                    await aclose()
                except RuntimeError:
                    logger.debug("token source already closing")
        await self._queue.put(_END)

    def __aiter__(self) -> "TokenStream":
        return self

    async def __anext__(self) -> str:
        if self._finished:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _END:
            self._finished = True
            raise StopAsyncIteration
        if isinstance(item, _Failure):
            self._finished = True
            raise item.exc
        self._parts.append(item)
        return item

    @property
    def text(self) -> str:
        """Tokens consumed so far, joined."""
        return "".join(self._parts)

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    async def cancel(self) -> None:
        if self._task.done():
            self._finished = True
            return
        self._cancelled = True
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._finished = True

    async def collect(self) -> str:
        """Drain the remaining tokens and return the full text."""
        async for _ in self:
            pass
        return self.text

    async def pipe(self, on_token: Optional[TokenSink] = None, on_done: Optional[DoneSink] = None) -> str:
        """Deliver each token to ``on_token`` and the full text to ``on_done``.

        Sinks may be plain functions or coroutine functions. ``on_done`` is
        not called when the source fails. A failing ``on_token`` cancels the
        producer before the error propagates.
        """
        try:
            async for token in self:
                if on_token is not None and token != "":
                    await _maybe_await(on_token(token))
        except BaseException:
            await self.cancel()
            raise
        if on_done is not None:
            await _maybe_await(on_done(self.text))
        return self.text
