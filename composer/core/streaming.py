"""
Outward event stream and cooperative cancellation for composition runs.

Every run gets one `CancellationToken` and one `EventEmitter`; both travel to
the steps inside the LangGraph run config, never through module globals.
"""

import asyncio
import inspect
import logging
import time
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, TypeVar, Union

from pydantic import BaseModel, Field

from composer.core.errors import RunCancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")

# ==========================================
# Event Schema
# ==========================================


class EventType(str, Enum):
    START = "start"
    ACTIVITY = "activity"
    TOOL_START = "tool_start"
    TOOL_END = "tool_end"
    TOOL_ERROR = "tool_error"
    DRAFT_STREAM_STARTED = "draft_stream_started"
    DRAFT_CHUNK = "draft_chunk"
    DRAFT_STREAM_FINISHED = "draft_stream_finished"
    NEEDS_INPUT = "needs_input"
    FINAL = "final"
    ERROR = "error"


TERMINAL_EVENTS = {EventType.FINAL, EventType.NEEDS_INPUT, EventType.ERROR}


class StreamEvent(BaseModel):
    type: EventType
    conversation_id: Optional[str] = None
    seq: int = 0
    data: Dict[str, Any] = Field(default_factory=dict)
    created_at: float = Field(default_factory=time.time)


EventSink = Callable[[StreamEvent], Union[None, Awaitable[None]]]

# ==========================================
# Cancellation
# ==========================================

_DONE = object()


async def _next_or_done(iterator: AsyncIterator[T]):
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return _DONE


class CancellationToken:
    """
    Single cancellation signal for one run.
    Client disconnects and explicit aborts both end up calling `cancel()`.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        logger.info(f"Run cancelled: {reason}")

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise RunCancelled(self.reason or "cancelled")

    async def wait(self) -> None:
        await self._event.wait()

    async def run(self, awaitable: Awaitable[T]) -> T:
        """
        Await `awaitable` unless the token fires first.

        On cancellation the operation is cancelled and `RunCancelled` is raised.
        The operation has always settled by the time this returns or raises,
        including when the calling task itself is cancelled.
        """
        if self.cancelled:
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            elif asyncio.isfuture(awaitable):
                awaitable.cancel()
            self.raise_if_cancelled()

        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            raise
        finally:
            waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise RunCancelled(self.reason or "cancelled")

    async def iterate(self, source: AsyncIterator[T], timeout: Optional[float] = None) -> AsyncIterator[T]:
        """
        Yield items from `source`, racing every fragment against cancellation.
        With `timeout`, waiting longer than that for one fragment raises `asyncio.TimeoutError`.
        """
        iterator = source.__aiter__()
        try:
            while True:
                self.raise_if_cancelled()
                item = await self.run(asyncio.wait_for(_next_or_done(iterator), timeout))
                if item is _DONE:
                    return
                yield item
        finally:
            # run() settles every fetch before it returns or raises, so the source is idle here
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()


# ==========================================
# Emitter
# ==========================================


class EventEmitter:
    """
    Delivers typed events to a caller-supplied sink, in order.

    - Nothing is delivered after a terminal event (`final`, `needs_input` or `error`).
    - Nothing is delivered once the run's token is cancelled.
    - A failing sink is logged, never allowed to break the run.
    """

    def __init__(
        self,
        sink: Optional[EventSink] = None,
        token: Optional[CancellationToken] = None,
        conversation_id: Optional[str] = None,
    ):
        self._sink = sink
        self._token = token
        self._lock = asyncio.Lock()
        self._seq = 0
        self.conversation_id = conversation_id
        self.closed = False

    @property
    def enabled(self) -> bool:
        return self._sink is not None

    async def emit(self, event_type: EventType, **data: Any) -> bool:
        if self._sink is None:
            return False

        async with self._lock:
            if self.closed or (self._token is not None and self._token.cancelled):
                return False

            self._seq += 1
            event = StreamEvent(type=event_type, conversation_id=self.conversation_id, seq=self._seq, data=data)
            if event_type in TERMINAL_EVENTS:
                self.closed = True

            try:
                result = self._sink(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning(f"Event sink failed on '{event_type.value}': {e}", exc_info=True)
            return True


# ==========================================
# Push Stream
# ==========================================

_CLOSED = object()


class EventStream:
    """
    Queue-backed push stream for outer transports (SSE).

    `events(runner)` starts `runner(sink, token)` in the background and yields
    its events as they arrive. Leaving the iteration early (client gone)
    cancels the token.
    """

    def __init__(self, token: Optional[CancellationToken] = None):
        self.token = token or CancellationToken()
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue()

    async def sink(self, event: StreamEvent) -> None:
        await self._queue.put(event)

    async def _drive(self, runner: Callable[[EventSink, CancellationToken], Awaitable[Any]]) -> Any:
        try:
            return await runner(self.sink, self.token)
        finally:
            self._queue.put_nowait(_CLOSED)

    async def events(
        self, runner: Callable[[EventSink, CancellationToken], Awaitable[Any]]
    ) -> AsyncIterator[StreamEvent]:
        task = asyncio.create_task(self._drive(runner))
        try:
            while True:
                item = await self._queue.get()
                if item is _CLOSED:
                    break
                yield item
        finally:
            if not task.done():
                self.token.cancel("stream closed by client")
            await asyncio.gather(task, return_exceptions=True)

        # Surface errors the runner raised synchronously (before any event)
        exc = task.exception()
        if exc is not None:
            raise exc
