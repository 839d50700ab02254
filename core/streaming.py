# core/streaming.py
import asyncio
import json
from typing import AsyncIterator, Final, Optional
from model.events import EVENT_PHASE, Event
import logging
from util.errors import PipelineCancelled

LINE_SEP: Final[str] = "\n"
logger = logging.getLogger(__name__)


def sse_frame(event: Event) -> bytes:
    """Render one server-sent event: `event: <tag>` + `data: <json>` + blank line."""
    data = json.dumps(event.payload(), separators=(",", ":"), ensure_ascii=False)
    return f"event: {event.event.value}{LINE_SEP}data: {data}{LINE_SEP}{LINE_SEP}".encode(
        "utf-8"
    )


class CancellationToken:
    """Explicit stop signal set by the transport when the client goes away."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise PipelineCancelled()

    async def wait(self) -> None:
        await self._event.wait()


class EventChannel:
    """
    Single-producer, ordered event channel.

    The producer calls `emit()` and finally `close()`; one consumer iterates
    with `async for`. Events come out exactly in emission order. Emitting a
    type that belongs earlier in the stream than the last one emitted
    (thinking < response < source < done) is rejected.
    """

    _CLOSED: Final = object()

    def __init__(self, token: Optional[CancellationToken] = None) -> None:
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self._phase = 0
        self.token = token or CancellationToken()

    @property
    def closed(self) -> bool:
        return self._closed

    async def emit(self, event: Event) -> None:
        if self._closed:
            raise RuntimeError("emit on closed channel")
        phase = EVENT_PHASE[event.event]
        if phase < self._phase:
            raise ValueError(
                f"out-of-order event {event.event.value} after phase {self._phase}"
            )
        self._phase = phase
        await self._queue.put(event)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(self._CLOSED)

    def __aiter__(self) -> AsyncIterator[Event]:
        return self._drain()

    async def _drain(self) -> AsyncIterator[Event]:
        while True:
            item = await self._queue.get()
            if item is self._CLOSED:
                return
            yield item
