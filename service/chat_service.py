# service/chat_service.py
import asyncio
from contextlib import suppress
from typing import AsyncIterator, Awaitable, Callable, Optional
from core.entities import PipelineRequest
from core.rag_pipeline import RagPipeline
from core.streaming import EventChannel, sse_frame
import logging

logger = logging.getLogger(__name__)

DisconnectProbe = Callable[[], Awaitable[bool]]


class ChatService:
    def __init__(self, pipeline: RagPipeline, poll_interval: float = 0.5) -> None:
        self._pipeline = pipeline
        self._poll_interval = poll_interval

    async def _watch_disconnect(
        self, channel: EventChannel, is_disconnected: DisconnectProbe
    ) -> None:
        while not channel.closed:
            if await is_disconnected():
                logger.info("chat.client.disconnected")
                channel.token.cancel()
                return
            await asyncio.sleep(self._poll_interval)

    async def stream_chat(
        self,
        request: PipelineRequest,
        is_disconnected: Optional[DisconnectProbe] = None,
    ) -> AsyncIterator[bytes]:
        """
        Run the pipeline as its own task feeding one EventChannel and relay
        each event as an SSE frame, in emission order.
          - client disconnect (polled) -> cancellation token is set
          - consumer stops iterating   -> token set + pipeline task cancelled
        """
        channel = EventChannel()
        task = asyncio.create_task(self._pipeline.run(request, channel))
        watcher = (
            asyncio.create_task(self._watch_disconnect(channel, is_disconnected))
            if is_disconnected is not None
            else None
        )
        try:
            async for event in channel:
                yield sse_frame(event)
        finally:
            if watcher is not None:
                watcher.cancel()
            if not task.done():
                channel.token.cancel()
                task.cancel()
            with suppress(asyncio.CancelledError):
                await task
            logger.info("chat.stream.closed user=%s", request.user_id)
