from __future__ import annotations

import asyncio
import logging
from contextlib import aclosing
from typing import AsyncIterator, Optional, Set

from app.core.errors import GENERIC_STREAM_ERROR
from app.core.events import PipelineEvent
from app.core.pipeline import PipelineState, TurnPipeline

logger = logging.getLogger(__name__)

_background_tasks: Set[asyncio.Task] = set()


class PipelineRun:
    """Drives a pipeline in a background task.

    Every event goes to the registry sink. While a live consumer is attached
    it also goes through a bounded queue; once the consumer detaches the
    producer keeps running so the assistant turn is still persisted.
    """

    def __init__(self, pipeline: TurnPipeline, sink, *, queue_size: int, timeout_sec: float) -> None:
        self.pipeline = pipeline
        self.sink = sink
        self.timeout_sec = timeout_sec
        self._queue: asyncio.Queue[Optional[PipelineEvent]] = asyncio.Queue(maxsize=queue_size)
        self._attached = True
        self.task: Optional[asyncio.Task] = None

    @property
    def attached(self) -> bool:
        return self._attached

    def start(self) -> "PipelineRun":
        self.task = asyncio.create_task(self._produce())
        _background_tasks.add(self.task)
        self.task.add_done_callback(_background_tasks.discard)
        return self

    async def _drive(self) -> None:
        async with aclosing(self.pipeline.run()) as events:
            async for event in events:
                await self._publish(event)

    async def _produce(self) -> None:
        try:
            await asyncio.wait_for(self._drive(), timeout=self.timeout_sec)
        except asyncio.TimeoutError:
            logger.warning("chat %s pipeline timed out after %ss", self.pipeline.request.chat_id, self.timeout_sec)
            await self._abort("timeout")
        except Exception:
            logger.exception("chat %s pipeline crashed", self.pipeline.request.chat_id)
            await self._abort("internal")
        finally:
            await self.sink.close()
            await self._offer(None)

    async def _abort(self, reason: str) -> None:
        if self.pipeline.state is not PipelineState.FAILED:
            self.pipeline.fail(reason)
        await self._publish(PipelineEvent.error(GENERIC_STREAM_ERROR))
        await self._publish(PipelineEvent.done("error"))

    async def _publish(self, event: PipelineEvent) -> None:
        await self.sink.write(event)
        await self._offer(event)

    async def _offer(self, item: Optional[PipelineEvent]) -> None:
        if not self._attached:
            return
        await self._queue.put(item)

    def detach(self) -> None:
        if not self._attached:
            return
        self._attached = False
        logger.info("chat %s live consumer detached", self.pipeline.request.chat_id)
        while not self._queue.empty():
            self._queue.get_nowait()

    async def live(self) -> AsyncIterator[PipelineEvent]:
        try:
            while True:
                item = await self._queue.get()
                if item is None:
                    return
                yield item
        finally:
            self.detach()
