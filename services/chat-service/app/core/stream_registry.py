from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, AsyncIterator, Optional

import redis.asyncio as redis_async

from app.core.events import PipelineEvent
from app.core.metrics import metrics
from app.core.settings import SETTINGS, Settings

logger = logging.getLogger(__name__)

STATE_LIVE = "live"
STATE_DONE = "done"


def events_key(stream_id: str) -> str:
    return f"chat:stream:{stream_id}:events"


def state_key(stream_id: str) -> str:
    return f"chat:stream:{stream_id}:state"


class RegistryState(str, Enum):
    UNINITIALIZED = "uninitialized"
    AVAILABLE = "available"
    UNAVAILABLE = "unavailable"
    CLOSED = "closed"


class PassthroughSink:
    durable = False

    def __init__(self, stream_id: str) -> None:
        self.stream_id = stream_id

    async def write(self, event: PipelineEvent) -> None:
        return None

    async def close(self) -> None:
        return None


class RedisStreamSink:
    """Appends events to a per-stream redis list.

    Write errors are logged and stop further writes; the live stream keeps
    going without durability.
    """

    durable = True

    def __init__(self, client: Any, stream_id: str, live_ttl_sec: int, done_ttl_sec: int) -> None:
        self.stream_id = stream_id
        self._client = client
        self._live_ttl_sec = live_ttl_sec
        self._done_ttl_sec = done_ttl_sec
        self._broken = False

    async def open(self) -> None:
        await self._client.delete(events_key(self.stream_id))
        await self._client.set(state_key(self.stream_id), STATE_LIVE, ex=self._live_ttl_sec)

    async def write(self, event: PipelineEvent) -> None:
        if self._broken:
            return
        key = events_key(self.stream_id)
        try:
            await self._client.rpush(key, event.to_json())
            await self._client.expire(key, self._live_ttl_sec)
        except Exception as exc:
            self._broken = True
            logger.warning("stream %s sink write failed, continuing live only: %s", self.stream_id, exc)
            metrics.inc("chat_stream_sink_errors_total")

    async def close(self) -> None:
        if self._broken:
            await self._discard()
            return
        try:
            await self._client.set(state_key(self.stream_id), STATE_DONE, ex=self._done_ttl_sec)
            await self._client.expire(events_key(self.stream_id), self._done_ttl_sec)
        except Exception as exc:
            logger.warning("stream %s sink close failed: %s", self.stream_id, exc)
            metrics.inc("chat_stream_sink_errors_total")

    async def _discard(self) -> None:
        # a partial stream must not be replayed; readers fall back to the ledger
        try:
            await self._client.delete(state_key(self.stream_id), events_key(self.stream_id))
        except Exception as exc:
            logger.warning("stream %s discard failed: %s", self.stream_id, exc)


class StreamRegistry:
    def __init__(
        self,
        redis_url: str,
        *,
        ttl_sec: int,
        live_ttl_sec: int,
        poll_ms: int,
        client: Any = None,
    ) -> None:
        self._redis_url = redis_url
        self._ttl_sec = ttl_sec
        self._live_ttl_sec = live_ttl_sec
        self._poll_sec = poll_ms / 1000.0
        self._client = client
        self._lock = asyncio.Lock()
        self.state = RegistryState.UNINITIALIZED

    @property
    def available(self) -> bool:
        return self.state is RegistryState.AVAILABLE

    async def init(self) -> RegistryState:
        async with self._lock:
            if self.state is not RegistryState.UNINITIALIZED:
                return self.state
            if self._client is None and not self._redis_url:
                logger.info("Resumable streams are disabled due to missing REDIS_URL")
                self.state = RegistryState.UNAVAILABLE
                return self.state
            if self._client is None:
                self._client = redis_async.from_url(self._redis_url, decode_responses=True)
            try:
                await self._client.ping()
            except Exception as exc:
                logger.warning("Resumable streams are disabled, redis ping failed: %s", exc)
                await self._drop_client()
                self.state = RegistryState.UNAVAILABLE
                return self.state
            logger.info("Resumable stream registry connected")
            self.state = RegistryState.AVAILABLE
            return self.state

    async def register(self, stream_id: str):
        if not self.available:
            return PassthroughSink(stream_id)
        sink = RedisStreamSink(self._client, stream_id, self._live_ttl_sec, self._ttl_sec)
        try:
            await sink.open()
        except Exception as exc:
            logger.warning("stream %s register failed, continuing live only: %s", stream_id, exc)
            metrics.inc("chat_stream_sink_errors_total")
            return PassthroughSink(stream_id)
        return sink

    async def attach(self, stream_id: str) -> Optional[AsyncIterator[PipelineEvent]]:
        """Return a replay-then-follow iterator, or None when nothing is stored."""
        if not self.available:
            return None
        try:
            stored = await self._client.get(state_key(stream_id))
        except Exception as exc:
            logger.warning("stream %s attach failed, treating as expired: %s", stream_id, exc)
            metrics.inc("chat_stream_attach_errors_total")
            return None
        if stored is None:
            return None
        return self._follow(stream_id)

    async def _follow(self, stream_id: str) -> AsyncIterator[PipelineEvent]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._live_ttl_sec
        cursor = 0
        while True:
            # read state first so a finished stream is fully drained below
            try:
                finished = await self._client.get(state_key(stream_id)) != STATE_LIVE
                items = await self._client.lrange(events_key(stream_id), cursor, -1)
            except Exception as exc:
                logger.warning("stream %s follow failed after %s events: %s", stream_id, cursor, exc)
                metrics.inc("chat_stream_attach_errors_total")
                return
            for raw in items:
                cursor += 1
                event = PipelineEvent.from_json(raw)
                yield event
                if event.terminal:
                    return
            if finished or loop.time() >= deadline:
                return
            await asyncio.sleep(self._poll_sec)

    async def close(self) -> None:
        async with self._lock:
            await self._drop_client()
            self.state = RegistryState.CLOSED

    async def _drop_client(self) -> None:
        client, self._client = self._client, None
        if client is None:
            return
        try:
            await client.aclose()
        except Exception as exc:
            logger.warning("redis close failed: %s", exc)


_registry: Optional[StreamRegistry] = None


def build_stream_registry(settings: Settings, client: Any = None) -> StreamRegistry:
    return StreamRegistry(
        settings.redis_url,
        ttl_sec=settings.stream_ttl_sec,
        live_ttl_sec=int(settings.request_timeout_sec) + settings.resume_window_sec,
        poll_ms=settings.stream_poll_ms,
        client=client,
    )


async def get_stream_registry() -> StreamRegistry:
    global _registry
    if _registry is None:
        _registry = build_stream_registry(SETTINGS)
    await _registry.init()
    return _registry


async def close_stream_registry() -> None:
    global _registry
    registry, _registry = _registry, None
    if registry is not None:
        await registry.close()
