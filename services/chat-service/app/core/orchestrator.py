from __future__ import annotations

import logging
from datetime import datetime
from typing import AsyncIterator, List, Optional

from app.core.auth import Session, max_turns_per_day
from app.core.errors import ChatError
from app.core.events import PipelineEvent
from app.core.ledger import MessageLedger
from app.core.llm import TITLE_MODEL_ID, GenerationBackend, model_for
from app.core.metrics import metrics
from app.core.models import Chat, StreamHandle, Turn, generate_id, now_utc
from app.core.pipeline import TurnPipeline, TurnRequest
from app.core.prompts import RequestHints, generate_title, system_prompt
from app.core.rewrite import QueryRewriter
from app.core.runner import PipelineRun
from app.core.search import SearchProvider
from app.core.settings import Settings
from app.core.stream_registry import StreamRegistry, get_stream_registry
from app.core.tools import Tool

logger = logging.getLogger(__name__)

QUOTA_WINDOW_HOURS = 24


async def _no_events() -> AsyncIterator[PipelineEvent]:
    return
    yield


async def _single(event: PipelineEvent) -> AsyncIterator[PipelineEvent]:
    yield event


class ChatOrchestrator:
    def __init__(
        self,
        ledger: MessageLedger,
        backend: GenerationBackend,
        search_provider: SearchProvider,
        settings: Settings,
        *,
        registry: Optional[StreamRegistry] = None,
        tools: Optional[List[Tool]] = None,
    ) -> None:
        self.ledger = ledger
        self.backend = backend
        self.search_provider = search_provider
        self.settings = settings
        self.registry = registry
        self.tools = tools or []

    async def _get_registry(self) -> StreamRegistry:
        if self.registry is not None:
            await self.registry.init()
            return self.registry
        return await get_stream_registry()

    async def start_turn(
        self,
        *,
        chat_id: str,
        message: Turn,
        selected_model: str,
        visibility: str,
        search_category: Optional[str],
        session: Optional[Session],
        hints: Optional[RequestHints] = None,
    ) -> PipelineRun:
        """Admit a new user turn and start generating the reply.

        Checks run in a fixed order (session, quota, ownership) and raise
        ChatError before anything is streamed. The user turn and the stream
        handle are stored before the pipeline starts.
        """
        if session is None:
            raise ChatError("unauthorized:chat")

        limit = max_turns_per_day(self.settings, session.user_type)
        used = await self.ledger.count_turns_by_user(session.user_id, QUOTA_WINDOW_HOURS)
        if used >= limit:
            logger.info("user %s reached daily turn limit %s", session.user_id, limit)
            raise ChatError("rate_limit:chat")

        chat = await self.ledger.get_chat(chat_id)
        if chat is None:
            title = await generate_title(
                self.backend,
                model_for(self.settings, TITLE_MODEL_ID),
                message.text(),
            )
            chat = await self.ledger.create_chat(chat_id, session.user_id, title, visibility)
        if chat.user_id != session.user_id:
            raise ChatError("forbidden:chat")

        history = [turn for turn in await self.ledger.get_turns(chat_id) if turn.id != message.id]
        await self.ledger.append_turns([message])

        stream_id = generate_id()
        await self.ledger.create_stream_handle(StreamHandle(stream_id=stream_id, chat_id=chat_id, created_at=now_utc()))

        request = TurnRequest(
            chat_id=chat_id,
            user_id=session.user_id,
            message=message,
            history=history,
            selected_model=selected_model,
            system_prompt=system_prompt(selected_model, hints or RequestHints()),
            search_category=search_category,
        )
        pipeline = TurnPipeline(
            request,
            backend=self.backend,
            rewriter=QueryRewriter(self.backend, model_for(self.settings, selected_model)),
            search_provider=self.search_provider,
            ledger=self.ledger,
            settings=self.settings,
            tools=self.tools,
        )
        registry = await self._get_registry()
        sink = await registry.register(stream_id)
        logger.info(
            "chat %s stream %s started path=%s durable=%s",
            chat_id,
            stream_id,
            pipeline.strategy.path,
            sink.durable,
        )
        return PipelineRun(
            pipeline,
            sink,
            queue_size=self.settings.stream_queue_size,
            timeout_sec=self.settings.request_timeout_sec,
        ).start()

    async def resume(
        self,
        chat_id: Optional[str],
        session: Optional[Session],
        requested_at: Optional[datetime] = None,
    ) -> Optional[AsyncIterator[PipelineEvent]]:
        """Reattach to the latest stream of a chat.

        Returns None when resumable streams are unavailable, otherwise an
        event iterator that may be empty.
        """
        registry = await self._get_registry()
        if not registry.available:
            metrics.inc("chat_resume_total", {"result": "unavailable"})
            return None
        if not chat_id:
            raise ChatError("bad_request:api")
        if session is None:
            raise ChatError("unauthorized:chat")

        chat = await self.ledger.get_chat(chat_id)
        if chat is None:
            raise ChatError("not_found:chat")
        if chat.visibility == "private" and chat.user_id != session.user_id:
            raise ChatError("forbidden:chat")

        stream_ids = await self.ledger.get_stream_ids(chat_id)
        if not stream_ids:
            raise ChatError("not_found:stream")

        events = await registry.attach(stream_ids[-1])
        if events is not None:
            metrics.inc("chat_resume_total", {"result": "attached"})
            return events

        turns = await self.ledger.get_turns(chat_id)
        last = turns[-1] if turns else None
        if last is None or last.role != "assistant":
            metrics.inc("chat_resume_total", {"result": "empty"})
            return _no_events()

        elapsed = int(((requested_at or now_utc()) - last.created_at).total_seconds())
        if elapsed > self.settings.resume_window_sec:
            metrics.inc("chat_resume_total", {"result": "empty"})
            return _no_events()

        metrics.inc("chat_resume_total", {"result": "synthesized"})
        return _single(PipelineEvent.append_message(last.to_dict()))

    async def delete_chat(self, chat_id: Optional[str], session: Optional[Session]) -> Chat:
        if not chat_id:
            raise ChatError("bad_request:api")
        if session is None:
            raise ChatError("unauthorized:chat")
        chat = await self.ledger.get_chat(chat_id)
        if chat is None:
            raise ChatError("not_found:chat")
        if chat.user_id != session.user_id:
            raise ChatError("forbidden:chat")
        deleted = await self.ledger.delete_chat(chat_id)
        logger.info("chat %s deleted by user %s", chat_id, session.user_id)
        return deleted or chat
