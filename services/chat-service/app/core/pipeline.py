from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional

from app.core.errors import GENERIC_STREAM_ERROR
from app.core.events import PipelineEvent, smooth_words
from app.core.ledger import MessageLedger
from app.core.llm import (
    REASONING_MODEL_ID,
    GenerationBackend,
    GenerationOptions,
    GenerationResponse,
    get_trailing_message_id,
    merge_assistant_parts,
    model_for,
)
from app.core.metrics import metrics
from app.core.models import SearchResult, Turn, now_utc
from app.core.rewrite import QueryRewriter
from app.core.search import SearchProvider, format_search_results
from app.core.settings import Settings
from app.core.tools import Tool, ToolContext

logger = logging.getLogger(__name__)

SEARCHING_NOTE = "Searching for relevant information..."


class PipelineState(str, Enum):
    INIT = "init"
    DIRECT = "direct"
    SEARCH_PLANNING = "search_planning"
    SEARCH_EXECUTING = "search_executing"
    SEARCH_FORMATTING = "search_formatting"
    GENERATING = "generating"
    FINISHING = "finishing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class TurnRequest:
    chat_id: str
    user_id: str
    message: Turn
    history: List[Turn]
    selected_model: str
    system_prompt: str
    search_category: Optional[str] = None


def turn_to_message(turn: Turn) -> Dict[str, Any]:
    text = turn.text()
    images = [
        attachment
        for attachment in turn.attachments
        if str(attachment.get("contentType") or "").startswith("image/") and attachment.get("url")
    ]
    if not images:
        return {"role": turn.role, "content": text}
    content: List[Dict[str, Any]] = [{"type": "text", "text": text}]
    content.extend({"type": "image_url", "image_url": {"url": item["url"]}} for item in images)
    return {"role": turn.role, "content": content}


class GenerationStrategy:
    path = "base"

    async def prepare(self, pipeline: "TurnPipeline") -> AsyncIterator[PipelineEvent]:
        return
        yield

    def messages(self, pipeline: "TurnPipeline") -> List[Dict[str, Any]]:
        request = pipeline.request
        return [turn_to_message(turn) for turn in [*request.history, request.message]]

    def options(self, pipeline: "TurnPipeline") -> GenerationOptions:
        raise NotImplementedError


class DirectStrategy(GenerationStrategy):
    path = "direct"

    async def prepare(self, pipeline: "TurnPipeline") -> AsyncIterator[PipelineEvent]:
        pipeline.transition(PipelineState.DIRECT)
        return
        yield

    def options(self, pipeline: "TurnPipeline") -> GenerationOptions:
        request = pipeline.request
        settings = pipeline.settings
        model = model_for(settings, request.selected_model)
        tools = [] if request.selected_model == REASONING_MODEL_ID else list(pipeline.tools)
        context = None
        if tools:
            context = ToolContext(
                user_id=request.user_id,
                backend=pipeline.backend,
                ledger=pipeline.ledger,
                model=model,
                weather_url=settings.weather_url,
                timeout_sec=settings.llm_timeout_ms / 1000.0,
            )
        return GenerationOptions(
            model=model,
            tools=tools,
            tool_context=context,
            max_steps=settings.max_steps,
            transform=pipeline.word_transform,
        )


class SearchAugmentedStrategy(GenerationStrategy):
    path = "search"

    def __init__(self, category: str) -> None:
        self.category = category
        self.query: Optional[str] = None
        self.results: List[SearchResult] = []
        self.document: Optional[str] = None

    async def prepare(self, pipeline: "TurnPipeline") -> AsyncIterator[PipelineEvent]:
        request = pipeline.request
        yield PipelineEvent.status_note(SEARCHING_NOTE)

        pipeline.transition(PipelineState.SEARCH_PLANNING)
        rewrite = await pipeline.rewriter.rewrite(request.history, request.message.text(), request.system_prompt)
        self.query = rewrite.query

        pipeline.transition(PipelineState.SEARCH_EXECUTING)
        try:
            self.results = await pipeline.search_provider.search(self.query, self.category)
            metrics.inc("chat_search_total", {"result": "hit" if self.results else "empty"})
        except Exception as exc:
            logger.warning("search failed for chat %s, continuing without results: %s", request.chat_id, exc)
            metrics.inc("chat_search_total", {"result": "error"})
            self.results = []

        pipeline.transition(PipelineState.SEARCH_FORMATTING)
        self.document = format_search_results(self.results, self.query)

    def messages(self, pipeline: "TurnPipeline") -> List[Dict[str, Any]]:
        request = pipeline.request
        prior = [turn_to_message(turn) for turn in request.history]
        synthetic = {"role": "assistant", "content": self.document or ""}
        return [*prior, synthetic, turn_to_message(request.message)]

    def options(self, pipeline: "TurnPipeline") -> GenerationOptions:
        return GenerationOptions(
            model=model_for(pipeline.settings, pipeline.request.selected_model),
            max_steps=1,
            transform=pipeline.word_transform,
        )


def select_strategy(request: TurnRequest) -> GenerationStrategy:
    if request.search_category:
        return SearchAugmentedStrategy(request.search_category)
    return DirectStrategy()


class TurnPipeline:
    """Runs one turn from the user message to a persisted assistant turn.

    The strategy is fixed at construction. `run()` yields the event stream;
    the assistant turn is written before the final `done` event.
    """

    def __init__(
        self,
        request: TurnRequest,
        *,
        backend: GenerationBackend,
        rewriter: QueryRewriter,
        search_provider: SearchProvider,
        ledger: MessageLedger,
        settings: Settings,
        tools: Optional[List[Tool]] = None,
    ) -> None:
        self.request = request
        self.backend = backend
        self.rewriter = rewriter
        self.search_provider = search_provider
        self.ledger = ledger
        self.settings = settings
        self.tools = tools or []
        self.strategy = select_strategy(request)
        self.state = PipelineState.INIT
        self.visited: List[PipelineState] = [PipelineState.INIT]
        self.assistant_turn: Optional[Turn] = None
        self.failure: Optional[str] = None

    def transition(self, state: PipelineState) -> None:
        logger.debug("chat %s pipeline %s -> %s", self.request.chat_id, self.state.value, state.value)
        self.state = state
        self.visited.append(state)

    def fail(self, reason: str) -> None:
        self.failure = reason
        self.transition(PipelineState.FAILED)
        metrics.inc("chat_pipeline_total", {"path": self.strategy.path, "status": "failed"})

    def word_transform(self, events: AsyncIterator[PipelineEvent]) -> AsyncIterator[PipelineEvent]:
        return smooth_words(events, self.settings.stream_token_delay_ms)

    async def run(self) -> AsyncIterator[PipelineEvent]:
        try:
            async for event in self.strategy.prepare(self):
                yield event

            self.transition(PipelineState.GENERATING)
            stream = self.backend.stream(
                self.request.system_prompt,
                self.strategy.messages(self),
                self.strategy.options(self),
            )
            async for event in stream:
                yield event
        except Exception as exc:
            logger.exception("chat %s generation failed", self.request.chat_id)
            self.fail(type(exc).__name__)
            yield PipelineEvent.error(GENERIC_STREAM_ERROR)
            yield PipelineEvent.done("error")
            return

        self.transition(PipelineState.FINISHING)
        await self._finish(stream.response)
        self.transition(PipelineState.COMPLETED)
        metrics.inc("chat_pipeline_total", {"path": self.strategy.path, "status": "completed"})
        yield PipelineEvent.done("ok")

    async def _finish(self, response: GenerationResponse) -> None:
        assistant_id = get_trailing_message_id(response.messages)
        if not assistant_id:
            logger.error("No assistant message found for chat %s", self.request.chat_id)
            metrics.inc("chat_persist_failed_total", {"reason": "no_assistant_message"})
            return

        turn = Turn(
            id=assistant_id,
            chat_id=self.request.chat_id,
            role="assistant",
            parts=merge_assistant_parts(response.messages),
            attachments=[],
            created_at=now_utc(),
        )
        try:
            await self.ledger.append_turns([turn])
        except Exception:
            logger.exception("Failed to save assistant turn for chat %s", self.request.chat_id)
            metrics.inc("chat_persist_failed_total", {"reason": "ledger_error"})
            return
        self.assistant_turn = turn
