from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from app.core.metrics import metrics
from app.core.models import Turn

logger = logging.getLogger(__name__)

HISTORY_WINDOW = 5
REWRITE_TEMPERATURE = 0.1
REWRITE_MAX_TOKENS = 30
REWRITE_MAX_LEN = 256

QUERY_INSTRUCTIONS = """
Your task is to generate an optimal search query based on the user's message and conversation history. The search query will be used to search the web i.e google for relevant information.

INSTRUCTIONS:
1. Analyze the user's current message and previous conversation context
2. Extract the key information needs and search intent
3. Formulate a clear, concise search query (3-10 words) that will yield the most relevant results
4. Return ONLY the search query text with no additional explanation or formatting
5. Focus on specific technical terms, entities, or concepts that will help find precise information
6. Avoid generic terms that would lead to broad results

Example user message: "I want to learn about Meta's latest LLM model and how to use it"
Example output: "meta llama 3 github implementation tutorial\""""


@dataclass
class RewriteResult:
    query: str
    applied: bool
    reject_reason: Optional[str] = None


def _history_messages(history: List[Turn]) -> List[Dict[str, Any]]:
    return [{"role": turn.role, "content": turn.text()} for turn in history[-HISTORY_WINDOW:]]


def _clean_candidate(raw: str) -> str:
    candidate = (raw or "").strip()
    # models often wrap the query in quotes despite the instructions
    candidate = candidate.strip("\"'` ").strip()
    return candidate


def _validate(candidate: str) -> Optional[str]:
    if not candidate or not any(ch.isalnum() for ch in candidate):
        return "empty"
    if len(candidate) > REWRITE_MAX_LEN:
        return "too_long"
    if any(not ch.isprintable() for ch in candidate):
        return "forbidden_char"
    return None


class QueryRewriter:
    def __init__(self, backend: Any, model: str) -> None:
        self._backend = backend
        self._model = model

    async def rewrite(self, history: List[Turn], current_text: str, system_prompt: str) -> RewriteResult:
        """Turn the latest user message into a short web search query.

        `history` is the conversation before the current message. Any
        failure falls back to the raw message text.
        """
        fallback = current_text.strip()
        messages = _history_messages(history)
        messages.append({"role": "user", "content": f"Generate a search query for: {current_text}"})

        try:
            raw = await self._backend.complete(
                f"{system_prompt}\n{QUERY_INSTRUCTIONS}",
                messages,
                model=self._model,
                temperature=REWRITE_TEMPERATURE,
                max_tokens=REWRITE_MAX_TOKENS,
            )
        except Exception as exc:
            logger.warning("search query rewrite failed, using raw message: %s", exc)
            metrics.inc("chat_rewrite_fallback_total", {"reason": "provider_error"})
            return RewriteResult(query=fallback, applied=False, reject_reason="provider_error")

        candidate = _clean_candidate(str(raw or ""))
        reject_reason = _validate(candidate)
        if reject_reason is not None:
            logger.info("search query rewrite rejected (%s), using raw message", reject_reason)
            metrics.inc("chat_rewrite_fallback_total", {"reason": reject_reason})
            return RewriteResult(query=fallback, applied=False, reject_reason=reject_reason)

        metrics.inc("chat_rewrite_applied_total")
        return RewriteResult(query=candidate, applied=candidate != fallback)
