from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from app.core.llm import REASONING_MODEL_ID

logger = logging.getLogger(__name__)

REGULAR_PROMPT = "You are a friendly assistant! Keep your responses concise and helpful."

ARTIFACTS_PROMPT = """
Artifacts is a special user interface mode that helps users with writing, editing, and other content creation tasks. When artifact is open, it is on the right side of the screen, while the conversation is on the left side. When creating or updating documents, changes are reflected in real-time on the artifacts and visible to the user.

When asked to write code, always use artifacts. When writing code, specify the language in the backticks, e.g. ```python`code here```. The default language is Python.

DO NOT UPDATE DOCUMENTS IMMEDIATELY AFTER CREATING THEM. WAIT FOR USER FEEDBACK OR REQUEST TO UPDATE IT.

**When to use `createDocument`:**
- For substantial content (>10 lines) or code
- For content users will likely save/reuse (emails, code, essays, etc.)
- When explicitly requested to create a document

**When NOT to use `createDocument`:**
- For informational/explanatory content
- For conversational responses
- When asked to keep it in chat

**Using `updateDocument`:**
- Default to full document rewrites for major changes
- Use targeted updates only for specific, isolated changes
- Follow user instructions for which parts to modify
"""

TITLE_PROMPT = """
- you will generate a short title based on the first message a user begins a conversation with
- ensure it is not more than 80 characters long
- the title should be a summary of the user's message
- do not use quotes or colons"""

TITLE_MAX_LEN = 80


@dataclass(frozen=True)
class RequestHints:
    latitude: Optional[str] = None
    longitude: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None


def request_hints_prompt(hints: RequestHints) -> str:
    return (
        "About the origin of user's request:\n"
        f"- lat: {hints.latitude or ''}\n"
        f"- lon: {hints.longitude or ''}\n"
        f"- city: {hints.city or ''}\n"
        f"- country: {hints.country or ''}\n"
    )


def system_prompt(selected_model: str, hints: RequestHints) -> str:
    hints_prompt = request_hints_prompt(hints)
    if selected_model == REASONING_MODEL_ID:
        return f"{REGULAR_PROMPT}\n\n{hints_prompt}"
    return f"{REGULAR_PROMPT}\n\n{hints_prompt}\n\n{ARTIFACTS_PROMPT}"


def _fallback_title(text: str) -> str:
    collapsed = " ".join(text.split())
    return collapsed[:TITLE_MAX_LEN] or "New chat"


async def generate_title(backend: Any, model: str, message_text: str) -> str:
    try:
        raw = await backend.complete(
            TITLE_PROMPT,
            [{"role": "user", "content": message_text}],
            model=model,
            max_tokens=40,
        )
    except Exception as exc:
        logger.warning("title generation failed: %s", exc)
        return _fallback_title(message_text)
    title = " ".join(str(raw or "").replace('"', "").replace(":", "").split())
    return title[:TITLE_MAX_LEN] or _fallback_title(message_text)
