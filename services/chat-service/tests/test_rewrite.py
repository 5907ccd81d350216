import asyncio

from app.core.metrics import metrics
from app.core.models import Turn
from app.core.rewrite import QueryRewriter


class FakeBackend:
    def __init__(self, reply=None, error=None):
        self.reply = reply
        self.error = error
        self.calls = []

    async def complete(self, system_prompt, messages, *, model, temperature=None, max_tokens=None):
        self.calls.append(
            {
                "system_prompt": system_prompt,
                "messages": messages,
                "model": model,
                "temperature": temperature,
                "max_tokens": max_tokens,
            }
        )
        if self.error is not None:
            raise self.error
        return self.reply


def _turn(index, role="user", text=None):
    return Turn(
        id=f"t{index}",
        chat_id="c1",
        role=role,
        parts=[{"type": "text", "text": text or f"message {index}"}],
    )


def test_rewrite_uses_trailing_window_and_constrained_call():
    backend = FakeBackend(reply='  "meta llama 3 github implementation"  ')
    history = [_turn(i, role="user" if i % 2 == 0 else "assistant") for i in range(8)]

    result = asyncio.run(QueryRewriter(backend, "toy-chat-v1").rewrite(history, "How do I use llama 3?", "base"))

    assert result.query == "meta llama 3 github implementation"
    assert result.applied is True
    call = backend.calls[0]
    assert call["temperature"] == 0.1
    assert call["max_tokens"] == 30
    assert call["system_prompt"].startswith("base\n")
    assert len(call["messages"]) == 6
    assert [m["content"] for m in call["messages"][:5]] == [f"message {i}" for i in range(3, 8)]
    assert call["messages"][-1] == {"role": "user", "content": "Generate a search query for: How do I use llama 3?"}


def test_provider_error_falls_back_to_raw_text():
    metrics.reset()
    backend = FakeBackend(error=RuntimeError("boom"))

    result = asyncio.run(QueryRewriter(backend, "m").rewrite([], "  Find transformer repos ", "base"))

    assert result.query == "Find transformer repos"
    assert result.applied is False
    assert result.reject_reason == "provider_error"
    assert metrics.get("chat_rewrite_fallback_total", {"reason": "provider_error"}) == 1


def test_empty_or_punctuation_only_output_falls_back():
    for reply in ["", "   ", '"", ', None]:
        result = asyncio.run(QueryRewriter(FakeBackend(reply=reply), "m").rewrite([], "Find transformer repos", "b"))
        assert result.query == "Find transformer repos"
        assert result.reject_reason == "empty"


def test_over_long_output_falls_back():
    result = asyncio.run(QueryRewriter(FakeBackend(reply="word " * 80), "m").rewrite([], "raw", "b"))

    assert result.query == "raw"
    assert result.reject_reason == "too_long"


def test_non_printable_output_falls_back():
    result = asyncio.run(QueryRewriter(FakeBackend(reply="bad\x00query"), "m").rewrite([], "raw", "b"))

    assert result.query == "raw"
    assert result.reject_reason == "forbidden_char"
