import asyncio
import json
from dataclasses import replace
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from app.core import state
from app.core.ledger import MemoryLedger
from app.core.llm import ToyBackend
from app.core.models import StreamHandle, Turn, now_utc
from app.core.orchestrator import ChatOrchestrator
from app.core.search import MockSearchProvider
from app.core.settings import SETTINGS
from app.core.stream_registry import StreamRegistry
from app.main import app


class FakeRedis:
    def __init__(self):
        self.values = {}
        self.lists = {}

    async def ping(self):
        return True

    async def get(self, key):
        return self.values.get(key)

    async def set(self, key, value, ex=None):
        self.values[key] = value
        return True

    async def delete(self, *keys):
        for key in keys:
            self.values.pop(key, None)
            self.lists.pop(key, None)
        return len(keys)

    async def rpush(self, key, *values):
        self.lists.setdefault(key, []).extend(values)
        return len(self.lists[key])

    async def lrange(self, key, start, end):
        return self.lists.get(key, [])[start:]

    async def expire(self, key, seconds):
        return True

    async def aclose(self):
        return None


@pytest.fixture
def ledger():
    return MemoryLedger()


def _install(monkeypatch, ledger, *, durable=False, client=None, **overrides):
    settings = replace(SETTINGS, stream_token_delay_ms=0, gateway_keys=[], **overrides)
    registry = StreamRegistry(
        "redis://fake:6379/0" if durable else "",
        ttl_sec=120,
        live_ttl_sec=75,
        poll_ms=5,
        client=(client or FakeRedis()) if durable else None,
    )
    orchestrator = ChatOrchestrator(ledger, ToyBackend(), MockSearchProvider(), settings, registry=registry)
    monkeypatch.setattr(state, "orchestrator", orchestrator)
    return orchestrator


def _payload(chat_id="c1", message_id="m1", text="hello", message_extra=None, **extra):
    body = {
        "id": chat_id,
        "message": {
            "id": message_id,
            "role": "user",
            "parts": [{"type": "text", "text": text}],
            "attachments": [],
            **(message_extra or {}),
        },
        "selectedModel": "chat-model",
        "visibility": "private",
    }
    body.update(extra)
    return body


def _parse_sse(text):
    events = []
    for block in text.split("\n\n"):
        if not block.strip():
            continue
        lines = block.split("\n")
        events.append((lines[0][len("event: "):], json.loads(lines[1][len("data: "):])))
    return events


def _seed_chat(ledger, chat_id="c1", owner="user-1", visibility="private", user_turns=0):
    async def seed():
        await ledger.create_chat(chat_id, owner, "Seeded", visibility)
        await ledger.append_turns(
            [
                Turn(id=f"seed-{i}", chat_id=chat_id, role="user", parts=[{"type": "text", "text": "hi"}])
                for i in range(user_turns)
            ]
        )

    asyncio.run(seed())


def test_direct_turn_streams_and_persists_both_turns(monkeypatch, ledger):
    _install(monkeypatch, ledger)
    client = TestClient(app)

    response = client.post("/chat", headers={"x-user-id": "user-1", "x-trace-id": "trace-1"}, json=_payload())

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["x-trace-id"] == "trace-1"
    events = _parse_sse(response.text)
    assert events[-1] == ("done", {"status": "ok"})
    text = "".join(data["delta"] for name, data in events if name == "text-delta")
    assert text == "You asked: hello"

    turns = asyncio.run(ledger.get_turns("c1"))
    assert [turn.role for turn in turns] == ["user", "assistant"]
    assert turns[0].id == "m1"
    chat = asyncio.run(ledger.get_chat("c1"))
    assert chat.user_id == "user-1"
    assert chat.title == "hello"
    assert len(asyncio.run(ledger.get_stream_ids("c1"))) == 1


def test_search_turn_emits_status_note_first(monkeypatch, ledger):
    _install(monkeypatch, ledger)
    client = TestClient(app)

    response = client.post(
        "/chat",
        headers={"x-user-id": "user-1"},
        json=_payload(text="Find transformer repos", searchCategory="github"),
    )

    events = _parse_sse(response.text)
    assert events[0] == ("status-note", {"note": "Searching for relevant information..."})
    text = "".join(data["delta"] for name, data in events if name == "text-delta")
    assert text.startswith("Based on the search results:")
    assert events[-1] == ("done", {"status": "ok"})


def test_invalid_payload_is_bad_request_before_auth(monkeypatch, ledger):
    _install(monkeypatch, ledger)
    client = TestClient(app)

    response = client.post("/chat", json=_payload(selectedModel="gpt-unknown"))
    unknown_category = client.post("/chat", headers={"x-user-id": "u"}, json=_payload(searchCategory="videos"))
    broken = client.post("/chat", content="{broken", headers={"content-type": "application/json"})

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "bad_request:api"
    assert unknown_category.status_code == 400
    assert broken.status_code == 400


def test_missing_session_is_unauthorized(monkeypatch, ledger):
    _install(monkeypatch, ledger)
    client = TestClient(app)

    response = client.post("/chat", json=_payload())

    assert response.status_code == 401
    body = response.json()
    assert body["error"]["code"] == "unauthorized:chat"
    assert body["trace_id"]
    assert body["request_id"]


def test_gateway_key_is_required_when_configured(monkeypatch, ledger):
    _install(monkeypatch, ledger)
    monkeypatch.setattr(SETTINGS, "gateway_keys", ["secret"])
    client = TestClient(app)

    rejected = client.post("/chat", headers={"x-user-id": "user-1"}, json=_payload())
    accepted = client.post("/chat", headers={"x-user-id": "user-1", "x-api-key": "secret"}, json=_payload())

    assert rejected.status_code == 401
    assert accepted.status_code == 200


def test_quota_boundary(monkeypatch, ledger):
    _install(monkeypatch, ledger, entitlement_regular=3)
    _seed_chat(ledger, user_turns=2)
    client = TestClient(app)

    allowed = client.post("/chat", headers={"x-user-id": "user-1"}, json=_payload(message_id="m-allowed"))
    rejected = client.post("/chat", headers={"x-user-id": "user-1"}, json=_payload(message_id="m-rejected"))

    assert allowed.status_code == 200
    assert rejected.status_code == 429
    assert rejected.json()["error"]["code"] == "rate_limit:chat"
    turn_ids = [turn.id for turn in asyncio.run(ledger.get_turns("c1"))]
    assert "m-rejected" not in turn_ids


def test_guest_entitlement_is_separate(monkeypatch, ledger):
    _install(monkeypatch, ledger, entitlement_guest=1, entitlement_regular=100)
    _seed_chat(ledger, owner="guest-1", user_turns=1)
    client = TestClient(app)

    response = client.post("/chat", headers={"x-user-id": "guest-1", "x-user-type": "guest"}, json=_payload())

    assert response.status_code == 429


def test_posting_to_another_users_chat_is_forbidden(monkeypatch, ledger):
    _install(monkeypatch, ledger)
    _seed_chat(ledger, owner="user-2")
    client = TestClient(app)

    response = client.post("/chat", headers={"x-user-id": "user-1"}, json=_payload())

    assert response.status_code == 403
    assert response.json()["error"]["code"] == "forbidden:chat"
    assert asyncio.run(ledger.get_stream_ids("c1")) == []


def test_delete_chat_checks_ownership(monkeypatch, ledger):
    _install(monkeypatch, ledger)
    _seed_chat(ledger, owner="user-1", user_turns=1)
    client = TestClient(app)

    missing_id = client.delete("/chat", headers={"x-user-id": "user-1"})
    anonymous = client.delete("/chat?id=c1")
    other = client.delete("/chat?id=c1", headers={"x-user-id": "user-2"})
    unknown = client.delete("/chat?id=nope", headers={"x-user-id": "user-1"})
    deleted = client.delete("/chat?id=c1", headers={"x-user-id": "user-1"})

    assert missing_id.status_code == 400
    assert anonymous.status_code == 401
    assert other.status_code == 403
    assert unknown.status_code == 404
    assert unknown.json()["error"]["code"] == "not_found:chat"
    assert deleted.status_code == 200
    assert deleted.json()["id"] == "c1"
    assert deleted.json()["userId"] == "user-1"
    assert asyncio.run(ledger.get_chat("c1")) is None
    assert asyncio.run(ledger.get_turns("c1")) == []


def test_resume_without_registry_returns_no_content(monkeypatch, ledger):
    _install(monkeypatch, ledger, durable=False)
    client = TestClient(app)

    response = client.get("/chat?chatId=c1", headers={"x-user-id": "user-1"})

    assert response.status_code == 204
    assert response.text == ""


def test_resume_error_order(monkeypatch, ledger):
    _install(monkeypatch, ledger, durable=True)
    _seed_chat(ledger, chat_id="private-chat", owner="user-2", visibility="private")
    _seed_chat(ledger, chat_id="public-chat", owner="user-2", visibility="public")
    client = TestClient(app)

    assert client.get("/chat", headers={"x-user-id": "user-1"}).status_code == 400
    assert client.get("/chat?chatId=private-chat").status_code == 401
    missing = client.get("/chat?chatId=nope", headers={"x-user-id": "user-1"})
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "not_found:chat"
    assert client.get("/chat?chatId=private-chat", headers={"x-user-id": "user-1"}).status_code == 403
    no_stream = client.get("/chat?chatId=public-chat", headers={"x-user-id": "user-1"})
    assert no_stream.status_code == 404
    assert no_stream.json()["error"]["code"] == "not_found:stream"


def test_resume_replays_the_same_stream_every_time(monkeypatch, ledger):
    _install(monkeypatch, ledger, durable=True)
    client = TestClient(app)

    posted = client.post("/chat", headers={"x-user-id": "user-1"}, json=_payload())
    first = client.get("/chat?chatId=c1", headers={"x-user-id": "user-1"})
    second = client.get("/chat?chatId=c1", headers={"x-user-id": "user-1"})

    assert posted.status_code == 200
    assert first.status_code == 200
    assert _parse_sse(first.text) == _parse_sse(posted.text)
    assert _parse_sse(second.text) == _parse_sse(first.text)


def _seed_finished_turn(ledger, age_seconds):
    async def seed():
        await ledger.create_chat("c1", "user-1", "Seeded", "private")
        await ledger.append_turns(
            [
                Turn(
                    id="assistant-1",
                    chat_id="c1",
                    role="assistant",
                    parts=[{"type": "text", "text": "Earlier answer"}],
                    created_at=now_utc() - timedelta(seconds=age_seconds),
                )
            ]
        )
        await ledger.create_stream_handle(StreamHandle(stream_id="expired", chat_id="c1", created_at=now_utc()))

    asyncio.run(seed())


def test_resume_synthesizes_recent_assistant_turn(monkeypatch, ledger):
    _install(monkeypatch, ledger, durable=True)
    _seed_finished_turn(ledger, age_seconds=10)
    client = TestClient(app)

    response = client.get("/chat?chatId=c1", headers={"x-user-id": "user-1"})

    assert response.status_code == 200
    events = _parse_sse(response.text)
    assert len(events) == 1
    name, data = events[0]
    assert name == "append-message"
    message = json.loads(data["message"])
    assert message["id"] == "assistant-1"
    assert message["parts"] == [{"type": "text", "text": "Earlier answer"}]


def test_resume_after_window_returns_empty_body(monkeypatch, ledger):
    _install(monkeypatch, ledger, durable=True)
    _seed_finished_turn(ledger, age_seconds=20)
    client = TestClient(app)

    response = client.get("/chat?chatId=c1", headers={"x-user-id": "user-1"})

    assert response.status_code == 200
    assert response.text == ""


def test_health_and_metrics():
    client = TestClient(app)

    assert client.get("/health").json() == {"status": "ok"}
    assert isinstance(client.get("/metrics").json(), dict)


class FlakyRedis(FakeRedis):
    def __init__(self, fail_rpush_after=None):
        super().__init__()
        self.fail_rpush_after = fail_rpush_after
        self.fail_reads = False
        self.pushed = 0

    async def rpush(self, key, *values):
        if self.fail_rpush_after is not None and self.pushed >= self.fail_rpush_after:
            raise ConnectionError("connection reset")
        self.pushed += 1
        return await super().rpush(key, *values)

    async def get(self, key):
        if self.fail_reads:
            raise ConnectionError("connection reset")
        return await super().get(key)


def test_client_created_at_does_not_affect_quota_or_order(monkeypatch, ledger):
    _install(monkeypatch, ledger, entitlement_regular=1)
    client = TestClient(app)
    backdated = {"createdAt": "2000-01-01T00:00:00Z"}

    first = client.post(
        "/chat",
        headers={"x-user-id": "user-1"},
        json=_payload(message_id="m-first", message_extra=backdated),
    )
    second = client.post(
        "/chat",
        headers={"x-user-id": "user-1"},
        json=_payload(message_id="m-second", message_extra=backdated),
    )

    assert first.status_code == 200
    assert second.status_code == 429
    turns = asyncio.run(ledger.get_turns("c1"))
    assert [turn.role for turn in turns] == ["user", "assistant"]
    assert turns[0].created_at.year >= 2024


def test_resume_falls_back_to_ledger_when_redis_reads_fail(monkeypatch, ledger):
    redis_client = FlakyRedis()
    _install(monkeypatch, ledger, durable=True, client=redis_client)
    client = TestClient(app)

    posted = client.post("/chat", headers={"x-user-id": "user-1"}, json=_payload())
    redis_client.fail_reads = True
    resumed = client.get("/chat?chatId=c1", headers={"x-user-id": "user-1"})

    assert posted.status_code == 200
    assert resumed.status_code == 200
    events = _parse_sse(resumed.text)
    assert [name for name, _ in events] == ["append-message"]
    assert json.loads(events[0][1]["message"])["role"] == "assistant"


def test_resume_internal_failure_becomes_error_stream(monkeypatch, ledger):
    _install(monkeypatch, ledger, durable=True)
    client = TestClient(app)

    async def broken_get_chat(chat_id):
        raise ConnectionError("db down")

    monkeypatch.setattr(ledger, "get_chat", broken_get_chat)
    response = client.get("/chat?chatId=c1", headers={"x-user-id": "user-1"})

    assert response.status_code == 200
    events = _parse_sse(response.text)
    assert [name for name, _ in events] == ["error", "done"]
    assert events[-1][1] == {"status": "error"}


def test_partial_stream_is_not_replayed_after_sink_failure(monkeypatch, ledger):
    redis_client = FlakyRedis(fail_rpush_after=2)
    _install(monkeypatch, ledger, durable=True, client=redis_client)
    client = TestClient(app)

    posted = client.post("/chat", headers={"x-user-id": "user-1"}, json=_payload())
    resumed = client.get("/chat?chatId=c1", headers={"x-user-id": "user-1"})

    assert _parse_sse(posted.text)[-1] == ("done", {"status": "ok"})
    assert not any(value == "live" for value in redis_client.values.values())
    events = _parse_sse(resumed.text)
    assert [name for name, _ in events] == ["append-message"]
    message = json.loads(events[0][1]["message"])
    assert message["parts"] == [{"type": "text", "text": "You asked: hello"}]
