import asyncio
from dataclasses import replace
from datetime import timedelta

from app.core.ledger import MemoryLedger, MySQLLedger, build_ledger
from app.core.models import Document, StreamHandle, Turn, now_utc
from app.core.settings import SETTINGS


def _turn(turn_id, chat_id="c1", role="user", age_hours=0):
    return Turn(
        id=turn_id,
        chat_id=chat_id,
        role=role,
        parts=[{"type": "text", "text": turn_id}],
        created_at=now_utc() - timedelta(hours=age_hours),
    )


def test_append_turns_is_idempotent_per_turn_id():
    ledger = MemoryLedger()

    async def scenario():
        await ledger.create_chat("c1", "user-1", "Title", "private")
        await ledger.append_turns([_turn("a")])
        await ledger.append_turns([_turn("a"), _turn("b", role="assistant")])
        return await ledger.get_turns("c1")

    turns = asyncio.run(scenario())

    assert [turn.id for turn in turns] == ["a", "b"]


def test_count_turns_by_user_only_counts_recent_user_turns():
    ledger = MemoryLedger()

    async def scenario():
        await ledger.create_chat("c1", "user-1", "Mine", "private")
        await ledger.create_chat("c2", "user-2", "Theirs", "private")
        await ledger.append_turns(
            [
                _turn("recent"),
                _turn("old", age_hours=30),
                _turn("reply", role="assistant"),
                _turn("other", chat_id="c2"),
            ]
        )
        return await ledger.count_turns_by_user("user-1", 24)

    assert asyncio.run(scenario()) == 1


def test_create_chat_keeps_original_owner():
    ledger = MemoryLedger()

    async def scenario():
        await ledger.create_chat("c1", "user-1", "First", "private")
        return await ledger.create_chat("c1", "user-2", "Second", "public")

    chat = asyncio.run(scenario())

    assert chat.user_id == "user-1"
    assert chat.title == "First"


def test_stream_ids_are_ordered_by_creation_and_removed_with_chat():
    ledger = MemoryLedger()
    base = now_utc()

    async def scenario():
        await ledger.create_chat("c1", "user-1", "Title", "private")
        await ledger.create_stream_handle(StreamHandle("s2", "c1", base + timedelta(seconds=5)))
        await ledger.create_stream_handle(StreamHandle("s1", "c1", base))
        ordered = await ledger.get_stream_ids("c1")
        deleted = await ledger.delete_chat("c1")
        return ordered, deleted, await ledger.get_stream_ids("c1")

    ordered, deleted, remaining = asyncio.run(scenario())

    assert ordered == ["s1", "s2"]
    assert deleted.id == "c1"
    assert remaining == []


def test_get_document_returns_latest_version():
    ledger = MemoryLedger()
    base = now_utc()

    async def scenario():
        await ledger.save_document(Document("d1", "user-1", "Doc", "text", "v1", created_at=base))
        await ledger.save_document(Document("d1", "user-1", "Doc", "text", "v2", created_at=base + timedelta(seconds=1)))
        return await ledger.get_document("d1"), await ledger.get_document("missing")

    latest, missing = asyncio.run(scenario())

    assert latest.content == "v2"
    assert missing is None


def test_build_ledger_selects_backend():
    assert isinstance(build_ledger(replace(SETTINGS, ledger_backend="memory")), MemoryLedger)
    assert isinstance(build_ledger(replace(SETTINGS, ledger_backend="mysql")), MySQLLedger)
    assert isinstance(build_ledger(replace(SETTINGS, ledger_backend="bogus")), MemoryLedger)


def test_mysql_ledger_executes_statements_on_one_connection(monkeypatch):
    executed = []

    class FakeCursor:
        def __enter__(self):
            return self

        def __exit__(self, *exc):
            return False

        def execute(self, sql, params):
            executed.append((" ".join(sql.split()), params))

        def fetchall(self):
            return [{"id": "c1", "user_id": "user-1", "title": "T", "visibility": "public", "created_at": now_utc()}]

    class FakeConnection:
        closed = False

        def cursor(self):
            return FakeCursor()

        def close(self):
            FakeConnection.closed = True

    ledger = MySQLLedger(SETTINGS)
    monkeypatch.setattr(ledger, "_connect", lambda: FakeConnection())

    chat = asyncio.run(ledger.get_chat("c1"))

    assert chat.id == "c1"
    assert chat.visibility == "public"
    assert executed[0][1] == ("c1",)
    assert FakeConnection.closed is True
