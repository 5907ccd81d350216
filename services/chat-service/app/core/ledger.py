from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Any, Dict, List, Optional

import pymysql

from app.core.models import Chat, Document, StreamHandle, Suggestion, Turn, now_utc
from app.core.settings import Settings

logger = logging.getLogger(__name__)


class MessageLedger:
    """Durable chat store used by the orchestrator and the tools."""

    async def get_chat(self, chat_id: str) -> Optional[Chat]:
        raise NotImplementedError

    async def create_chat(self, chat_id: str, user_id: str, title: str, visibility: str) -> Chat:
        raise NotImplementedError

    async def delete_chat(self, chat_id: str) -> Optional[Chat]:
        raise NotImplementedError

    async def get_turns(self, chat_id: str) -> List[Turn]:
        raise NotImplementedError

    async def append_turns(self, turns: List[Turn]) -> None:
        raise NotImplementedError

    async def count_turns_by_user(self, user_id: str, since_hours: int) -> int:
        raise NotImplementedError

    async def create_stream_handle(self, handle: StreamHandle) -> None:
        raise NotImplementedError

    async def get_stream_ids(self, chat_id: str) -> List[str]:
        raise NotImplementedError

    async def save_document(self, document: Document) -> None:
        raise NotImplementedError

    async def get_document(self, document_id: str) -> Optional[Document]:
        raise NotImplementedError

    async def save_suggestions(self, suggestions: List[Suggestion]) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class MemoryLedger(MessageLedger):
    def __init__(self) -> None:
        self._chats: Dict[str, Chat] = {}
        self._turns: Dict[str, List[Turn]] = {}
        self._streams: Dict[str, List[StreamHandle]] = {}
        self._documents: Dict[str, List[Document]] = {}
        self._suggestions: List[Suggestion] = []
        self._lock = Lock()

    async def get_chat(self, chat_id: str) -> Optional[Chat]:
        with self._lock:
            return self._chats.get(chat_id)

    async def create_chat(self, chat_id: str, user_id: str, title: str, visibility: str) -> Chat:
        chat = Chat(id=chat_id, user_id=user_id, title=title, visibility=visibility)
        with self._lock:
            self._chats.setdefault(chat_id, chat)
            return self._chats[chat_id]

    async def delete_chat(self, chat_id: str) -> Optional[Chat]:
        with self._lock:
            self._turns.pop(chat_id, None)
            self._streams.pop(chat_id, None)
            return self._chats.pop(chat_id, None)

    async def get_turns(self, chat_id: str) -> List[Turn]:
        with self._lock:
            turns = list(self._turns.get(chat_id, []))
        return sorted(turns, key=lambda turn: turn.created_at)

    async def append_turns(self, turns: List[Turn]) -> None:
        with self._lock:
            for turn in turns:
                bucket = self._turns.setdefault(turn.chat_id, [])
                if any(existing.id == turn.id for existing in bucket):
                    continue
                bucket.append(turn)

    async def count_turns_by_user(self, user_id: str, since_hours: int) -> int:
        cutoff = now_utc() - timedelta(hours=since_hours)
        with self._lock:
            owned = {chat_id for chat_id, chat in self._chats.items() if chat.user_id == user_id}
            return sum(
                1
                for chat_id in owned
                for turn in self._turns.get(chat_id, [])
                if turn.role == "user" and turn.created_at >= cutoff
            )

    async def create_stream_handle(self, handle: StreamHandle) -> None:
        with self._lock:
            self._streams.setdefault(handle.chat_id, []).append(handle)

    async def get_stream_ids(self, chat_id: str) -> List[str]:
        with self._lock:
            handles = list(self._streams.get(chat_id, []))
        handles.sort(key=lambda handle: handle.created_at)
        return [handle.stream_id for handle in handles]

    async def save_document(self, document: Document) -> None:
        with self._lock:
            self._documents.setdefault(document.id, []).append(document)

    async def get_document(self, document_id: str) -> Optional[Document]:
        with self._lock:
            versions = self._documents.get(document_id) or []
            if not versions:
                return None
            return max(reversed(versions), key=lambda doc: doc.created_at)

    async def save_suggestions(self, suggestions: List[Suggestion]) -> None:
        with self._lock:
            self._suggestions.extend(suggestions)

    def suggestions_for(self, document_id: str) -> List[Suggestion]:
        with self._lock:
            return [item for item in self._suggestions if item.document_id == document_id]


SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS chat (
      id VARCHAR(64) NOT NULL PRIMARY KEY,
      user_id VARCHAR(128) NOT NULL,
      title VARCHAR(255) NOT NULL,
      visibility VARCHAR(16) NOT NULL DEFAULT 'private',
      created_at DATETIME(6) NOT NULL,
      KEY idx_chat_user (user_id)
    ) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4
    """,
    """
    CREATE TABLE IF NOT EXISTS chat_turn (
      id VARCHAR(64) NOT NULL PRIMARY KEY,
      chat_id VARCHAR(64) NOT NULL,
      role VARCHAR(16) NOT NULL,
      parts_json JSON NOT NULL,
      attachments_json JSON NOT NULL,
      created_at DATETIME(6) NOT NULL,
      KEY idx_turn_chat_created (chat_id, created_at)
    ) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4
    """,
    """
    CREATE TABLE IF NOT EXISTS chat_stream (
      stream_id VARCHAR(64) NOT NULL PRIMARY KEY,
      chat_id VARCHAR(64) NOT NULL,
      created_at DATETIME(6) NOT NULL,
      KEY idx_stream_chat_created (chat_id, created_at)
    ) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4
    """,
    """
    CREATE TABLE IF NOT EXISTS chat_document (
      id VARCHAR(64) NOT NULL,
      created_at DATETIME(6) NOT NULL,
      user_id VARCHAR(128) NOT NULL,
      title VARCHAR(255) NOT NULL,
      kind VARCHAR(16) NOT NULL,
      content MEDIUMTEXT,
      PRIMARY KEY (id, created_at)
    ) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4
    """,
    """
    CREATE TABLE IF NOT EXISTS chat_suggestion (
      id VARCHAR(64) NOT NULL PRIMARY KEY,
      document_id VARCHAR(64) NOT NULL,
      document_created_at DATETIME(6) NOT NULL,
      original_text TEXT NOT NULL,
      suggested_text TEXT NOT NULL,
      description TEXT,
      user_id VARCHAR(128) NOT NULL,
      created_at DATETIME(6) NOT NULL,
      KEY idx_suggestion_document (document_id)
    ) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4
    """,
)


def _to_db_time(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _from_db_time(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value
    return now_utc()


def _parse_json_list(value: Any) -> List[Dict[str, Any]]:
    if isinstance(value, list):
        return value
    if isinstance(value, (bytes, str)):
        try:
            parsed = json.loads(value)
        except Exception:
            return []
        if isinstance(parsed, list):
            return parsed
    return []


class MySQLLedger(MessageLedger):
    """pymysql-backed ledger. Each call opens a short-lived connection on a worker thread."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._lock = Lock()

    def _connect(self):
        timeout = max(0.05, self._settings.db_connect_timeout_ms / 1000.0)
        return pymysql.connect(
            host=self._settings.db_host,
            port=self._settings.db_port,
            user=self._settings.db_user,
            password=self._settings.db_password,
            database=self._settings.db_name,
            charset="utf8mb4",
            autocommit=True,
            cursorclass=pymysql.cursors.DictCursor,
            connect_timeout=timeout,
            read_timeout=timeout,
            write_timeout=timeout,
        )

    def _run(self, statements: List[tuple[str, tuple]], fetch: bool = False) -> List[Dict[str, Any]]:
        rows: List[Dict[str, Any]] = []
        with self._lock:
            connection = self._connect()
            try:
                with connection.cursor() as cursor:
                    for sql, params in statements:
                        cursor.execute(sql, params)
                    if fetch:
                        rows = list(cursor.fetchall())
            finally:
                connection.close()
        return rows

    async def _execute(self, sql: str, params: tuple = (), fetch: bool = False) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self._run, [(sql, params)], fetch)

    async def ensure_schema(self) -> None:
        await asyncio.to_thread(self._run, [(statement, ()) for statement in SCHEMA_STATEMENTS])

    async def get_chat(self, chat_id: str) -> Optional[Chat]:
        rows = await self._execute(
            "SELECT id, user_id, title, visibility, created_at FROM chat WHERE id = %s",
            (chat_id,),
            fetch=True,
        )
        if not rows:
            return None
        row = rows[0]
        return Chat(
            id=row["id"],
            user_id=row["user_id"],
            title=row["title"],
            visibility=row["visibility"],
            created_at=_from_db_time(row["created_at"]),
        )

    async def create_chat(self, chat_id: str, user_id: str, title: str, visibility: str) -> Chat:
        chat = Chat(id=chat_id, user_id=user_id, title=title[:255], visibility=visibility)
        await self._execute(
            "INSERT IGNORE INTO chat (id, user_id, title, visibility, created_at) VALUES (%s, %s, %s, %s, %s)",
            (chat.id, chat.user_id, chat.title, chat.visibility, _to_db_time(chat.created_at)),
        )
        return chat

    async def delete_chat(self, chat_id: str) -> Optional[Chat]:
        chat = await self.get_chat(chat_id)
        if chat is None:
            return None
        await asyncio.to_thread(
            self._run,
            [
                ("DELETE FROM chat_turn WHERE chat_id = %s", (chat_id,)),
                ("DELETE FROM chat_stream WHERE chat_id = %s", (chat_id,)),
                ("DELETE FROM chat WHERE id = %s", (chat_id,)),
            ],
        )
        return chat

    async def get_turns(self, chat_id: str) -> List[Turn]:
        rows = await self._execute(
            """
            SELECT id, chat_id, role, parts_json, attachments_json, created_at
            FROM chat_turn
            WHERE chat_id = %s
            ORDER BY created_at ASC
            """,
            (chat_id,),
            fetch=True,
        )
        return [
            Turn(
                id=row["id"],
                chat_id=row["chat_id"],
                role=row["role"],
                parts=_parse_json_list(row["parts_json"]),
                attachments=_parse_json_list(row["attachments_json"]),
                created_at=_from_db_time(row["created_at"]),
            )
            for row in rows
        ]

    async def append_turns(self, turns: List[Turn]) -> None:
        statements = [
            (
                """
                INSERT IGNORE INTO chat_turn (id, chat_id, role, parts_json, attachments_json, created_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (
                    turn.id,
                    turn.chat_id,
                    turn.role,
                    json.dumps(turn.parts, ensure_ascii=False),
                    json.dumps(turn.attachments, ensure_ascii=False),
                    _to_db_time(turn.created_at),
                ),
            )
            for turn in turns
        ]
        if statements:
            await asyncio.to_thread(self._run, statements)

    async def count_turns_by_user(self, user_id: str, since_hours: int) -> int:
        cutoff = _to_db_time(now_utc() - timedelta(hours=since_hours))
        rows = await self._execute(
            """
            SELECT COUNT(t.id) AS total
            FROM chat_turn t
            JOIN chat c ON c.id = t.chat_id
            WHERE c.user_id = %s AND t.role = 'user' AND t.created_at >= %s
            """,
            (user_id, cutoff),
            fetch=True,
        )
        if not rows:
            return 0
        return int(rows[0].get("total") or 0)

    async def create_stream_handle(self, handle: StreamHandle) -> None:
        await self._execute(
            "INSERT INTO chat_stream (stream_id, chat_id, created_at) VALUES (%s, %s, %s)",
            (handle.stream_id, handle.chat_id, _to_db_time(handle.created_at)),
        )

    async def get_stream_ids(self, chat_id: str) -> List[str]:
        rows = await self._execute(
            "SELECT stream_id FROM chat_stream WHERE chat_id = %s ORDER BY created_at ASC",
            (chat_id,),
            fetch=True,
        )
        return [row["stream_id"] for row in rows]

    async def save_document(self, document: Document) -> None:
        await self._execute(
            """
            INSERT INTO chat_document (id, created_at, user_id, title, kind, content)
            VALUES (%s, %s, %s, %s, %s, %s)
            """,
            (
                document.id,
                _to_db_time(document.created_at),
                document.user_id,
                document.title[:255],
                document.kind,
                document.content,
            ),
        )

    async def get_document(self, document_id: str) -> Optional[Document]:
        rows = await self._execute(
            """
            SELECT id, created_at, user_id, title, kind, content
            FROM chat_document
            WHERE id = %s
            ORDER BY created_at DESC
            LIMIT 1
            """,
            (document_id,),
            fetch=True,
        )
        if not rows:
            return None
        row = rows[0]
        return Document(
            id=row["id"],
            user_id=row["user_id"],
            title=row["title"],
            kind=row["kind"],
            content=row["content"] or "",
            created_at=_from_db_time(row["created_at"]),
        )

    async def save_suggestions(self, suggestions: List[Suggestion]) -> None:
        statements = [
            (
                """
                INSERT INTO chat_suggestion (
                  id, document_id, document_created_at, original_text,
                  suggested_text, description, user_id, created_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    item.id,
                    item.document_id,
                    _to_db_time(item.document_created_at),
                    item.original_text,
                    item.suggested_text,
                    item.description,
                    item.user_id,
                    _to_db_time(item.created_at),
                ),
            )
            for item in suggestions
        ]
        if statements:
            await asyncio.to_thread(self._run, statements)


def build_ledger(settings: Settings) -> MessageLedger:
    if settings.ledger_backend == "mysql":
        return MySQLLedger(settings)
    if settings.ledger_backend != "memory":
        logger.warning("Unknown CHAT_LEDGER_BACKEND=%s, using in-memory ledger", settings.ledger_backend)
    return MemoryLedger()
