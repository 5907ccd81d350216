from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def generate_id() -> str:
    return str(uuid.uuid4())


def _iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def parse_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    text = str(value or "").strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


@dataclass
class Chat:
    id: str
    user_id: str
    title: str
    visibility: str = "private"
    created_at: datetime = field(default_factory=now_utc)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "title": self.title,
            "visibility": self.visibility,
            "createdAt": _iso(self.created_at),
        }


@dataclass(frozen=True)
class Turn:
    id: str
    chat_id: str
    role: str
    parts: List[Dict[str, Any]]
    attachments: List[Dict[str, Any]] = field(default_factory=list)
    created_at: datetime = field(default_factory=now_utc)

    def text(self) -> str:
        return "".join(
            str(part.get("text") or "")
            for part in self.parts
            if isinstance(part, dict) and part.get("type") == "text"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "chatId": self.chat_id,
            "role": self.role,
            "parts": self.parts,
            "attachments": self.attachments,
            "createdAt": _iso(self.created_at),
        }


@dataclass(frozen=True)
class StreamHandle:
    stream_id: str
    chat_id: str
    created_at: datetime = field(default_factory=now_utc)


@dataclass(frozen=True)
class SearchResult:
    title: str
    url: str
    published_date: Optional[str] = None
    author: Optional[str] = None
    text: Optional[str] = None


@dataclass
class Document:
    id: str
    user_id: str
    title: str
    kind: str
    content: str
    created_at: datetime = field(default_factory=now_utc)


@dataclass
class Suggestion:
    id: str
    document_id: str
    document_created_at: datetime
    original_text: str
    suggested_text: str
    description: str
    user_id: str
    created_at: datetime = field(default_factory=now_utc)
