from __future__ import annotations

import asyncio
import json
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Dict


class EventType(str, Enum):
    TEXT_DELTA = "text-delta"
    TOOL_CALL = "tool-call"
    TOOL_RESULT = "tool-result"
    STATUS_NOTE = "status-note"
    APPEND_MESSAGE = "append-message"
    ERROR = "error"
    DONE = "done"


@dataclass(frozen=True)
class PipelineEvent:
    type: EventType
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def text_delta(cls, text: str) -> "PipelineEvent":
        return cls(EventType.TEXT_DELTA, {"delta": text})

    @classmethod
    def tool_call(cls, call_id: str, name: str, args: Dict[str, Any]) -> "PipelineEvent":
        return cls(EventType.TOOL_CALL, {"toolCallId": call_id, "toolName": name, "args": args})

    @classmethod
    def tool_result(cls, call_id: str, name: str, result: Any) -> "PipelineEvent":
        return cls(EventType.TOOL_RESULT, {"toolCallId": call_id, "toolName": name, "result": result})

    @classmethod
    def status_note(cls, note: Any) -> "PipelineEvent":
        return cls(EventType.STATUS_NOTE, {"note": note})

    @classmethod
    def append_message(cls, message: Dict[str, Any]) -> "PipelineEvent":
        return cls(EventType.APPEND_MESSAGE, {"message": json.dumps(message, ensure_ascii=False)})

    @classmethod
    def error(cls, message: str) -> "PipelineEvent":
        return cls(EventType.ERROR, {"message": message})

    @classmethod
    def done(cls, status: str = "ok") -> "PipelineEvent":
        return cls(EventType.DONE, {"status": status})

    @property
    def terminal(self) -> bool:
        return self.type is EventType.DONE

    def to_json(self) -> str:
        return json.dumps({"type": self.type.value, "data": self.data}, ensure_ascii=False)

    @classmethod
    def from_json(cls, raw: str) -> "PipelineEvent":
        payload = json.loads(raw)
        return cls(EventType(payload["type"]), payload.get("data") or {})

    def to_sse(self) -> str:
        return sse_event(self.type.value, self.data)


def sse_event(name: str, data: dict | str) -> str:
    if isinstance(data, str):
        payload = data
    else:
        payload = json.dumps(data, ensure_ascii=False)
    return f"event: {name}\ndata: {payload}\n\n"


async def encode_sse(events: AsyncIterator[PipelineEvent]) -> AsyncIterator[str]:
    async for event in events:
        yield event.to_sse()


_WORD_RE = re.compile(r"\s*\S+\s+")


async def smooth_words(events: AsyncIterator[PipelineEvent], delay_ms: int = 0) -> AsyncIterator[PipelineEvent]:
    """Re-chunk text deltas so each emitted delta ends on a word boundary.

    Non-text events flush the pending buffer first, so ordering and content
    are unchanged; only the chunk boundaries move.
    """
    buffer = ""
    async for event in events:
        if event.type is not EventType.TEXT_DELTA:
            if buffer:
                yield PipelineEvent.text_delta(buffer)
                buffer = ""
            yield event
            continue
        buffer += str(event.data.get("delta") or "")
        while True:
            match = _WORD_RE.match(buffer)
            if match is None:
                break
            chunk = match.group(0)
            buffer = buffer[len(chunk):]
            yield PipelineEvent.text_delta(chunk)
            if delay_ms > 0:
                await asyncio.sleep(delay_ms / 1000.0)
    if buffer:
        yield PipelineEvent.text_delta(buffer)
