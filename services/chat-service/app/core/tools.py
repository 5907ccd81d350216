from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from app.core.models import Document, Suggestion, generate_id, now_utc

logger = logging.getLogger(__name__)

DOCUMENT_KINDS = ("text", "code", "sheet")

DOCUMENT_PROMPTS = {
    "text": "Write about the given topic. Markdown is supported. Use headings wherever appropriate.",
    "code": (
        "You are a Python code generator that creates self-contained, executable code snippets. "
        "Each snippet should be complete and runnable on its own, print its output, and stay under 15 lines."
    ),
    "sheet": "You are a spreadsheet creation assistant. Create a spreadsheet in csv format based on the given prompt.",
}

SUGGESTIONS_PROMPT = (
    "You are a help writing assistant. Given a piece of writing, please offer suggestions to improve "
    "the piece of writing and describe the change. It is very important for the edits to contain full "
    "sentences instead of just words. Max 5 suggestions. Return ONLY a JSON array of objects with keys "
    "originalSentence, suggestedSentence, description."
)


@dataclass
class ToolContext:
    user_id: str
    backend: Any
    ledger: Any
    model: str
    weather_url: str
    timeout_sec: float = 10.0
    notes: List[Dict[str, Any]] = field(default_factory=list)

    def emit(self, note: Dict[str, Any]) -> None:
        self.notes.append(note)

    def drain(self) -> List[Dict[str, Any]]:
        pending, self.notes = self.notes, []
        return pending


@dataclass(frozen=True)
class Tool:
    name: str
    description: str
    parameters: Dict[str, Any]
    execute: Callable[[Dict[str, Any], ToolContext], Awaitable[Any]]

    def schema(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


def update_document_prompt(content: str, kind: str) -> str:
    if kind == "code":
        return f"Improve the following code snippet based on the given prompt.\n\n{content}"
    if kind == "sheet":
        return f"Improve the following spreadsheet based on the given prompt.\n\n{content}"
    return f"Improve the following contents of the document based on the given prompt.\n\n{content}"


async def get_weather(args: Dict[str, Any], ctx: ToolContext) -> Any:
    params = {
        "latitude": float(args["latitude"]),
        "longitude": float(args["longitude"]),
        "current": "temperature_2m",
        "hourly": "temperature_2m",
        "daily": "sunrise,sunset",
        "timezone": "auto",
    }
    async with httpx.AsyncClient(timeout=ctx.timeout_sec) as client:
        response = await client.get(ctx.weather_url, params=params)
        response.raise_for_status()
        return response.json()


async def create_document(args: Dict[str, Any], ctx: ToolContext) -> Any:
    title = str(args.get("title") or "").strip() or "Untitled"
    kind = args.get("kind") if args.get("kind") in DOCUMENT_KINDS else "text"
    document_id = generate_id()

    ctx.emit({"type": "kind", "content": kind})
    ctx.emit({"type": "id", "content": document_id})
    ctx.emit({"type": "title", "content": title})
    ctx.emit({"type": "clear", "content": ""})

    content = await ctx.backend.complete(
        DOCUMENT_PROMPTS[kind],
        [{"role": "user", "content": title}],
        model=ctx.model,
    )
    ctx.emit({"type": f"{kind}-delta", "content": content})
    ctx.emit({"type": "finish", "content": ""})

    await ctx.ledger.save_document(
        Document(id=document_id, user_id=ctx.user_id, title=title, kind=kind, content=content)
    )
    return {
        "id": document_id,
        "title": title,
        "kind": kind,
        "content": "A document was created and is now visible to the user.",
    }


async def update_document(args: Dict[str, Any], ctx: ToolContext) -> Any:
    document_id = str(args.get("id") or "")
    description = str(args.get("description") or "")
    document = await ctx.ledger.get_document(document_id)
    if document is None:
        return {"error": "Document not found"}

    ctx.emit({"type": "clear", "content": document.title})
    content = await ctx.backend.complete(
        update_document_prompt(document.content, document.kind),
        [{"role": "user", "content": description}],
        model=ctx.model,
    )
    ctx.emit({"type": f"{document.kind}-delta", "content": content})
    ctx.emit({"type": "finish", "content": ""})

    await ctx.ledger.save_document(
        Document(
            id=document.id,
            user_id=ctx.user_id,
            title=document.title,
            kind=document.kind,
            content=content,
        )
    )
    return {
        "id": document.id,
        "title": document.title,
        "kind": document.kind,
        "content": "The document has been updated successfully.",
    }


def _extract_json_array(text: str) -> List[Dict[str, Any]]:
    trimmed = (text or "").strip()
    if trimmed.startswith("```"):
        trimmed = re.sub(r"^```(?:json)?", "", trimmed).strip()
        trimmed = re.sub(r"```$", "", trimmed).strip()
    start = trimmed.find("[")
    end = trimmed.rfind("]")
    if start == -1 or end == -1 or end <= start:
        return []
    try:
        parsed = json.loads(trimmed[start : end + 1])
    except json.JSONDecodeError:
        return []
    return [item for item in parsed if isinstance(item, dict)] if isinstance(parsed, list) else []


async def request_suggestions(args: Dict[str, Any], ctx: ToolContext) -> Any:
    document_id = str(args.get("documentId") or "")
    document = await ctx.ledger.get_document(document_id)
    if document is None or not document.content:
        return {"error": "Document not found"}

    raw = await ctx.backend.complete(
        SUGGESTIONS_PROMPT,
        [{"role": "user", "content": document.content}],
        model=ctx.model,
    )
    suggestions: List[Suggestion] = []
    for item in _extract_json_array(raw)[:5]:
        original = str(item.get("originalSentence") or "").strip()
        suggested = str(item.get("suggestedSentence") or "").strip()
        if not original or not suggested:
            continue
        suggestion = Suggestion(
            id=generate_id(),
            document_id=document.id,
            document_created_at=document.created_at,
            original_text=original,
            suggested_text=suggested,
            description=str(item.get("description") or ""),
            user_id=ctx.user_id,
        )
        suggestions.append(suggestion)
        ctx.emit(
            {
                "type": "suggestion",
                "content": {
                    "id": suggestion.id,
                    "documentId": suggestion.document_id,
                    "originalText": suggestion.original_text,
                    "suggestedText": suggestion.suggested_text,
                    "description": suggestion.description,
                    "createdAt": now_utc().isoformat(),
                },
            }
        )

    if suggestions:
        await ctx.ledger.save_suggestions(suggestions)
    ctx.emit({"type": "finish", "content": ""})
    return {
        "id": document.id,
        "title": document.title,
        "kind": document.kind,
        "message": "Suggestions have been added to the document",
    }


def build_tools() -> List[Tool]:
    return [
        Tool(
            name="getWeather",
            description="Get the current weather at a location",
            parameters={
                "type": "object",
                "properties": {
                    "latitude": {"type": "number"},
                    "longitude": {"type": "number"},
                },
                "required": ["latitude", "longitude"],
            },
            execute=get_weather,
        ),
        Tool(
            name="createDocument",
            description=(
                "Create a document for a writing or content creation activities. "
                "This tool will call other functions that will generate the contents of the document "
                "based on the title and kind."
            ),
            parameters={
                "type": "object",
                "properties": {
                    "title": {"type": "string"},
                    "kind": {"type": "string", "enum": list(DOCUMENT_KINDS)},
                },
                "required": ["title", "kind"],
            },
            execute=create_document,
        ),
        Tool(
            name="updateDocument",
            description="Update a document with the given description.",
            parameters={
                "type": "object",
                "properties": {
                    "id": {"type": "string", "description": "The ID of the document to update"},
                    "description": {"type": "string", "description": "The description of changes that need to be made"},
                },
                "required": ["id", "description"],
            },
            execute=update_document,
        ),
        Tool(
            name="requestSuggestions",
            description="Request suggestions for a document",
            parameters={
                "type": "object",
                "properties": {
                    "documentId": {"type": "string", "description": "The ID of the document to request edits"},
                },
                "required": ["documentId"],
            },
            execute=request_suggestions,
        ),
    ]


def find_tool(tools: List[Tool], name: str) -> Optional[Tool]:
    for tool in tools:
        if tool.name == name:
            return tool
    return None
