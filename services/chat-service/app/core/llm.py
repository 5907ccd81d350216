from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import httpx

from app.core.events import PipelineEvent
from app.core.models import generate_id
from app.core.settings import Settings
from app.core.tools import Tool, ToolContext, find_tool

logger = logging.getLogger(__name__)

REASONING_MODEL_ID = "chat-model-reasoning"
TITLE_MODEL_ID = "title-model"


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: Dict[str, Any]


@dataclass
class StepChunk:
    text: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)


@dataclass
class ResponseMessage:
    id: str
    role: str
    parts: List[Dict[str, Any]]


@dataclass
class GenerationResponse:
    messages: List[ResponseMessage] = field(default_factory=list)


@dataclass
class GenerationOptions:
    model: str
    tools: List[Tool] = field(default_factory=list)
    tool_context: Optional[ToolContext] = None
    max_steps: int = 1
    transform: Optional[Callable[[AsyncIterator[PipelineEvent]], AsyncIterator[PipelineEvent]]] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None


class GenerationStream:
    """Async iterable of generation events.

    `response` is filled while iterating and is complete once the stream is
    exhausted.
    """

    def __init__(self, events: AsyncIterator[PipelineEvent], response: GenerationResponse) -> None:
        self._events = events
        self.response = response

    def __aiter__(self) -> AsyncIterator[PipelineEvent]:
        return self._events.__aiter__()

    async def aclose(self) -> None:
        closer = getattr(self._events, "aclose", None)
        if closer is not None:
            await closer()


def get_trailing_message_id(messages: List[ResponseMessage]) -> Optional[str]:
    assistants = [message for message in messages if message.role == "assistant"]
    if not assistants:
        return None
    return assistants[-1].id


def merge_assistant_parts(messages: List[ResponseMessage]) -> List[Dict[str, Any]]:
    """Fold response messages into the parts of a single assistant turn.

    Tool results are attached to the invocation they answer.
    """
    parts: List[Dict[str, Any]] = []
    invocations: Dict[str, Dict[str, Any]] = {}
    for message in messages:
        if message.role == "assistant":
            for part in message.parts:
                copied = json.loads(json.dumps(part))
                if copied.get("type") == "tool-invocation":
                    invocations[copied["toolInvocation"]["toolCallId"]] = copied
                parts.append(copied)
        elif message.role == "tool":
            for part in message.parts:
                target = invocations.get(str(part.get("toolCallId") or ""))
                if target is None:
                    continue
                target["toolInvocation"]["state"] = "result"
                target["toolInvocation"]["result"] = part.get("result")
    return parts


def model_for(settings: Settings, selected_model: str) -> str:
    if selected_model == REASONING_MODEL_ID:
        return settings.reasoning_model
    if selected_model == TITLE_MODEL_ID:
        return settings.title_model
    return settings.chat_model


class GenerationBackend:
    name = "base"

    def stream(
        self,
        system_prompt: str,
        messages: List[Dict[str, Any]],
        options: GenerationOptions,
    ) -> GenerationStream:
        response = GenerationResponse()
        events = self._run_steps(system_prompt, messages, options, response)
        if options.transform is not None:
            events = options.transform(events)
        return GenerationStream(events, response)

    async def complete(
        self,
        system_prompt: str,
        messages: List[Dict[str, Any]],
        *,
        model: str,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        raise NotImplementedError

    def _step(
        self,
        system_prompt: str,
        history: List[Dict[str, Any]],
        options: GenerationOptions,
    ) -> AsyncIterator[StepChunk]:
        raise NotImplementedError

    async def _run_steps(
        self,
        system_prompt: str,
        messages: List[Dict[str, Any]],
        options: GenerationOptions,
        response: GenerationResponse,
    ) -> AsyncIterator[PipelineEvent]:
        history = list(messages)
        for _ in range(max(1, options.max_steps)):
            text_parts: List[str] = []
            calls: List[ToolCall] = []
            async for chunk in self._step(system_prompt, history, options):
                if chunk.text:
                    text_parts.append(chunk.text)
                    yield PipelineEvent.text_delta(chunk.text)
                calls.extend(chunk.tool_calls)

            text = "".join(text_parts)
            parts: List[Dict[str, Any]] = []
            if text:
                parts.append({"type": "text", "text": text})
            for call in calls:
                parts.append(
                    {
                        "type": "tool-invocation",
                        "toolInvocation": {
                            "state": "call",
                            "toolCallId": call.id,
                            "toolName": call.name,
                            "args": call.arguments,
                        },
                    }
                )
                yield PipelineEvent.tool_call(call.id, call.name, call.arguments)
            if parts:
                response.messages.append(ResponseMessage(id=generate_id(), role="assistant", parts=parts))

            assistant_entry: Dict[str, Any] = {"role": "assistant", "content": text}
            if calls:
                assistant_entry["tool_calls"] = [
                    {
                        "id": call.id,
                        "type": "function",
                        "function": {"name": call.name, "arguments": json.dumps(call.arguments, ensure_ascii=False)},
                    }
                    for call in calls
                ]
            history.append(assistant_entry)

            if not calls:
                return

            for call in calls:
                result = await self._invoke_tool(call, options)
                if options.tool_context is not None:
                    for note in options.tool_context.drain():
                        yield PipelineEvent.status_note(note)
                yield PipelineEvent.tool_result(call.id, call.name, result)
                response.messages.append(
                    ResponseMessage(
                        id=generate_id(),
                        role="tool",
                        parts=[{"type": "tool-result", "toolCallId": call.id, "toolName": call.name, "result": result}],
                    )
                )
                history.append(
                    {"role": "tool", "tool_call_id": call.id, "content": json.dumps(result, ensure_ascii=False)}
                )

    async def _invoke_tool(self, call: ToolCall, options: GenerationOptions) -> Any:
        tool = find_tool(options.tools, call.name)
        if tool is None or options.tool_context is None:
            return {"error": f"Unknown tool: {call.name}"}
        try:
            return await tool.execute(call.arguments, options.tool_context)
        except Exception as exc:
            logger.warning("Tool %s failed: %s", call.name, exc)
            return {"error": str(exc)}


def _tokenize_for_stream(text: str) -> list[str]:
    if not text:
        return []
    tokens = re.findall(r"\S+\s*", text)
    return tokens if tokens else [text]


def _message_text(message: Dict[str, Any]) -> str:
    content = message.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(str(part.get("text") or "") for part in content if isinstance(part, dict))
    return ""


_INSTRUCTION_PREFIX_RE = re.compile(r"^[A-Za-z ]{1,60}:\s*")


class ToyBackend(GenerationBackend):
    """Deterministic offline provider used for local runs and tests."""

    name = "toy"

    def _synthesize_answer(self, history: List[Dict[str, Any]]) -> str:
        last_user = ""
        search_context = ""
        for message in history:
            text = _message_text(message)
            if message.get("role") == "user":
                last_user = text
            elif message.get("role") == "assistant" and text.startswith("## Search Results"):
                search_context = text
        if search_context:
            titles = [line[4:].strip() for line in search_context.splitlines() if line.startswith("### ")]
            if titles:
                return "Based on the search results: " + "; ".join(titles)
            return "I could not find relevant search results for that."
        if not last_user.strip():
            return "How can I help you today?"
        return f"You asked: {last_user.strip()}"

    async def _step(
        self,
        system_prompt: str,
        history: List[Dict[str, Any]],
        options: GenerationOptions,
    ) -> AsyncIterator[StepChunk]:
        for token in _tokenize_for_stream(self._synthesize_answer(history)):
            yield StepChunk(text=token)

    async def complete(
        self,
        system_prompt: str,
        messages: List[Dict[str, Any]],
        *,
        model: str,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        users = [_message_text(message) for message in messages if message.get("role") == "user"]
        text = _INSTRUCTION_PREFIX_RE.sub("", users[-1].strip()) if users else ""
        if max_tokens:
            text = text[: max_tokens * 4]
        return text


class OpenAICompatBackend(GenerationBackend):
    name = "openai_compat"

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    def _url(self) -> str:
        return f"{self._settings.llm_base_url}/chat/completions"

    def _headers(self) -> dict[str, str]:
        headers = {"content-type": "application/json"}
        if self._settings.llm_api_key:
            headers["authorization"] = f"Bearer {self._settings.llm_api_key}"
        return headers

    def _timeout(self) -> float:
        return self._settings.llm_timeout_ms / 1000.0

    def _payload(
        self,
        system_prompt: str,
        messages: List[Dict[str, Any]],
        model: str,
        stream: bool,
        temperature: Optional[float],
        max_tokens: Optional[int],
        tools: Optional[List[Tool]] = None,
    ) -> dict:
        body: dict = {
            "model": model,
            "messages": [{"role": "system", "content": system_prompt}, *messages],
            "stream": stream,
        }
        if temperature is not None:
            body["temperature"] = temperature
        if max_tokens:
            body["max_tokens"] = max_tokens
        if tools:
            body["tools"] = [tool.schema() for tool in tools]
        return body

    async def _step(
        self,
        system_prompt: str,
        history: List[Dict[str, Any]],
        options: GenerationOptions,
    ) -> AsyncIterator[StepChunk]:
        pending: Dict[int, Dict[str, Any]] = {}
        payload = self._payload(
            system_prompt,
            history,
            options.model,
            True,
            options.temperature,
            options.max_tokens,
            options.tools,
        )
        async with httpx.AsyncClient(timeout=self._timeout()) as client:
            async with client.stream("POST", self._url(), json=payload, headers=self._headers()) as response:
                response.raise_for_status()
                async for raw_line in response.aiter_lines():
                    line = raw_line.strip() if raw_line else ""
                    if not line or not line.startswith("data:"):
                        continue
                    data = line.split(":", 1)[1].strip()
                    if data == "[DONE]":
                        break
                    try:
                        event = json.loads(data)
                    except json.JSONDecodeError:
                        continue
                    choices = event.get("choices") if isinstance(event, dict) else None
                    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
                        continue
                    delta = choices[0].get("delta")
                    if not isinstance(delta, dict):
                        continue
                    content = delta.get("content")
                    if isinstance(content, str) and content:
                        yield StepChunk(text=content)
                    for item in delta.get("tool_calls") or []:
                        if not isinstance(item, dict):
                            continue
                        slot = pending.setdefault(int(item.get("index") or 0), {"id": "", "name": "", "arguments": ""})
                        if item.get("id"):
                            slot["id"] = item["id"]
                        function = item.get("function") or {}
                        if function.get("name"):
                            slot["name"] = function["name"]
                        if function.get("arguments"):
                            slot["arguments"] += function["arguments"]

        calls: List[ToolCall] = []
        for index in sorted(pending):
            slot = pending[index]
            try:
                arguments = json.loads(slot["arguments"]) if slot["arguments"] else {}
            except json.JSONDecodeError:
                logger.warning("Dropping malformed tool arguments for %s", slot["name"])
                arguments = {}
            calls.append(ToolCall(id=slot["id"] or generate_id(), name=slot["name"], arguments=arguments))
        if calls:
            yield StepChunk(tool_calls=calls)

    async def complete(
        self,
        system_prompt: str,
        messages: List[Dict[str, Any]],
        *,
        model: str,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        payload = self._payload(system_prompt, messages, model, False, temperature, max_tokens)
        async with httpx.AsyncClient(timeout=self._timeout()) as client:
            response = await client.post(self._url(), json=payload, headers=self._headers())
            response.raise_for_status()
            data = response.json()
        choices = data.get("choices") if isinstance(data, dict) else None
        if isinstance(choices, list) and choices and isinstance(choices[0], dict):
            message = choices[0].get("message")
            if isinstance(message, dict) and message.get("content") is not None:
                return str(message["content"])
            if choices[0].get("text") is not None:
                return str(choices[0]["text"])
        return ""


def build_backend(settings: Settings) -> GenerationBackend:
    if settings.llm_provider == "openai_compat":
        return OpenAICompatBackend(settings)
    if settings.llm_provider != "toy":
        logger.warning("Unknown CHAT_LLM_PROVIDER=%s, using toy backend", settings.llm_provider)
    return ToyBackend()
