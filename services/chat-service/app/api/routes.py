import logging
import uuid
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError

from app.api.schemas import PostChatRequest
from app.core import state
from app.core.auth import request_hints, resolve_session
from app.core.errors import GENERIC_STREAM_ERROR, ChatError
from app.core.events import PipelineEvent, encode_sse
from app.core.metrics import metrics
from app.core.models import Turn, now_utc
from app.core.settings import SETTINGS

router = APIRouter()
logger = logging.getLogger(__name__)

SSE_HEADERS = {"cache-control": "no-cache", "x-accel-buffering": "no"}


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/metrics")
def metrics_endpoint():
    return metrics.snapshot()


@router.post("/chat")
async def post_chat(request: Request):
    trace_id, request_id, _, traceparent = _extract_ids(request)
    try:
        body = await request.json()
        payload = PostChatRequest.model_validate(body)
    except (ValueError, ValidationError) as exc:
        logger.info("rejected chat payload: %s", exc)
        return _error_response(ChatError("bad_request:api"), trace_id, request_id, traceparent)

    session = resolve_session(request, SETTINGS)
    message = _user_turn(payload)
    try:
        run = await state.orchestrator.start_turn(
            chat_id=payload.id,
            message=message,
            selected_model=payload.selected_model,
            visibility=payload.visibility,
            search_category=payload.search_category,
            session=session,
            hints=request_hints(request),
        )
    except ChatError as exc:
        return _error_response(exc, trace_id, request_id, traceparent)
    except Exception:
        logger.exception("chat %s failed before streaming trace_id=%s", payload.id, trace_id)
        metrics.inc("chat_error_total", {"code": "internal"})
        return _stream_response(_failed_stream(), trace_id, request_id, traceparent)

    return _stream_response(run.live(), trace_id, request_id, traceparent)


@router.get("/chat")
async def resume_chat(request: Request, chatId: Optional[str] = None):
    trace_id, request_id, _, traceparent = _extract_ids(request)
    session = resolve_session(request, SETTINGS)
    try:
        events = await state.orchestrator.resume(chatId, session, now_utc())
    except ChatError as exc:
        return _error_response(exc, trace_id, request_id, traceparent)
    except Exception:
        logger.exception("chat %s resume failed trace_id=%s", chatId, trace_id)
        metrics.inc("chat_error_total", {"code": "internal"})
        return _stream_response(_failed_stream(), trace_id, request_id, traceparent)
    if events is None:
        return Response(status_code=204, headers=_response_headers(trace_id, request_id, traceparent))
    return _stream_response(events, trace_id, request_id, traceparent)


@router.delete("/chat")
async def delete_chat(request: Request, id: Optional[str] = None):
    trace_id, request_id, _, traceparent = _extract_ids(request)
    session = resolve_session(request, SETTINGS)
    try:
        chat = await state.orchestrator.delete_chat(id, session)
    except ChatError as exc:
        return _error_response(exc, trace_id, request_id, traceparent)
    return JSONResponse(content=chat.to_dict(), headers=_response_headers(trace_id, request_id, traceparent))


def _user_turn(payload: PostChatRequest) -> Turn:
    message = payload.message
    return Turn(
        id=message.id,
        chat_id=payload.id,
        role="user",
        parts=[part.model_dump() for part in message.parts],
        attachments=[attachment.model_dump(by_alias=True) for attachment in message.attachments],
        created_at=now_utc(),
    )


async def _failed_stream() -> AsyncIterator[PipelineEvent]:
    yield PipelineEvent.error(GENERIC_STREAM_ERROR)
    yield PipelineEvent.done("error")


def _stream_response(
    events: AsyncIterator[PipelineEvent],
    trace_id: str,
    request_id: str,
    traceparent: str | None,
) -> StreamingResponse:
    headers = {**SSE_HEADERS, **_response_headers(trace_id, request_id, traceparent)}
    return StreamingResponse(encode_sse(events), media_type="text/event-stream", headers=headers)


def _extract_ids(request: Request) -> tuple[str, str, str | None, str | None]:
    trace_id = request.headers.get("x-trace-id")
    request_id = request.headers.get("x-request-id")
    traceparent = request.headers.get("traceparent")
    span_id = None

    if not trace_id and traceparent:
        parsed_trace, parsed_span = _parse_traceparent(traceparent)
        trace_id = parsed_trace or trace_id
        span_id = parsed_span

    if not trace_id:
        trace_id = f"trace_{uuid.uuid4().hex}"
    if not request_id:
        request_id = f"req_{uuid.uuid4().hex}"
    return trace_id, request_id, span_id, traceparent


def _parse_traceparent(value: str) -> tuple[str | None, str | None]:
    parts = value.split("-")
    if len(parts) != 4:
        return None, None
    trace_id = parts[1]
    span_id = parts[2]
    if len(trace_id) != 32 or len(span_id) != 16:
        return None, None
    return trace_id, span_id


def _error_response(exc: ChatError, trace_id: str, request_id: str, traceparent: str | None) -> JSONResponse:
    metrics.inc("chat_error_total", {"code": exc.code})
    payload = {
        "error": exc.to_dict(),
        "trace_id": trace_id,
        "request_id": request_id,
    }
    return JSONResponse(
        status_code=exc.status_code,
        content=payload,
        headers=_response_headers(trace_id, request_id, traceparent),
    )


def _response_headers(trace_id: str, request_id: str, traceparent: str | None) -> dict[str, str]:
    headers = {"x-trace-id": trace_id, "x-request-id": request_id}
    if traceparent:
        headers["traceparent"] = traceparent
    return headers
