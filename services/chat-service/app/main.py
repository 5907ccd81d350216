import logging
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.routes import router as api_router
from app.core import state
from app.core.ledger import MySQLLedger
from app.core.settings import SETTINGS
from app.core.stream_registry import close_stream_registry, get_stream_registry

DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:5173",
]


def parse_origins(raw: str) -> list[str]:
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


raw_origins = os.getenv("CORS_ALLOW_ORIGINS", "")
origins = parse_origins(raw_origins)
origin_regex = os.getenv("CORS_ALLOW_ORIGIN_REGEX", "").strip() or None
if not origins and not origin_regex:
    origins = DEFAULT_CORS_ORIGINS

app = FastAPI(title="chat-service")
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_origin_regex=origin_regex,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["x-trace-id", "x-request-id"],
)
app.include_router(api_router)
logger = logging.getLogger(__name__)


@app.on_event("startup")
async def startup():
    logger.info(
        "chat config llm_provider=%s search_provider=%s ledger=%s resumable=%s",
        SETTINGS.llm_provider,
        SETTINGS.search_provider,
        SETTINGS.ledger_backend,
        bool(SETTINGS.redis_url),
    )
    if isinstance(state.ledger, MySQLLedger) and SETTINGS.db_auto_migrate:
        try:
            await state.ledger.ensure_schema()
        except Exception as exc:
            logger.warning("chat schema bootstrap failed: %s", exc)
    await get_stream_registry()


@app.on_event("shutdown")
async def shutdown():
    await close_stream_registry()
    await state.ledger.close()
