import os
from dataclasses import dataclass


def _split_keys(raw: str) -> list[str]:
    return [item.strip() for item in raw.split(",") if item.strip()]


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class Settings:
    gateway_keys: list[str]
    llm_provider: str
    llm_base_url: str
    llm_api_key: str
    llm_timeout_ms: int
    chat_model: str
    reasoning_model: str
    title_model: str
    max_steps: int
    stream_token_delay_ms: int
    search_provider: str
    search_base_url: str
    search_api_key: str
    search_num_results: int
    search_max_characters: int
    search_timeout_ms: int
    redis_url: str
    stream_ttl_sec: int
    stream_poll_ms: int
    stream_queue_size: int
    request_timeout_sec: float
    resume_window_sec: int
    ledger_backend: str
    db_host: str
    db_port: int
    db_name: str
    db_user: str
    db_password: str
    db_connect_timeout_ms: int
    db_auto_migrate: bool
    entitlement_guest: int
    entitlement_regular: int
    weather_url: str


def load_settings() -> Settings:
    return Settings(
        gateway_keys=_split_keys(os.getenv("CHAT_GATEWAY_KEYS", "")),
        llm_provider=os.getenv("CHAT_LLM_PROVIDER", "toy").strip().lower(),
        llm_base_url=os.getenv("CHAT_LLM_BASE_URL", "http://localhost:11434/v1").rstrip("/"),
        llm_api_key=os.getenv("CHAT_LLM_API_KEY", ""),
        llm_timeout_ms=int(os.getenv("CHAT_LLM_TIMEOUT_MS", "30000")),
        chat_model=os.getenv("CHAT_MODEL", "toy-chat-v1").strip(),
        reasoning_model=os.getenv("CHAT_REASONING_MODEL", "toy-reasoning-v1").strip(),
        title_model=os.getenv("CHAT_TITLE_MODEL", "toy-title-v1").strip(),
        max_steps=max(1, int(os.getenv("CHAT_MAX_STEPS", "5"))),
        stream_token_delay_ms=int(os.getenv("CHAT_STREAM_TOKEN_DELAY_MS", "10")),
        search_provider=os.getenv("CHAT_SEARCH_PROVIDER", "mock").strip().lower(),
        search_base_url=os.getenv("CHAT_SEARCH_BASE_URL", "https://api.exa.ai").rstrip("/"),
        search_api_key=os.getenv("EXA_API_KEY", ""),
        search_num_results=min(5, max(1, int(os.getenv("CHAT_SEARCH_NUM_RESULTS", "2")))),
        search_max_characters=int(os.getenv("CHAT_SEARCH_MAX_CHARACTERS", "500")),
        search_timeout_ms=int(os.getenv("CHAT_SEARCH_TIMEOUT_MS", "8000")),
        redis_url=os.getenv("REDIS_URL", "").strip(),
        stream_ttl_sec=max(1, int(os.getenv("CHAT_STREAM_TTL_SEC", "120"))),
        stream_poll_ms=max(5, int(os.getenv("CHAT_STREAM_POLL_MS", "50"))),
        stream_queue_size=max(1, int(os.getenv("CHAT_STREAM_QUEUE_SIZE", "64"))),
        request_timeout_sec=float(os.getenv("CHAT_REQUEST_TIMEOUT_SEC", "60")),
        resume_window_sec=int(os.getenv("CHAT_RESUME_WINDOW_SEC", "15")),
        ledger_backend=os.getenv("CHAT_LEDGER_BACKEND", "memory").strip().lower(),
        db_host=os.getenv("CHAT_DB_HOST", "127.0.0.1").strip(),
        db_port=int(os.getenv("CHAT_DB_PORT", "3306")),
        db_name=os.getenv("CHAT_DB_NAME", "chat").strip(),
        db_user=os.getenv("CHAT_DB_USER", "chat").strip(),
        db_password=os.getenv("CHAT_DB_PASSWORD", "chat"),
        db_connect_timeout_ms=max(50, int(os.getenv("CHAT_DB_CONNECT_TIMEOUT_MS", "500"))),
        db_auto_migrate=_env_bool("CHAT_DB_AUTO_MIGRATE", "true"),
        entitlement_guest=int(os.getenv("CHAT_ENTITLEMENT_GUEST", "20")),
        entitlement_regular=int(os.getenv("CHAT_ENTITLEMENT_REGULAR", "100")),
        weather_url=os.getenv("CHAT_WEATHER_URL", "https://api.open-meteo.com/v1/forecast").rstrip("/"),
    )


SETTINGS = load_settings()
