from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from app.core.prompts import RequestHints
from app.core.settings import Settings

USER_TYPES = ("guest", "regular")


@dataclass(frozen=True)
class Session:
    user_id: str
    user_type: str = "regular"


def resolve_session(request: Request, settings: Settings) -> Optional[Session]:
    if settings.gateway_keys:
        api_key = request.headers.get("x-api-key")
        if not api_key or api_key not in settings.gateway_keys:
            return None
    user_id = (request.headers.get("x-user-id") or "").strip()
    if not user_id:
        return None
    user_type = (request.headers.get("x-user-type") or "regular").strip().lower()
    if user_type not in USER_TYPES:
        user_type = "regular"
    return Session(user_id=user_id, user_type=user_type)


def request_hints(request: Request) -> RequestHints:
    def header(name: str) -> Optional[str]:
        value = (request.headers.get(name) or "").strip()
        return value or None

    return RequestHints(
        latitude=header("x-client-latitude"),
        longitude=header("x-client-longitude"),
        city=header("x-client-city"),
        country=header("x-client-country"),
    )


def max_turns_per_day(settings: Settings, user_type: str) -> int:
    if user_type == "guest":
        return settings.entitlement_guest
    return settings.entitlement_regular
