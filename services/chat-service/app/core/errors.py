from __future__ import annotations

from typing import Optional

STATUS_BY_KIND = {
    "bad_request": 400,
    "unauthorized": 401,
    "forbidden": 403,
    "not_found": 404,
    "rate_limit": 429,
}

MESSAGES = {
    "bad_request:api": "The request couldn't be processed. Please check your input and try again.",
    "unauthorized:chat": "You need to sign in to view this chat. Please sign in and try again.",
    "forbidden:chat": "This chat belongs to another user. Please check the chat ID and try again.",
    "rate_limit:chat": "You have exceeded your maximum number of messages for the day! Please try again later.",
    "not_found:chat": "The requested chat was not found. Please check the chat ID and try again.",
    "not_found:stream": "No resumable stream was found for this chat.",
}

GENERIC_STREAM_ERROR = "Oops, an error occurred!"


class ChatError(Exception):
    """Request-level failure with a stable `kind:subject` code.

    Raised before any bytes are streamed; routes translate it into a JSON
    error body with the status mapped from the kind.
    """

    def __init__(self, code: str, cause: Optional[str] = None) -> None:
        kind, _, subject = code.partition(":")
        if kind not in STATUS_BY_KIND or not subject:
            raise ValueError(f"unknown error code: {code}")
        self.code = code
        self.kind = kind
        self.subject = subject
        self.cause = cause
        self.message = MESSAGES.get(code, "Something went wrong. Please try again later.")
        super().__init__(self.message)

    @property
    def status_code(self) -> int:
        return STATUS_BY_KIND[self.kind]

    def to_dict(self) -> dict:
        payload = {"code": self.code, "message": self.message}
        if self.cause:
            payload["cause"] = self.cause
        return payload
