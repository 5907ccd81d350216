from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.core.search import SEARCH_CATEGORIES


class MessagePart(BaseModel):
    type: Literal["text"]
    text: str = Field(min_length=1, max_length=2000)


class Attachment(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    url: str
    name: str = Field(min_length=1, max_length=2000)
    content_type: Literal["image/png", "image/jpg", "image/jpeg"] = Field(alias="contentType")


class ChatMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(min_length=1)
    role: Literal["user"]
    parts: List[MessagePart] = Field(min_length=1)
    attachments: List[Attachment] = []


class PostChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(min_length=1)
    message: ChatMessage
    selected_model: Literal["chat-model", "chat-model-reasoning"] = Field(alias="selectedModel")
    visibility: Literal["public", "private"]
    search_category: Optional[str] = Field(default=None, alias="searchCategory")

    @field_validator("search_category")
    @classmethod
    def _known_category(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        if value not in SEARCH_CATEGORIES:
            raise ValueError(f"unknown search category: {value}")
        return value
