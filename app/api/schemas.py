from typing import List

from pydantic import BaseModel, Field, field_validator

from app.core.settings import SETTINGS


class Message(BaseModel):
    role: str
    content: str


def _not_blank(value: str) -> str:
    if not value.strip():
        raise ValueError("must not be blank")
    return value.strip()


class ChatQueryRequest(BaseModel):
    message: str = Field(max_length=SETTINGS.chat_max_message_chars)
    conversation_history: List[Message] = []

    @field_validator("message")
    @classmethod
    def message_not_blank(cls, value: str) -> str:
        return _not_blank(value)


class ChatStreamRequest(BaseModel):
    query: str = Field(max_length=SETTINGS.chat_max_message_chars)

    @field_validator("query")
    @classmethod
    def query_not_blank(cls, value: str) -> str:
        return _not_blank(value)
