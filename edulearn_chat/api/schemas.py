from __future__ import annotations

import base64
import binascii
from datetime import datetime
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Bounds on client payloads
MAX_MESSAGES = 200
MAX_ATTACHMENTS_PER_MESSAGE = 10
MAX_CONTENT_LENGTH = 65536


class Attachment(BaseModel):
    """Inline file sent with a message. ``base64`` may be absent for
    attachments the client only references by name."""

    model_config = ConfigDict(extra="allow")

    base64: Optional[str] = None
    type: Optional[str] = None
    name: Optional[str] = None

    @field_validator("base64")
    @classmethod
    def _validate_base64(cls, value: Optional[str]) -> Optional[str]:
        if not value:
            return None
        # Accept data URLs and keep only the payload
        if value.startswith("data:") and "," in value:
            value = value.split(",", 1)[1]
        try:
            base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError("attachment base64 payload is not valid base64") from exc
        return value


class ChatMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: Optional[str] = Field(default=None, max_length=MAX_CONTENT_LENGTH)
    attachments: Optional[List[Attachment]] = Field(
        default=None, max_length=MAX_ATTACHMENTS_PER_MESSAGE
    )


class UserProfile(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    role: Optional[str] = None
    learning_style: Optional[str] = Field(default=None, alias="learningStyle")


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    messages: List[ChatMessage] = Field(..., min_length=1, max_length=MAX_MESSAGES)
    user_profile: UserProfile = Field(..., alias="userProfile")
    session_id: Optional[str] = Field(default=None, alias="sessionId")

    @field_validator("session_id")
    @classmethod
    def _blank_session_is_none(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip()
        return value or None


class ErrorBody(BaseModel):
    """Client-facing error body: ``{error, code, ...detail}``."""

    model_config = ConfigDict(extra="allow")

    error: str
    code: Optional[str] = None
    details: Optional[Any] = None


class ChatHealth(BaseModel):
    success: bool = True
    message: str = "Chatbot service is running"
    timestamp: datetime

