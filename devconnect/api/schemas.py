from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from devconnect.storage.models import Message

MAX_STRING_LENGTH = 65536
MAX_USERNAME_LENGTH = 64


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and strip zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: Optional[str]) -> Optional[str]:
    # empty values are left for the service to report as missing
    if not value:
        return value
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_.-]+$")


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# auth
class SignupRequest(CamelModel):
    username: Optional[str] = Field(default=None, max_length=MAX_USERNAME_LENGTH)
    email: Optional[str] = None
    password: Optional[str] = Field(default=None, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_signup_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value)

    @field_validator("username")
    @classmethod
    def _validate_username(cls, value: Optional[str]) -> Optional[str]:
        if not value:
            return value
        value = _normalize_unicode(value.strip())
        if not _USERNAME_PATTERN.match(value):
            raise ValueError(
                "username must contain only letters, digits, dots, underscores and hyphens"
            )
        return value


class LoginRequest(CamelModel):
    email: Optional[str] = None
    password: Optional[str] = Field(default=None, max_length=128)

    @field_validator("email")
    @classmethod
    def _normalize_login_email(cls, value: Optional[str]) -> Optional[str]:
        # lookup key only; an unknown or malformed address is "User not found"
        if not value:
            return value
        return _normalize_unicode(value.strip().lower())


class UserSummary(CamelModel):
    id: str
    username: str
    email: str


class AuthResponse(CamelModel):
    message: str
    token: str
    user: UserSummary


class MessageResponse(CamelModel):
    message: str


# chat
class CreateChatRequest(CamelModel):
    participants: Optional[List[str]] = Field(default=None, max_length=256)
    is_group: bool = False
    group_name: Optional[str] = Field(default=None, max_length=128)


class SendMessageRequest(CamelModel):
    text: Optional[str] = Field(default=None, max_length=MAX_STRING_LENGTH)


class ChatMessage(CamelModel):
    id: str
    chat_id: str
    sender: str
    text: str
    read_by: List[str]
    created_at: datetime

    @classmethod
    def from_model(cls, message: Message) -> "ChatMessage":
        return cls(
            id=message.id,
            chat_id=message.chat_id,
            sender=message.sender_id,
            text=message.text,
            read_by=list(message.read_by),
            created_at=message.created_at,
        )


class Participant(CamelModel):
    id: str
    username: str
    avatar_url: Optional[str] = None


class ChatResponse(CamelModel):
    id: str
    participants: List[Participant]
    is_group: bool
    group_name: Optional[str] = None
    last_message: Optional[ChatMessage] = None
    created_at: datetime
    updated_at: datetime


class ReadReceiptResponse(CamelModel):
    status: str = "read"


# posts
class CodeSnippet(CamelModel):
    code: str = Field(..., max_length=MAX_STRING_LENGTH)
    language: Optional[str] = Field(default=None, max_length=64)


class CreatePostRequest(CamelModel):
    content: Optional[str] = Field(default=None, max_length=MAX_STRING_LENGTH)
    code_snippet: Optional[CodeSnippet] = None
    images: Optional[List[str]] = Field(default=None, max_length=16)

    @field_validator("images")
    @classmethod
    def _validate_images(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        if not value:
            return value
        for url in value:
            if not url.startswith(("http://", "https://")):
                raise ValueError("images must be http(s) URLs")
        return value


class CommentRequest(CamelModel):
    content: Optional[str] = Field(default=None, max_length=MAX_STRING_LENGTH)


class PostEnvelope(CamelModel):
    message: str
    post: Dict[str, Any]


class LikeResponse(CamelModel):
    message: str
    likes_count: int
    post: Dict[str, Any]


# social
class FollowersResponse(CamelModel):
    followers: List[UserSummary]
    count: int


class FollowingResponse(CamelModel):
    following: List[UserSummary]
    count: int


class SuggestionsResponse(CamelModel):
    suggestions: List[UserSummary]
    count: int


class HealthResponse(CamelModel):
    status: str
    store: str
    cache: str
    redis_enabled: bool
