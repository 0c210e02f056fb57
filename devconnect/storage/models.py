from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    username: str
    email: str
    avatar_url: Optional[str] = None
    followers: Set[str] = field(default_factory=set)
    following: Set[str] = field(default_factory=set)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Chat:
    id: str
    participants: List[str]
    is_group: bool = False
    group_name: Optional[str] = None
    last_message_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Message:
    id: str
    chat_id: str
    sender_id: str
    text: str
    # ordered, no duplicates
    read_by: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Reply:
    id: str
    user_id: str
    text: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Comment:
    id: str
    user_id: str
    text: str
    likes: List[str] = field(default_factory=list)
    replies: List[Reply] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Post:
    id: str
    user_id: str
    content: str
    code_snippet: Optional[Dict[str, str]] = None
    images: List[str] = field(default_factory=list)
    likes: List[str] = field(default_factory=list)
    comments: List[Comment] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def find_comment(self, comment_id: str) -> Optional[Comment]:
        return next((c for c in self.comments if c.id == comment_id), None)
