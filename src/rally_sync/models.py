"""Wire-facing data types shared by the API client, transport and store."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ChatType(str, Enum):
    PERSONAL = "personal"
    COMMUNITY = "community"
    EVENT = "event"

    @classmethod
    def parse(cls, value: object) -> "ChatType":
        try:
            return cls(str(value))
        except ValueError:
            return cls.PERSONAL


def parse_timestamp(value: object) -> datetime:
    """Parse an RFC 3339 timestamp; naive values are treated as UTC."""

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        parsed = datetime.fromisoformat(value)
    else:
        raise ValueError(f"invalid timestamp: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_each(items: object, parse: Callable[[Dict[str, Any]], T]) -> List[T]:
    """Parse every object in a list payload, dropping items that do not parse."""

    if not isinstance(items, list):
        return []
    parsed: List[T] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        try:
            parsed.append(parse(item))
        except ValueError as exc:
            logger.warning("dropping malformed item %r: %s", item.get("id"), exc)
    return parsed


def _require_str(payload: Dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value:
        raise ValueError(f"{key} required")
    return value


def _optional_str(payload: Dict[str, Any], key: str) -> Optional[str]:
    value = payload.get(key)
    return value if isinstance(value, str) and value else None


@dataclass(frozen=True)
class AuthTokens:
    access_token: str
    refresh_token: str

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "AuthTokens":
        return cls(
            access_token=_require_str(payload, "access_token"),
            refresh_token=_require_str(payload, "refresh_token"),
        )


@dataclass(frozen=True)
class AuthUser:
    id: str
    first_name: str = ""
    is_profile_complete: bool = True

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "AuthUser":
        return cls(
            id=_require_str(payload, "id"),
            first_name=str(payload.get("first_name") or ""),
            is_profile_complete=bool(payload.get("is_profile_complete", True)),
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "first_name": self.first_name,
            "is_profile_complete": self.is_profile_complete,
        }


@dataclass(frozen=True)
class Sender:
    id: str
    first_name: str = ""
    avatar_url: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: object) -> "Sender":
        if not isinstance(payload, dict):
            raise ValueError("sender must be an object")
        return cls(
            id=_require_str(payload, "id"),
            first_name=str(payload.get("first_name") or ""),
            avatar_url=_optional_str(payload, "avatar_url"),
        )


@dataclass(frozen=True)
class Message:
    """One chat message.

    ``pending`` marks a locally-originated entry that the server has not
    confirmed yet; its ``id`` is the client correlation id until then.
    """

    id: str
    chat_id: str
    sender: Sender
    content: str
    created_at: datetime
    reply_to: Optional[str] = None
    client_id: Optional[str] = None
    pending: bool = False
    failed: bool = False

    @classmethod
    def from_payload(cls, payload: Dict[str, Any], chat_id: str | None = None) -> "Message":
        resolved_chat_id = _optional_str(payload, "chat_id") or chat_id
        if not resolved_chat_id:
            raise ValueError("chat_id required")
        content = payload.get("content")
        if not isinstance(content, str):
            raise ValueError("content required")
        return cls(
            id=_require_str(payload, "id"),
            chat_id=resolved_chat_id,
            sender=Sender.from_payload(payload.get("sender")),
            content=content,
            created_at=parse_timestamp(payload.get("created_at")),
            reply_to=_optional_str(payload, "reply_to"),
            client_id=_optional_str(payload, "client_id"),
        )

    def as_failed(self) -> "Message":
        return replace(self, pending=False, failed=True)


@dataclass(frozen=True)
class LastMessage:
    content: str
    sender_id: str
    created_at: datetime

    @classmethod
    def from_payload(cls, payload: object) -> Optional["LastMessage"]:
        if not isinstance(payload, dict):
            return None
        return cls(
            content=str(payload.get("content") or ""),
            sender_id=str(payload.get("sender_id") or ""),
            created_at=parse_timestamp(payload.get("created_at")),
        )

    @classmethod
    def from_message(cls, message: Message) -> "LastMessage":
        return cls(content=message.content, sender_id=message.sender.id, created_at=message.created_at)


@dataclass
class Conversation:
    id: str
    chat_type: ChatType
    title: str = ""
    last_message: Optional[LastMessage] = None
    unread_count: int = 0
    is_muted: bool = False

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "Conversation":
        chat_type = ChatType.parse(payload.get("chat_type"))
        title = ""
        other_user = payload.get("other_user")
        community = payload.get("community")
        event = payload.get("event")
        if isinstance(payload.get("name"), str):
            title = payload["name"]
        elif chat_type is ChatType.PERSONAL and isinstance(other_user, dict):
            title = str(other_user.get("first_name") or "")
        elif chat_type is ChatType.COMMUNITY and isinstance(community, dict):
            title = str(community.get("name") or "")
        elif chat_type is ChatType.EVENT and isinstance(event, dict):
            title = str(event.get("title") or "")
        unread = payload.get("unread_count")
        return cls(
            id=_require_str(payload, "id"),
            chat_type=chat_type,
            title=title,
            last_message=LastMessage.from_payload(payload.get("last_message")),
            unread_count=unread if isinstance(unread, int) and unread > 0 else 0,
            is_muted=bool(payload.get("is_muted", False)),
        )


@dataclass
class MessagePage:
    """A history page in chronological (oldest-first) order."""

    messages: List[Message] = field(default_factory=list)
    has_more: bool = False

    @classmethod
    def from_payload(cls, payload: Dict[str, Any], chat_id: str) -> "MessagePage":
        messages = parse_each(payload.get("data"), lambda item: Message.from_payload(item, chat_id))
        messages.sort(key=lambda message: message.created_at)
        return cls(messages=messages, has_more=bool(payload.get("has_more", False)))
