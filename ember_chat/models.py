"""Conversation entries and chat sessions, with their persisted dict form."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from .config import NEW_CHAT_TITLE


def utc_now() -> datetime:
    """Return an aware UTC timestamp."""
    return datetime.now(UTC)


def new_entry_id(prefix: str = "") -> str:
    return f"{prefix}{uuid.uuid4().hex}"


def new_session_id() -> str:
    """Time-based unique id (uuid1 embeds the creation clock)."""
    return uuid.uuid1().hex


def _parse_timestamp(value: Any) -> datetime:
    parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


@dataclass
class ConversationEntry:
    """One turn fragment: either a user message or an assistant response."""

    id: str
    user_text: str = ""
    response_text: str = ""
    timestamp: datetime = field(default_factory=utc_now)

    @property
    def is_user(self) -> bool:
        return bool(self.user_text)

    @property
    def is_assistant(self) -> bool:
        return not self.user_text

    @property
    def text(self) -> str:
        """Display text for either kind of entry."""
        return self.user_text if self.is_user else self.response_text

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_text": self.user_text,
            "response_text": self.response_text,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ConversationEntry:
        return cls(
            id=str(data["id"]),
            user_text=str(data.get("user_text") or ""),
            response_text=str(data.get("response_text") or ""),
            timestamp=_parse_timestamp(data["timestamp"]),
        )


@dataclass
class ChatSession:
    """A single conversation and its ordered entries."""

    id: str
    title: str = NEW_CHAT_TITLE
    entries: list[ConversationEntry] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @classmethod
    def new(cls) -> ChatSession:
        now = utc_now()
        return cls(id=new_session_id(), created_at=now, updated_at=now)

    @property
    def has_generated_title(self) -> bool:
        return self.title != NEW_CHAT_TITLE

    def touch(self) -> None:
        self.updated_at = utc_now()

    def completed_exchanges(self) -> int:
        """Count user entries immediately followed by a non-empty assistant entry."""
        count = 0
        for current, following in zip(self.entries, self.entries[1:]):
            if current.is_user and following.is_assistant and following.response_text:
                count += 1
        return count

    def alternates(self) -> bool:
        """True when no two consecutive entries are of the same kind."""
        return all(a.is_user != b.is_user for a, b in zip(self.entries, self.entries[1:]))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "entries": [entry.to_dict() for entry in self.entries],
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChatSession:
        raw_entries = data.get("entries") or []
        if not isinstance(raw_entries, list):
            raise TypeError("entries must be a list")
        return cls(
            id=str(data["id"]),
            title=str(data.get("title") or NEW_CHAT_TITLE),
            entries=[ConversationEntry.from_dict(item) for item in raw_entries],
            created_at=_parse_timestamp(data["created_at"]),
            updated_at=_parse_timestamp(data["updated_at"]),
        )
