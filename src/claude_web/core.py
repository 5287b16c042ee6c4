"""Core data models for claude-web."""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

ROLES = ("user", "assistant", "system")


@dataclass
class Session:
    """A single chat conversation."""

    id: str
    title: str  # first user prompt (native) or user supplied (fallback)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    workspace: str = ""
    message_count: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "created_at": _format_iso(self.created_at),
            "updated_at": _format_iso(self.updated_at),
            "workspace": self.workspace,
            "message_count": self.message_count,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Session":
        return cls(
            id=data["id"],
            title=data.get("title") or "Untitled",
            created_at=parse_iso(data.get("created_at")),
            updated_at=parse_iso(data.get("updated_at")),
            workspace=data.get("workspace") or "",
            message_count=data.get("message_count"),
        )


@dataclass
class Message:
    """A reconstructed conversation turn. Content is always final, flattened text."""

    id: str
    role: str  # "user" | "assistant" | "system"
    content: str
    timestamp: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "timestamp": _format_iso(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Message":
        return cls(
            id=data["id"],
            role=data["role"],
            content=data["content"],
            timestamp=parse_iso(data.get("timestamp")),
        )


class StorageEventType(str, Enum):
    SESSION_ADDED = "session_added"
    SESSION_UPDATED = "session_updated"
    SESSION_DELETED = "session_deleted"
    MESSAGE_ADDED = "message_added"


@dataclass(frozen=True)
class StorageEvent:
    """A change notification. ``session_id`` is None for "re-list everything"."""

    type: StorageEventType
    session_id: Optional[str] = None

    def to_dict(self) -> dict:
        data = {"type": self.type.value}
        if self.session_id is not None:
            data["session_id"] = self.session_id
        return data


@dataclass(frozen=True)
class StreamEvent:
    """Normalized event produced while the agent answers a turn."""

    type: str  # "chunk" | "done" | "error"
    content: Optional[str] = None
    message: Optional[str] = None

    @classmethod
    def chunk(cls, content: str) -> "StreamEvent":
        return cls(type="chunk", content=content)

    @classmethod
    def done(cls) -> "StreamEvent":
        return cls(type="done")

    @classmethod
    def error(cls, message: str) -> "StreamEvent":
        return cls(type="error", message=message)

    def to_dict(self) -> dict:
        data = {"type": self.type}
        if self.content is not None:
            data["content"] = self.content
        if self.message is not None:
            data["message"] = self.message
        return data


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso(value: str | None) -> datetime | None:
    """Parse an ISO 8601 datetime string."""
    if not value:
        return None
    try:
        if value.endswith("Z"):
            value = value[:-1] + "+00:00"
        parsed = datetime.fromisoformat(value)
    except (ValueError, TypeError):
        return None
    # Naive timestamps are treated as UTC so they sort against aware ones.
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _format_iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None
