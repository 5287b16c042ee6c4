"""Abstract base class for session storage adapters."""

import re
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable

from .core import Message, Session, StorageEvent
from .errors import InvalidArgumentError

SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")

StorageCallback = Callable[[StorageEvent], None]
Unsubscribe = Callable[[], None]


def validate_session_id(session_id: str) -> str:
    """Return ``session_id`` unchanged if it is safe to use in a file name."""
    if not isinstance(session_id, str) or not SESSION_ID_PATTERN.fullmatch(session_id):
        raise InvalidArgumentError(f"Invalid session id: {session_id!r}")
    return session_id


class StorageAdapter(ABC):
    """Base class for session stores.

    Both the native store (Claude Code's own JSONL logs) and the fallback
    store (one JSON file per session) implement this interface, so the
    HTTP layer never needs to know which one is active.
    """

    mode: str  # "native", "fallback"

    @abstractmethod
    async def list_sessions(self) -> list[Session]:
        """Return all sessions, most recently updated first."""
        ...

    @abstractmethod
    async def get_session(self, session_id: str) -> Session | None:
        ...

    @abstractmethod
    async def create_session(self, title: str | None = None) -> Session:
        ...

    @abstractmethod
    async def delete_session(self, session_id: str) -> None:
        ...

    @abstractmethod
    async def rename_session(self, session_id: str, title: str) -> None:
        ...

    @abstractmethod
    async def get_messages(self, session_id: str) -> list[Message]:
        """Return the reconstructed conversation for a session."""
        ...

    @abstractmethod
    async def append_message(
        self,
        session_id: str,
        role: str,
        content: str,
        timestamp: datetime | None = None,
    ) -> Message:
        ...

    @abstractmethod
    async def has_history(self, session_id: str) -> bool:
        """Return True if the agent should resume rather than start this session."""
        ...

    @abstractmethod
    def watch_changes(self, callback: StorageCallback) -> Unsubscribe:
        """Subscribe to storage changes. Call the returned handle to stop."""
        ...
