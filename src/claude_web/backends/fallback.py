"""File-per-session fallback store.

Used when Claude Code's native storage is not present. Each session is
kept in ``{id}.json`` as ``{"session": {...}, "messages": [...]}``, and
this store is the only writer of those files.
"""

import asyncio
import json
import logging
import os
import threading
import uuid
from datetime import datetime, timedelta
from pathlib import Path

from ..adapter import StorageAdapter, StorageCallback, Unsubscribe, validate_session_id
from ..config import get_fallback_data_path, get_workspace
from ..core import ROLES, Message, Session, utcnow
from ..errors import InvalidArgumentError, NotFoundError
from ..watcher import TEMP_SUFFIX, DirectoryWatcher, classify_fallback_event

logger = logging.getLogger(__name__)


class FallbackStore(StorageAdapter):
    """Adapter that owns one JSON file per session."""

    mode = "fallback"

    def __init__(self, data_dir: Path | None = None, workspace: str | None = None):
        self.data_dir = Path(data_dir) if data_dir else get_fallback_data_path()
        self.workspace = workspace if workspace is not None else str(get_workspace())
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self._watcher = DirectoryWatcher(self.data_dir, classify_fallback_event)
        # serializes read-modify-write cycles across worker threads
        self._write_lock = threading.Lock()

    async def list_sessions(self) -> list[Session]:
        return await asyncio.to_thread(self._list_sessions)

    async def get_session(self, session_id: str) -> Session | None:
        path = self._session_path(session_id)
        data = await asyncio.to_thread(self._read_session_file, path)
        return data[0] if data else None

    async def create_session(self, title: str | None = None) -> Session:
        now = utcnow()
        session = Session(
            id=str(uuid.uuid4()),
            title=title or "New Conversation",
            created_at=now,
            updated_at=now,
            workspace=self.workspace,
            message_count=0,
        )
        await asyncio.to_thread(self._write_session_file, session, [], True)
        logger.info("Created fallback session %s", session.id)
        return session

    async def delete_session(self, session_id: str) -> None:
        path = self._session_path(session_id)
        await asyncio.to_thread(path.unlink, missing_ok=True)

    async def rename_session(self, session_id: str, title: str) -> None:
        if not title or not title.strip():
            raise InvalidArgumentError("Title is required")
        path = self._session_path(session_id)
        await asyncio.to_thread(self._rename, path, session_id, title.strip())

    async def get_messages(self, session_id: str) -> list[Message]:
        path = self._session_path(session_id)
        data = await asyncio.to_thread(self._read_session_file, path)
        return data[1] if data else []

    async def append_message(
        self,
        session_id: str,
        role: str,
        content: str,
        timestamp: datetime | None = None,
    ) -> Message:
        if role not in ROLES:
            raise InvalidArgumentError(f"Unknown role: {role!r}")
        if not content or not content.strip():
            raise InvalidArgumentError("Message content is required")
        path = self._session_path(session_id)

        message = Message(
            id=str(uuid.uuid4()),
            role=role,
            content=content,
            timestamp=timestamp or utcnow(),
        )
        await asyncio.to_thread(self._append, path, session_id, message)
        return message

    async def has_history(self, session_id: str) -> bool:
        return bool(await self.get_messages(session_id))

    def watch_changes(self, callback: StorageCallback) -> Unsubscribe:
        return self._watcher.subscribe(callback)

    # ── Private helpers ──────────────────────────────────────────────

    def _session_path(self, session_id: str) -> Path:
        return self.data_dir / f"{validate_session_id(session_id)}.json"

    def _list_sessions(self) -> list[Session]:
        sessions = []
        for path in self.data_dir.glob("*.json"):
            data = self._read_session_file(path)
            if data:
                sessions.append(data[0])

        sessions.sort(key=lambda s: s.updated_at or s.created_at or utcnow(), reverse=True)
        return sessions

    def _read_session_file(self, path: Path) -> tuple[Session, list[Message]] | None:
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            session = Session.from_dict(data["session"])
            messages = [Message.from_dict(m) for m in data.get("messages", [])]
        except (
            json.JSONDecodeError, OSError, UnicodeDecodeError,
            KeyError, TypeError, AttributeError,
        ) as e:
            logger.warning("Skipping corrupt session file %s: %s", path, e)
            return None

        session.message_count = len(messages)
        return session, messages

    def _write_session_file(
        self,
        session: Session,
        messages: list[Message],
        new: bool = False,
    ) -> None:
        """Write a session file.

        Rewrites go through a temp file and ``os.replace`` so a concurrent
        listing never sees a half-written session. A new session is created
        exclusively under its fresh id, which keeps the watcher reporting it
        as added rather than updated.
        """
        session.message_count = len(messages)
        data = {
            "session": session.to_dict(),
            "messages": [m.to_dict() for m in messages],
        }
        text = json.dumps(data, indent=2, ensure_ascii=False)
        path = self.data_dir / f"{session.id}.json"
        if new:
            with path.open("x", encoding="utf-8") as f:
                f.write(text)
            return

        tmp_path = path.with_name(f".{path.name}{TEMP_SUFFIX}")
        tmp_path.write_text(text, encoding="utf-8")
        os.replace(tmp_path, path)

    def _load_or_raise(self, path: Path, session_id: str) -> tuple[Session, list[Message]]:
        data = self._read_session_file(path)
        if data is None:
            raise NotFoundError(session_id)
        return data

    def _rename(self, path: Path, session_id: str, title: str) -> None:
        with self._write_lock:
            session, messages = self._load_or_raise(path, session_id)
            session.title = title
            session.updated_at = _bump(session.updated_at)
            self._write_session_file(session, messages)

    def _append(self, path: Path, session_id: str, message: Message) -> None:
        with self._write_lock:
            session, messages = self._load_or_raise(path, session_id)
            messages.append(message)
            session.updated_at = _bump(session.updated_at)
            self._write_session_file(session, messages)


def _bump(previous: datetime | None) -> datetime:
    """Return a fresh updated_at that is strictly later than ``previous``."""
    now = utcnow()
    if previous is not None and now <= previous:
        return previous + timedelta(microseconds=1)
    return now
