"""Claude Code native session store.

Reads the agent's own storage under ~/.claude/projects/{projectKey}/:

    sessions-index.json   optional {"version": 1, "entries": [...]} cache
    {sessionId}.jsonl     one per session, appended to by the claude CLI

The claude process is the only writer. This store never writes a log
line itself: creating a session only reserves an id, and appending is
refused.
"""

import asyncio
import json
import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path

from ..adapter import StorageAdapter, StorageCallback, Unsubscribe, validate_session_id
from ..core import Message, Session, parse_iso, utcnow
from ..detect import StorageDetection
from ..errors import UnsupportedOperationError
from ..log_parser import first_user_prompt, parse_session_log
from ..watcher import INDEX_FILENAME, DirectoryWatcher, classify_native_event

logger = logging.getLogger(__name__)

INDEX_VERSION = 1
TITLE_MAX_LENGTH = 100


class NativeStore(StorageAdapter):
    """Adapter over Claude Code's JSONL session logs."""

    mode = "native"

    def __init__(self, detection: StorageDetection):
        self.project_path = Path(detection.path)
        self.workspace = detection.workspace
        self._watcher = DirectoryWatcher(self.project_path, classify_native_event)

    def verify(self) -> None:
        """Raise OSError if the project directory exists but cannot be read."""
        # A missing directory is fine: there are simply no sessions yet.
        if self.project_path.exists():
            next(iter(self.project_path.iterdir()), None)

    async def list_sessions(self) -> list[Session]:
        return await asyncio.to_thread(self._list_sessions)

    async def get_session(self, session_id: str) -> Session | None:
        validate_session_id(session_id)
        return await asyncio.to_thread(self._get_session, session_id)

    async def create_session(self, title: str | None = None) -> Session:
        # The JSONL file is created by `claude --session-id <id>` on the first turn.
        await asyncio.to_thread(self.project_path.mkdir, mode=0o700, parents=True, exist_ok=True)
        now = utcnow()
        return Session(
            id=str(uuid.uuid4()),
            title=title or "New Conversation",
            created_at=now,
            updated_at=now,
            workspace=self.workspace,
        )

    async def delete_session(self, session_id: str) -> None:
        path = self._log_path(session_id)
        await asyncio.to_thread(path.unlink, missing_ok=True)

    async def rename_session(self, session_id: str, title: str) -> None:
        # Titles come from each log's first prompt; there is nowhere to persist an override.
        validate_session_id(session_id)
        logger.warning("rename_session is not supported in native mode (session %s)", session_id)

    async def get_messages(self, session_id: str) -> list[Message]:
        path = self._log_path(session_id)
        return await asyncio.to_thread(_read_log_messages, path)

    async def append_message(
        self,
        session_id: str,
        role: str,
        content: str,
        timestamp: datetime | None = None,
    ) -> Message:
        raise UnsupportedOperationError("append_message", self.mode)

    async def has_history(self, session_id: str) -> bool:
        path = self._log_path(session_id)
        return await asyncio.to_thread(path.exists)

    def watch_changes(self, callback: StorageCallback) -> Unsubscribe:
        return self._watcher.subscribe(callback)

    # ── Private helpers ──────────────────────────────────────────────

    def _log_path(self, session_id: str) -> Path:
        return self.project_path / f"{validate_session_id(session_id)}.jsonl"

    def _list_sessions(self) -> list[Session]:
        if not self.project_path.is_dir():
            return []

        sessions = self._read_index()
        if sessions is None:
            sessions = self._scan_jsonl_sessions()

        sessions.sort(key=lambda s: s.updated_at or _epoch(), reverse=True)
        return sessions

    def _get_session(self, session_id: str) -> Session | None:
        for session in self._list_sessions():
            if session.id == session_id:
                return session

        # The index can lag behind a freshly started session.
        path = self.project_path / f"{session_id}.jsonl"
        if path.is_file():
            return self._session_from_file(path)
        return None

    def _read_index(self) -> list[Session] | None:
        """Read sessions from sessions-index.json, or None if it is absent or malformed."""
        index_path = self.project_path / INDEX_FILENAME
        if not index_path.exists():
            return None

        try:
            data = json.loads(index_path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError, UnicodeDecodeError) as e:
            logger.warning("Failed to read %s: %s", index_path, e)
            return None

        if (
            not isinstance(data, dict)
            or data.get("version") != INDEX_VERSION
            or not isinstance(data.get("entries"), list)
        ):
            logger.warning("Ignoring %s with unexpected shape", index_path)
            return None

        sessions = []
        for entry in data["entries"]:
            if not isinstance(entry, dict) or entry.get("isSidechain"):
                continue

            session_id = entry.get("sessionId")
            if not isinstance(session_id, str) or not session_id:
                continue

            title = entry.get("firstPrompt")
            message_count = entry.get("messageCount")

            sessions.append(Session(
                id=session_id,
                title=_truncate_title(title) if isinstance(title, str) and title else "Untitled",
                created_at=parse_iso(entry.get("created")),
                updated_at=parse_iso(entry.get("modified")),
                workspace=entry.get("projectPath") or self.workspace,
                message_count=message_count if isinstance(message_count, int) else None,
            ))

        return sessions

    def _scan_jsonl_sessions(self) -> list[Session]:
        """Scan for .jsonl files when no usable index exists."""
        sessions = []
        try:
            for jsonl_file in self.project_path.glob("*.jsonl"):
                session = self._session_from_file(jsonl_file)
                if session is not None:
                    sessions.append(session)
        except OSError as e:
            logger.warning("Directory %s unreadable: %s", self.project_path, e)
        return sessions

    def _session_from_file(self, path: Path) -> Session | None:
        try:
            stat = path.stat()
            if not path.is_file():
                return None
            with path.open(encoding="utf-8", errors="replace") as f:
                title = first_user_prompt(f)
        except OSError as e:
            logger.warning("Skipping unreadable session log %s: %s", path, e)
            return None

        created = getattr(stat, "st_birthtime", None) or stat.st_ctime
        return Session(
            id=path.stem,
            title=_truncate_title(title) if title else "Untitled",
            created_at=datetime.fromtimestamp(created, tz=timezone.utc),
            updated_at=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
            workspace=self.workspace,
        )


def _read_log_messages(path: Path) -> list[Message]:
    """Parse a session log, degrading to no messages if it cannot be read."""
    if not path.exists():
        return []
    try:
        text = path.read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        logger.warning("Failed to read JSONL %s: %s", path, e)
        return []
    return parse_session_log(text)


def _truncate_title(title: str) -> str:
    title = title.strip()
    if len(title) > TITLE_MAX_LENGTH:
        return title[:TITLE_MAX_LENGTH] + "..."
    return title


def _epoch() -> datetime:
    """Return a datetime at epoch for sorting fallback."""
    return datetime(1970, 1, 1, tzinfo=timezone.utc)
