"""Directory change notification for session stores.

Wraps a watchdog observer around one directory (non-recursive) and turns
raw filesystem events into :class:`StorageEvent` values. Each subscription
owns its own observer thread, so one slow callback never delays another.
"""

import logging
import threading
from pathlib import Path
from typing import Callable, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .core import StorageEvent, StorageEventType

logger = logging.getLogger(__name__)

INDEX_FILENAME = "sessions-index.json"

# Suffix of the scratch file an atomic rewrite is staged in
TEMP_SUFFIX = ".tmp"

# kind is one of "created", "modified", "deleted"
Classifier = Callable[[str, Path], Optional[StorageEvent]]


def classify_native_event(kind: str, path: Path) -> StorageEvent | None:
    """Map a change in a Claude project directory to a storage event.

    A modified log means new turns were appended, so it is reported as
    ``message_added``. Any change to the index means "re-list everything".
    """
    if path.name == INDEX_FILENAME:
        if kind in ("created", "modified"):
            return StorageEvent(StorageEventType.SESSION_UPDATED)
        return None

    if path.suffix != ".jsonl":
        return None

    session_id = path.stem
    if kind == "created":
        return StorageEvent(StorageEventType.SESSION_ADDED, session_id)
    if kind == "modified":
        return StorageEvent(StorageEventType.MESSAGE_ADDED, session_id)
    if kind == "deleted":
        return StorageEvent(StorageEventType.SESSION_DELETED, session_id)
    return None


def classify_fallback_event(kind: str, path: Path) -> StorageEvent | None:
    """Map a change in the fallback data directory to a storage event."""
    if path.suffix != ".json":
        return None

    session_id = path.stem
    if kind == "created":
        return StorageEvent(StorageEventType.SESSION_ADDED, session_id)
    if kind == "modified":
        return StorageEvent(StorageEventType.SESSION_UPDATED, session_id)
    if kind == "deleted":
        return StorageEvent(StorageEventType.SESSION_DELETED, session_id)
    return None


def _event_path_to_path(event_path: bytes | str) -> Path:
    """Convert watchdog event path to Path, handling bytes properly."""
    if isinstance(event_path, bytes):
        return Path(event_path.decode("utf-8", errors="replace"))
    return Path(event_path)


class _StorageEventHandler(FileSystemEventHandler):
    """Watchdog handler that classifies events and forwards them to one callback."""

    def __init__(self, classify: Classifier, callback: Callable[[StorageEvent], None]):
        super().__init__()
        self._classify = classify
        self._callback = callback

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._dispatch("created", _event_path_to_path(event.src_path))

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._dispatch("modified", _event_path_to_path(event.src_path))

    def on_deleted(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._dispatch("deleted", _event_path_to_path(event.src_path))

    def on_moved(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        src = _event_path_to_path(event.src_path)
        dest = _event_path_to_path(event.dest_path)
        if src.suffix == TEMP_SUFFIX and src.parent == dest.parent:
            # An atomic rewrite: the file at dest was replaced in place
            self._dispatch("modified", dest)
            return
        # A rename is a delete at the old path plus a create at the new one
        self._dispatch("deleted", src)
        self._dispatch("created", dest)

    def _dispatch(self, kind: str, path: Path) -> None:
        storage_event = self._classify(kind, path)
        if storage_event is None:
            return
        try:
            self._callback(storage_event)
        except Exception:
            logger.exception("Storage event callback failed for %s", path)


class Subscription:
    """Handle returned by :meth:`DirectoryWatcher.subscribe`.

    Calling it (or :meth:`close`) stops the observer and releases the
    underlying OS watch. Closing twice is harmless.
    """

    def __init__(self, observer: Observer):
        self._observer = observer
        self._lock = threading.Lock()
        self._closed = False

    @property
    def active(self) -> bool:
        return not self._closed

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._observer.stop()
        if self._observer.is_alive():
            self._observer.join(timeout=5)

    def __call__(self) -> None:
        self.close()


class DirectoryWatcher:
    """Publishes classified change events for one directory."""

    def __init__(self, directory: Path, classify: Classifier):
        self.directory = Path(directory)
        self._classify = classify

    def subscribe(self, callback: Callable[[StorageEvent], None]) -> Subscription:
        self.directory.mkdir(parents=True, exist_ok=True)

        handler = _StorageEventHandler(self._classify, callback)
        observer = Observer()
        observer.schedule(handler, str(self.directory), recursive=False)
        observer.daemon = True
        observer.start()
        logger.debug("Watching %s", self.directory)
        return Subscription(observer)
