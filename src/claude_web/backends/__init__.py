"""Detect which session store applies and provide one shared instance."""

import logging
from pathlib import Path

from ..adapter import StorageAdapter
from ..config import get_workspace
from ..detect import locate_claude_storage
from .fallback import FallbackStore
from .native import NativeStore

logger = logging.getLogger(__name__)

# One adapter per process lifetime (populated on first request)
_adapter: StorageAdapter | None = None


def create_adapter(workspace: str | Path | None = None) -> StorageAdapter:
    """Return the shared adapter, preferring Claude Code's native storage."""
    global _adapter
    if _adapter is not None:
        return _adapter

    workspace = str(workspace or get_workspace())
    # An unreadable Claude directory means "use the fallback", not an error
    try:
        storage = locate_claude_storage(workspace)
        if storage.found and storage.format == "jsonl":
            store = NativeStore(storage)
            store.verify()
            logger.info("Using native adapter (path: %s)", storage.path)
            _adapter = store
            return store
        logger.info("Native storage not found: %s", storage.details.get("reason"))
    except OSError as e:
        logger.warning("Native storage unusable, falling back: %s", e)

    _adapter = FallbackStore(workspace=workspace)
    logger.info("Using fallback adapter (path: %s)", _adapter.data_dir)
    return _adapter


def reset_adapter() -> None:
    """Forget the cached adapter so the next call re-detects."""
    global _adapter
    _adapter = None


__all__ = ["FallbackStore", "NativeStore", "create_adapter", "reset_adapter"]
