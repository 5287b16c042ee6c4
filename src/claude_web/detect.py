"""Locate Claude Code's session storage for a workspace."""

import logging
from dataclasses import dataclass, field
from pathlib import Path

from .config import get_claude_projects_path

logger = logging.getLogger(__name__)

WORKSPACE_MARKERS = (".claude", ".git", "package.json", "pyproject.toml")


@dataclass
class StorageDetection:
    """Where (and whether) native JSONL storage was found."""

    found: bool
    path: Path  # the project directory, or the projects directory if not found
    format: str  # "jsonl" | "unknown"
    workspace: str = ""
    details: dict = field(default_factory=dict)


def encode_project_key(workspace: str | Path) -> str:
    """Encode a workspace path the way Claude Code names its project directories.

    ``/Users/alice/dev/app`` -> ``-Users-alice-dev-app``
    """
    return str(workspace).replace("\\", "-").replace("/", "-")


def locate_claude_storage(
    workspace: str | Path,
    projects_dir: Path | None = None,
) -> StorageDetection:
    """Return the native storage location for ``workspace``.

    The project directory itself may not exist yet; Claude creates it when
    the first session in that workspace starts.
    """
    projects = projects_dir or get_claude_projects_path()
    if not projects.is_dir():
        return StorageDetection(
            found=False,
            path=projects,
            format="unknown",
            details={"reason": f"No projects directory at {projects}"},
        )

    project_key = encode_project_key(workspace)
    project_path = projects / project_key
    details: dict = {"project_key": project_key, "projects_dir": str(projects)}

    if project_path.is_dir():
        entries = [p.name for p in project_path.iterdir()]
        details["session_count"] = sum(1 for name in entries if name.endswith(".jsonl"))
        details["has_index"] = "sessions-index.json" in entries
    else:
        details["session_count"] = 0
        details["has_index"] = False
        details["note"] = "Project directory does not exist yet; created on first session."

    return StorageDetection(
        found=True,
        path=project_path,
        format="jsonl",
        workspace=str(workspace),
        details=details,
    )


def detect_workspace(cwd: Path) -> Path:
    """Walk up from ``cwd`` to the nearest project root.

    Markers are tried in priority order: a ``.claude`` directory anywhere
    above wins over a closer ``.git``, and so on.
    """
    cwd = cwd.resolve()
    for marker in WORKSPACE_MARKERS:
        for directory in (cwd, *cwd.parents):
            if directory.parent == directory:
                break  # never treat the filesystem root as a workspace
            if (directory / marker).exists():
                logger.debug("Workspace %s found via %s", directory, marker)
                return directory
    return cwd
