"""Environment-driven path and command resolution."""

import os
from pathlib import Path


def get_workspace() -> Path:
    """Return the workspace the web process was launched for."""
    env = os.environ.get("CLAUDE_WEB_WORKSPACE")
    if env:
        return Path(env)
    return Path.cwd()


def get_claude_projects_path() -> Path:
    """Return the path to Claude Code's projects directory."""
    env = os.environ.get("CLAUDE_WEB_CLAUDE_PATH")
    if env:
        return Path(env)

    return Path.home() / ".claude" / "projects"


def get_fallback_data_path() -> Path:
    """Return the directory holding fallback session files."""
    env = os.environ.get("CLAUDE_WEB_DATA_DIR")
    if env:
        return Path(env)

    return Path.cwd() / "data" / "sessions"


def get_claude_command() -> str:
    """Return the executable used to run the agent."""
    return os.environ.get("CLAUDE_WEB_CLAUDE_BIN") or "claude"
