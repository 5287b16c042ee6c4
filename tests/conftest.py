"""Shared test fixtures for claude-web."""

import json
import os
import stat
import sys

import pytest

from claude_web.backends import FallbackStore, NativeStore, reset_adapter
from claude_web.detect import locate_claude_storage

WORKSPACE = "/Users/testuser/dev/myapp"
PROJECT_KEY = "-Users-testuser-dev-myapp"


def _jsonl(*entries) -> str:
    return "\n".join(json.dumps(e) for e in entries) + "\n"


SESSION_001_LOG = _jsonl(
    # 1. User prompt
    {
        "type": "user",
        "message": {"role": "user", "content": "Help me refactor the auth module"},
        "timestamp": "2025-01-20T10:00:00Z",
        "uuid": "uuid-001",
        "parentUuid": None,
    },
    # 2. Assistant streaming growth: three lines share message id msg_01
    {
        "type": "assistant",
        "message": {"id": "msg_01", "role": "assistant", "content": [
            {"type": "thinking", "thinking": "I should read the file first."},
        ]},
        "timestamp": "2025-01-20T10:00:10Z",
        "uuid": "uuid-002",
        "parentUuid": "uuid-001",
    },
    {
        "type": "assistant",
        "message": {"id": "msg_01", "role": "assistant", "content": [
            {"type": "thinking", "thinking": "I should read the file first."},
            {"type": "text", "text": "Let me read the current code."},
        ]},
        "timestamp": "2025-01-20T10:00:11Z",
        "uuid": "uuid-003",
        "parentUuid": "uuid-002",
    },
    {
        "type": "assistant",
        "message": {"id": "msg_01", "role": "assistant", "content": [
            {"type": "thinking", "thinking": "I should read the file first."},
            {"type": "text", "text": "Let me read the current code."},
            {"type": "tool_use", "id": "toolu_001", "name": "Read", "input": {"file_path": "/src/auth.ts"}},
        ]},
        "timestamp": "2025-01-20T10:00:12Z",
        "uuid": "uuid-004",
        "parentUuid": "uuid-003",
    },
    # 3. Tool result (user entry with list content, not a conversational turn)
    {
        "type": "user",
        "message": {"role": "user", "content": [
            {"type": "tool_result", "tool_use_id": "toolu_001", "content": "export function auth() {}"},
        ]},
        "timestamp": "2025-01-20T10:00:13Z",
        "uuid": "uuid-005",
        "parentUuid": "uuid-004",
    },
    # 4. file-history-snapshot (skipped)
    {"type": "file-history-snapshot", "snapshot": {"files": []}},
    # 5. System entry (skipped)
    {"type": "system", "content": "Compacted", "uuid": "uuid-006"},
    # 6. Final assistant answer
    {
        "type": "assistant",
        "message": {"id": "msg_02", "role": "assistant", "content": [
            {"type": "text", "text": "The auth module is now split into two functions."},
        ]},
        "timestamp": "2025-01-20T10:01:00Z",
        "uuid": "uuid-007",
        "parentUuid": "uuid-005",
    },
) + "{not valid json\n"

SESSION_002_LOG = _jsonl(
    {
        "type": "user",
        "message": {"role": "user", "content": "Write tests for the API " + "x" * 150},
        "timestamp": "2025-01-21T09:00:00Z",
        "uuid": "uuid-101",
    },
)


@pytest.fixture(autouse=True)
def reset_adapter_cache():
    """Reset the shared adapter before and after each test."""
    reset_adapter()
    yield
    reset_adapter()


@pytest.fixture
def tmp_projects_dir(tmp_path):
    """Create a synthetic ~/.claude/projects directory without an index."""
    projects = tmp_path / "projects"
    project_dir = projects / PROJECT_KEY
    project_dir.mkdir(parents=True)

    (project_dir / "session-001.jsonl").write_text(SESSION_001_LOG, encoding="utf-8")
    (project_dir / "session-002.jsonl").write_text(SESSION_002_LOG, encoding="utf-8")

    # session-002 is the most recently modified
    os.utime(project_dir / "session-001.jsonl", (1_700_000_000, 1_700_000_000))
    os.utime(project_dir / "session-002.jsonl", (1_700_100_000, 1_700_100_000))

    return projects


@pytest.fixture
def tmp_projects_dir_with_index(tmp_projects_dir):
    """Same project directory plus a sessions-index.json."""
    index = {
        "version": 1,
        "entries": [
            {
                "sessionId": "session-001",
                "fullPath": f"/tmp/{PROJECT_KEY}/session-001.jsonl",
                "firstPrompt": "Help me refactor the auth module",
                "messageCount": 7,
                "created": "2025-01-20T10:00:00Z",
                "modified": "2025-01-20T10:01:00Z",
                "gitBranch": "main",
                "projectPath": WORKSPACE,
                "isSidechain": False,
            },
            {
                "sessionId": "session-002",
                "firstPrompt": "Write tests for the API",
                "messageCount": 1,
                "created": "2025-01-21T09:00:00Z",
                "modified": "2025-01-21T09:00:00Z",
                "projectPath": WORKSPACE,
                "isSidechain": False,
            },
            {
                "sessionId": "agent-sidechain",
                "firstPrompt": "Subagent task",
                "messageCount": 3,
                "created": "2025-01-22T09:00:00Z",
                "modified": "2025-01-22T09:00:00Z",
                "projectPath": WORKSPACE,
                "isSidechain": True,
            },
            "not an entry",
        ],
    }
    index_path = tmp_projects_dir / PROJECT_KEY / "sessions-index.json"
    index_path.write_text(json.dumps(index), encoding="utf-8")
    return tmp_projects_dir


@pytest.fixture
def native_store(tmp_projects_dir):
    return NativeStore(locate_claude_storage(WORKSPACE, projects_dir=tmp_projects_dir))


@pytest.fixture
def fallback_store(tmp_path):
    return FallbackStore(data_dir=tmp_path / "sessions", workspace=WORKSPACE)


@pytest.fixture
def fake_claude(tmp_path):
    """Write an executable stand-in for the claude CLI.

    Call the returned function with a shell script body; it returns the
    script path, suitable for ``ProcessBridge(command=...)``.
    """
    if sys.platform == "win32":
        pytest.skip("fake agent scripts need a POSIX shell")

    counter = {"n": 0}

    def make(body: str) -> str:
        counter["n"] += 1
        script = tmp_path / f"fake-claude-{counter['n']}.sh"
        script.write_text("#!/bin/sh\n" + body, encoding="utf-8")
        script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return str(script)

    return make
