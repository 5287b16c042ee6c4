"""Tests for the FastAPI server."""

import asyncio
import json
from pathlib import Path
from unittest.mock import patch

import pytest
from httpx import ASGITransport, AsyncClient

from claude_web.backends import FallbackStore, NativeStore, create_adapter
from claude_web.core import StreamEvent
from claude_web.detect import locate_claude_storage
from claude_web.process import ProcessBridge
from claude_web.server import _as_sse, app, chat_events, storage_events

from conftest import PROJECT_KEY, WORKSPACE


@pytest.fixture(autouse=True)
def reset_bridge():
    """Give every test a fresh process bridge."""
    app.state.bridge = None
    yield
    app.state.bridge = None


def _client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


class RecordingBridge(ProcessBridge):
    """Bridge that records spawn arguments and replays canned events."""

    def __init__(self, events):
        super().__init__(command="claude")
        self.events = events
        self.calls = []

    async def spawn(self, session_id, message, workspace, resume=False):
        self.calls.append({"session_id": session_id, "message": message, "resume": resume})

        async def replay():
            for event in self.events:
                yield event

        return replay()


@pytest.mark.asyncio
async def test_sync_status(native_store):
    with patch("claude_web.server.create_adapter", return_value=native_store):
        async with _client() as client:
            resp = await client.get("/api/sync-status")
            assert resp.status_code == 200
            assert resp.json() == {"mode": "native"}


@pytest.mark.asyncio
async def test_list_sessions(native_store):
    with patch("claude_web.server.create_adapter", return_value=native_store):
        async with _client() as client:
            resp = await client.get("/api/sessions")
            assert resp.status_code == 200
            sessions = resp.json()["sessions"]
            assert [s["id"] for s in sessions] == ["session-002", "session-001"]
            for session in sessions:
                assert "title" in session
                assert "updated_at" in session


@pytest.mark.asyncio
async def test_get_messages(native_store):
    with patch("claude_web.server.create_adapter", return_value=native_store):
        async with _client() as client:
            resp = await client.get("/api/sessions/session-001/messages")
            assert resp.status_code == 200
            messages = resp.json()["messages"]
            assert [m["role"] for m in messages] == ["user", "assistant", "assistant"]
            assert messages[0]["timestamp"].startswith("2025-01-20T10:00:00")


@pytest.mark.asyncio
async def test_invalid_session_id_is_rejected(native_store):
    with patch("claude_web.server.create_adapter", return_value=native_store):
        async with _client() as client:
            for path in (
                "/api/sessions/bad.id/messages",
                "/api/sessions/bad.id/stream?message=hi",
            ):
                resp = await client.get(path)
                assert resp.status_code == 400
            resp = await client.post("/api/sessions/bad.id/stop")
            assert resp.status_code == 400


@pytest.mark.asyncio
async def test_get_session_not_found(native_store):
    with patch("claude_web.server.create_adapter", return_value=native_store):
        async with _client() as client:
            resp = await client.get("/api/sessions/missing")
            assert resp.status_code == 404


@pytest.mark.asyncio
async def test_fallback_session_crud(fallback_store):
    with patch("claude_web.server.create_adapter", return_value=fallback_store):
        async with _client() as client:
            resp = await client.post("/api/sessions", json={"title": "  Trip plan  "})
            assert resp.status_code == 201
            session = resp.json()["session"]
            assert session["title"] == "Trip plan"

            resp = await client.patch(f"/api/sessions/{session['id']}", json={"title": "Renamed"})
            assert resp.json() == {"ok": True}

            resp = await client.get(f"/api/sessions/{session['id']}")
            assert resp.json()["session"]["title"] == "Renamed"

            resp = await client.patch(f"/api/sessions/{session['id']}", json={"title": " "})
            assert resp.status_code == 400

            resp = await client.delete(f"/api/sessions/{session['id']}")
            assert resp.json() == {"ok": True}
            resp = await client.get("/api/sessions")
            assert resp.json()["sessions"] == []


@pytest.mark.asyncio
async def test_create_without_body(fallback_store):
    with patch("claude_web.server.create_adapter", return_value=fallback_store):
        async with _client() as client:
            resp = await client.post("/api/sessions")
            assert resp.status_code == 201
            assert resp.json()["session"]["title"] == "New Conversation"


@pytest.mark.asyncio
async def test_rename_unknown_fallback_session(fallback_store):
    with patch("claude_web.server.create_adapter", return_value=fallback_store):
        async with _client() as client:
            resp = await client.patch("/api/sessions/ghost", json={"title": "x"})
            assert resp.status_code == 404


@pytest.mark.asyncio
async def test_native_rename_is_accepted(native_store):
    with patch("claude_web.server.create_adapter", return_value=native_store):
        async with _client() as client:
            resp = await client.patch("/api/sessions/session-001", json={"title": "Renamed"})
            assert resp.status_code == 200
            resp = await client.get("/api/sessions/session-001")
            assert resp.json()["session"]["title"] == "Help me refactor the auth module"


@pytest.mark.asyncio
async def test_stream_requires_message(native_store):
    with patch("claude_web.server.create_adapter", return_value=native_store):
        async with _client() as client:
            resp = await client.get("/api/sessions/session-001/stream?message=%20")
            assert resp.status_code == 400


@pytest.mark.asyncio
async def test_stop_without_running_process(native_store):
    with patch("claude_web.server.create_adapter", return_value=native_store):
        async with _client() as client:
            resp = await client.post("/api/sessions/session-001/stop")
            assert resp.json() == {"ok": True, "stopped": False}


class TestChatEvents:
    @pytest.mark.asyncio
    async def test_new_native_session_starts_fresh(self, native_store):
        bridge = RecordingBridge([StreamEvent.chunk("hi"), StreamEvent.done()])
        events = [e async for e in chat_events(native_store, bridge, "brand-new", "hello", WORKSPACE)]

        assert bridge.calls == [{"session_id": "brand-new", "message": "hello", "resume": False}]
        assert events[-1] == StreamEvent.done()

    @pytest.mark.asyncio
    async def test_existing_native_session_resumes(self, native_store):
        bridge = RecordingBridge([StreamEvent.done()])
        [e async for e in chat_events(native_store, bridge, "session-001", "more", WORKSPACE)]
        assert bridge.calls[0]["resume"] is True

    @pytest.mark.asyncio
    async def test_fallback_records_both_turns(self, fallback_store):
        session = await fallback_store.create_session()
        bridge = RecordingBridge([
            StreamEvent.chunk("Hel"),
            StreamEvent.chunk("lo"),
            StreamEvent.done(),
        ])

        events = [e async for e in chat_events(fallback_store, bridge, session.id, "hi", WORKSPACE)]
        assert [e.type for e in events] == ["chunk", "chunk", "done"]
        assert bridge.calls[0]["resume"] is False

        messages = await fallback_store.get_messages(session.id)
        assert [(m.role, m.content) for m in messages] == [("user", "hi"), ("assistant", "Hello")]

        # The second turn resumes
        [e async for e in chat_events(fallback_store, bridge, session.id, "again", WORKSPACE)]
        assert bridge.calls[1]["resume"] is True

    @pytest.mark.asyncio
    async def test_events_are_serialized_as_sse_data(self):
        async def events():
            yield StreamEvent.chunk("h\u00e9")
            yield StreamEvent.error("boom")
            yield StreamEvent.done()

        frames = [f async for f in _as_sse(events())]
        assert [json.loads(f["data"]) for f in frames] == [
            {"type": "chunk", "content": "h\u00e9"},
            {"type": "error", "message": "boom"},
            {"type": "done"},
        ]


@pytest.mark.asyncio
async def test_storage_events_follow_the_store(fallback_store):
    stream = storage_events(fallback_store)
    # Subscription happens on first iteration
    pending = asyncio.ensure_future(stream.__anext__())
    await asyncio.sleep(0.5)

    session = await fallback_store.create_session()
    event = await asyncio.wait_for(pending, timeout=5)
    assert event.session_id == session.id
    await stream.aclose()


class TestAdapterSelection:
    def test_prefers_native_storage(self, tmp_projects_dir, monkeypatch):
        monkeypatch.setenv("CLAUDE_WEB_CLAUDE_PATH", str(tmp_projects_dir))
        adapter = create_adapter(WORKSPACE)
        assert isinstance(adapter, NativeStore)
        assert adapter.project_path == tmp_projects_dir / PROJECT_KEY
        # One adapter per process lifetime
        assert create_adapter("/somewhere/else") is adapter

    def test_falls_back_without_claude_storage(self, tmp_path, monkeypatch):
        monkeypatch.setenv("CLAUDE_WEB_CLAUDE_PATH", str(tmp_path / "missing"))
        monkeypatch.setenv("CLAUDE_WEB_DATA_DIR", str(tmp_path / "data"))
        adapter = create_adapter(WORKSPACE)
        assert isinstance(adapter, FallbackStore)
        assert adapter.data_dir == tmp_path / "data"

    def test_unreadable_project_falls_back(self, tmp_path, monkeypatch):
        projects = tmp_path / "projects"
        projects.mkdir()
        (projects / PROJECT_KEY).write_text("", encoding="utf-8")
        monkeypatch.setenv("CLAUDE_WEB_CLAUDE_PATH", str(projects))
        monkeypatch.setenv("CLAUDE_WEB_DATA_DIR", str(tmp_path / "data"))
        assert isinstance(create_adapter(WORKSPACE), FallbackStore)

    def test_unlistable_project_falls_back(self, tmp_projects_dir, tmp_path, monkeypatch):
        real_iterdir = Path.iterdir

        def iterdir(self):
            if self.name == PROJECT_KEY:
                raise PermissionError(13, "Permission denied", str(self))
            return real_iterdir(self)

        monkeypatch.setattr(Path, "iterdir", iterdir)
        monkeypatch.setenv("CLAUDE_WEB_CLAUDE_PATH", str(tmp_projects_dir))
        monkeypatch.setenv("CLAUDE_WEB_DATA_DIR", str(tmp_path / "data"))
        assert isinstance(create_adapter(WORKSPACE), FallbackStore)

    def test_locate_reports_new_project(self, tmp_path):
        (tmp_path / "projects").mkdir()
        detection = locate_claude_storage("/new/workspace", projects_dir=tmp_path / "projects")
        assert detection.found
        assert detection.path.name == "-new-workspace"
        assert detection.details["session_count"] == 0
