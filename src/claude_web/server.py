"""FastAPI web server for claude-web."""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, HTTPException, Query, Request
from pydantic import BaseModel
from sse_starlette.sse import EventSourceResponse

from .adapter import StorageAdapter, validate_session_id
from .backends import create_adapter
from .config import get_workspace
from .core import StorageEvent, StreamEvent
from .errors import InvalidArgumentError, NotFoundError, StorageError, UnsupportedOperationError
from .process import ProcessBridge

logger = logging.getLogger(__name__)

WATCH_PING_SECONDS = 30


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.bridge = ProcessBridge()
    yield
    await app.state.bridge.shutdown()


app = FastAPI(title="claude-web", version="0.1.0", lifespan=lifespan)


class CreateSessionRequest(BaseModel):
    title: str | None = None


class RenameSessionRequest(BaseModel):
    title: str


def _get_adapter() -> StorageAdapter:
    return create_adapter()


def _get_bridge(request: Request) -> ProcessBridge:
    """Return the app's process bridge, creating it if the lifespan did not run."""
    bridge = getattr(request.app.state, "bridge", None)
    if bridge is None:
        bridge = request.app.state.bridge = ProcessBridge()
    return bridge


def _check_id(session_id: str) -> str:
    try:
        return validate_session_id(session_id)
    except InvalidArgumentError:
        raise HTTPException(status_code=400, detail="Invalid session ID")


def _http_error(err: StorageError, action: str) -> HTTPException:
    """Map a storage error onto the HTTP status a client can act on."""
    if isinstance(err, InvalidArgumentError):
        return HTTPException(status_code=400, detail=str(err))
    if isinstance(err, NotFoundError):
        return HTTPException(status_code=404, detail=str(err))
    if isinstance(err, UnsupportedOperationError):
        return HTTPException(status_code=501, detail=str(err))
    logger.error("Failed to %s: %s", action, err)
    return HTTPException(status_code=500, detail=f"Failed to {action}")


# ── Routes ───────────────────────────────────────────────────────


@app.get("/api/sync-status")
async def sync_status():
    """Return which store backs this server."""
    return {"mode": _get_adapter().mode}


@app.get("/api/sessions")
async def list_sessions():
    adapter = _get_adapter()
    sessions = await adapter.list_sessions()
    return {"sessions": [s.to_dict() for s in sessions]}


@app.post("/api/sessions", status_code=201)
async def create_session(payload: CreateSessionRequest | None = None):
    adapter = _get_adapter()
    title = payload.title.strip() if payload and payload.title else None
    session = await adapter.create_session(title or None)
    return {"session": session.to_dict()}


@app.get("/api/sessions/{session_id}")
async def get_session(session_id: str):
    _check_id(session_id)
    session = await _get_adapter().get_session(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return {"session": session.to_dict()}


@app.patch("/api/sessions/{session_id}")
async def rename_session(session_id: str, payload: RenameSessionRequest):
    _check_id(session_id)
    if not payload.title.strip():
        raise HTTPException(status_code=400, detail="Title is required")
    try:
        await _get_adapter().rename_session(session_id, payload.title.strip())
    except StorageError as e:
        raise _http_error(e, "rename session")
    return {"ok": True}


@app.delete("/api/sessions/{session_id}")
async def delete_session(session_id: str):
    _check_id(session_id)
    try:
        await _get_adapter().delete_session(session_id)
    except StorageError as e:
        raise _http_error(e, "delete session")
    return {"ok": True}


@app.get("/api/sessions/{session_id}/messages")
async def get_messages(session_id: str):
    _check_id(session_id)
    messages = await _get_adapter().get_messages(session_id)
    return {"messages": [m.to_dict() for m in messages]}


@app.get("/api/sessions/{session_id}/stream")
async def stream_session(
    request: Request,
    session_id: str,
    message: str = Query("", description="The user message to send"),
):
    """Send a message to the agent and stream its reply as SSE."""
    _check_id(session_id)
    if not message.strip():
        raise HTTPException(status_code=400, detail="Message is required")

    events = chat_events(_get_adapter(), _get_bridge(request), session_id, message)
    return EventSourceResponse(_as_sse(events))


@app.post("/api/sessions/{session_id}/stop")
async def stop_session(request: Request, session_id: str):
    _check_id(session_id)
    stopped = _get_bridge(request).abort(session_id)
    return {"ok": True, "stopped": stopped}


@app.get("/api/watch")
async def watch():
    """Stream storage change events as SSE."""
    return EventSourceResponse(
        _as_sse(storage_events(_get_adapter())),
        ping=WATCH_PING_SECONDS,
    )


# ── Streams ──────────────────────────────────────────────────────


async def chat_events(
    adapter: StorageAdapter,
    bridge: ProcessBridge,
    session_id: str,
    message: str,
    workspace: str | None = None,
) -> AsyncIterator[StreamEvent]:
    """Run one chat turn and yield its normalized events.

    The agent resumes the session when the store already has history for
    it. In fallback mode the store is also the record of the conversation,
    so the user turn and the assistant reply are appended to it here.
    """
    resume = await adapter.has_history(session_id)
    record_turns = adapter.mode == "fallback"

    if record_turns:
        try:
            await adapter.append_message(session_id, "user", message)
        except StorageError as e:
            logger.warning("Could not record user turn for %s: %s", session_id, e)
            record_turns = False

    reply = []
    stream = await bridge.spawn(session_id, message, workspace or str(get_workspace()), resume=resume)
    try:
        async for event in stream:
            if event.type == "chunk" and event.content:
                reply.append(event.content)
            yield event
    finally:
        await stream.aclose()

    if record_turns and reply:
        try:
            await adapter.append_message(session_id, "assistant", "".join(reply))
        except StorageError as e:
            logger.warning("Could not record assistant turn for %s: %s", session_id, e)


async def storage_events(adapter: StorageAdapter) -> AsyncIterator[StorageEvent]:
    """Yield storage events from the adapter's watcher until the client goes away."""
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue[StorageEvent] = asyncio.Queue()

    # Watch callbacks arrive on the observer thread.
    unsubscribe = adapter.watch_changes(
        lambda event: loop.call_soon_threadsafe(queue.put_nowait, event)
    )
    try:
        while True:
            yield await queue.get()
    finally:
        unsubscribe()


async def _as_sse(events: AsyncIterator) -> AsyncIterator[dict]:
    async for event in events:
        yield {"data": json.dumps(event.to_dict(), ensure_ascii=False)}
