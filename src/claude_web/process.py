"""Run the claude CLI per chat turn and normalize its streaming output.

The agent is started with ``-p --output-format stream-json --verbose``,
which prints one JSON object per stdout line. Those lines are translated
into :class:`StreamEvent` chunks, errors, and a final ``done``.

Invariant: at most one live process per session id. Spawning again for
the same id terminates the previous process first.
"""

import asyncio
import codecs
import json
import logging
import os
import threading
from dataclasses import dataclass
from typing import AsyncIterator

from .config import get_claude_command
from .core import StreamEvent

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 64 * 1024
TERMINATE_GRACE_SECONDS = 5.0

STDERR_ERROR_KEYWORDS = ("error", "fatal", "exception")

# Lifecycle/metadata events that carry no displayable text.
IGNORED_EVENT_TYPES = frozenset({
    "system",
    "user",
    "message_start",
    "message_delta",
    "message_stop",
    "content_block_start",
    "content_block_stop",
})


class LineDecoder:
    """Frame a byte stream into complete text lines.

    Keeps the trailing partial line (and any split UTF-8 sequence) between
    calls to :meth:`feed`. Independent of where the bytes come from.
    """

    def __init__(self):
        self.reset()

    def reset(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""

    def feed(self, data: bytes) -> list[str]:
        """Return the lines completed by ``data``, without their newlines."""
        self._pending += self._decoder.decode(data)
        *lines, self._pending = self._pending.split("\n")
        return [line.rstrip("\r") for line in lines]

    def flush(self) -> list[str]:
        """Return whatever is left once the stream has ended."""
        self._pending += self._decoder.decode(b"", final=True)
        rest, self._pending = self._pending, ""
        return [rest.rstrip("\r")] if rest else []


def translate_line(line: str) -> list[StreamEvent]:
    """Translate one stream-json line into zero or more chunk events.

    Lines that are not JSON objects are passed through verbatim.
    """
    line = line.strip()
    if not line:
        return []

    try:
        parsed = json.loads(line)
    except json.JSONDecodeError:
        return [StreamEvent.chunk(line)]
    if not isinstance(parsed, dict):
        return [StreamEvent.chunk(line)]

    event_type = parsed.get("type")
    message = parsed.get("message")
    delta = parsed.get("delta")
    result = parsed.get("result")

    if event_type == "assistant" and isinstance(message, dict):
        blocks = message.get("content")
        if not isinstance(blocks, list):
            return []
        return [
            StreamEvent.chunk(block["text"])
            for block in blocks
            if isinstance(block, dict)
            and block.get("type") == "text"
            and isinstance(block.get("text"), str)
            and block["text"]
        ]

    if event_type == "content_block_delta" and isinstance(delta, dict):
        text = delta.get("text")
        return [StreamEvent.chunk(text)] if isinstance(text, str) and text else []

    if isinstance(result, dict):
        text = result.get("text")
        return [StreamEvent.chunk(text)] if isinstance(text, str) and text else []

    if event_type not in IGNORED_EVENT_TYPES:
        logger.debug("Ignoring stream-json event of type %r", event_type)
    return []


def is_error_output(line: str) -> bool:
    """Return True if a stderr line looks like a real failure, not progress text."""
    lowered = line.lower()
    return any(keyword in lowered for keyword in STDERR_ERROR_KEYWORDS)


@dataclass
class ProcessHandle:
    """A live agent process and its cancellation flag."""

    session_id: str
    process: asyncio.subprocess.Process
    cancelled: bool = False


class TurnStream:
    """Async iterator over the events of one running turn.

    The process is already running when this is returned. :meth:`aclose`
    terminates it and releases its table entry even if iteration never
    started, which a bare async generator would not do.
    """

    def __init__(self, bridge: "ProcessBridge", handle: ProcessHandle):
        self._bridge = bridge
        self._handle = handle
        self._events = bridge._stream(handle)

    @property
    def process(self) -> asyncio.subprocess.Process:
        return self._handle.process

    def __aiter__(self) -> "TurnStream":
        return self

    async def __anext__(self) -> StreamEvent:
        return await self._events.__anext__()

    async def aclose(self) -> None:
        await self._events.aclose()
        await self._bridge._cleanup(self._handle)


class ProcessBridge:
    """Owns the session id -> live process table for one server lifetime."""

    def __init__(self, command: str | None = None):
        self.command = command or get_claude_command()
        self._processes: dict[str, ProcessHandle] = {}
        self._lock = threading.Lock()

    def build_command(self, session_id: str, message: str, resume: bool = False) -> list[str]:
        """Build the argv for one turn. The message is always the last argument."""
        cmd = [self.command]
        if resume:
            cmd.extend(["--resume", session_id])
        else:
            cmd.extend(["--session-id", session_id])
        # stream-json output requires --verbose in print mode
        cmd.extend(["-p", "--output-format", "stream-json", "--verbose", message])
        return cmd

    async def spawn(
        self,
        session_id: str,
        message: str,
        workspace: str,
        resume: bool = False,
    ) -> AsyncIterator[StreamEvent]:
        """Start the agent for one turn and return its normalized event stream.

        Any process already running for ``session_id`` is aborted first.
        Closing the returned iterator early terminates the process.
        """
        self.abort(session_id)

        cmd = self.build_command(session_id, message, resume=resume)
        env = {**os.environ, "FORCE_COLOR": "0", "NO_COLOR": "1"}
        try:
            # create_subprocess_exec passes args as array, no shell
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=workspace,
                env=env,
            )
        except (OSError, ValueError) as e:
            # ValueError: the message or workspace contains a NUL byte
            logger.error("Failed to start %s for session %s: %s", self.command, session_id, e)
            return _spawn_failure(f"Failed to start {self.command}: {e}")

        handle = ProcessHandle(session_id=session_id, process=proc)
        with self._lock:
            previous = self._processes.get(session_id)
            self._processes[session_id] = handle
        if previous is not None:
            # Another spawn for this id raced in while we were starting.
            self._terminate(previous)

        logger.info(
            "Started %s for session %s (pid=%d, %s)",
            self.command, session_id, proc.pid, "resume" if resume else "new",
        )
        return TurnStream(self, handle)

    def abort(self, session_id: str) -> bool:
        """Terminate the live process for a session. Returns False if none was running."""
        with self._lock:
            handle = self._processes.pop(session_id, None)
        if handle is None:
            return False
        self._terminate(handle)
        logger.info("Aborted session %s (pid=%d)", session_id, handle.process.pid)
        return True

    def is_running(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._processes

    def running_sessions(self) -> list[str]:
        with self._lock:
            return list(self._processes)

    async def shutdown(self) -> None:
        """Abort every live process and wait for them to exit."""
        with self._lock:
            handles = list(self._processes.values())
            self._processes.clear()
        for handle in handles:
            self._terminate(handle)
        for handle in handles:
            await _wait_or_kill(handle.process)

    # ── Private helpers ──────────────────────────────────────────────

    def _terminate(self, handle: ProcessHandle) -> None:
        handle.cancelled = True
        if handle.process.returncode is None:
            try:
                handle.process.terminate()
            except ProcessLookupError:
                pass

    def _release(self, handle: ProcessHandle) -> None:
        """Drop the table entry, unless it already belongs to a newer process."""
        with self._lock:
            if self._processes.get(handle.session_id) is handle:
                del self._processes[handle.session_id]

    async def _stream(self, handle: ProcessHandle) -> AsyncIterator[StreamEvent]:
        proc = handle.process
        queue: asyncio.Queue = asyncio.Queue()
        readers = [
            asyncio.create_task(_read_stdout(proc.stdout, queue)),
            asyncio.create_task(_read_stderr(proc.stderr, queue, handle.session_id)),
        ]

        try:
            remaining = len(readers)
            while remaining:
                event = await queue.get()
                if event is None:
                    remaining -= 1
                    continue
                yield event

            returncode = await proc.wait()
            logger.info("Session %s process exited with %s", handle.session_id, returncode)
            if returncode != 0 and not handle.cancelled:
                yield StreamEvent.error(f"{self.command} exited with code {returncode}")
            yield StreamEvent.done()
        finally:
            for task in readers:
                task.cancel()
            await self._cleanup(handle)

    async def _cleanup(self, handle: ProcessHandle) -> None:
        """Make sure the process is gone and its table entry released. Idempotent."""
        if handle.process.returncode is None:
            self._terminate(handle)
            await _wait_or_kill(handle.process)
        self._release(handle)


async def _read_stdout(stream: asyncio.StreamReader, queue: asyncio.Queue) -> None:
    decoder = LineDecoder()
    try:
        while True:
            data = await stream.read(READ_CHUNK_SIZE)
            if not data:
                break
            for line in decoder.feed(data):
                for event in translate_line(line):
                    queue.put_nowait(event)
        for line in decoder.flush():
            for event in translate_line(line):
                queue.put_nowait(event)
    finally:
        queue.put_nowait(None)


async def _read_stderr(stream: asyncio.StreamReader, queue: asyncio.Queue, session_id: str) -> None:
    decoder = LineDecoder()
    try:
        while True:
            data = await stream.read(READ_CHUNK_SIZE)
            lines = decoder.feed(data) if data else decoder.flush()
            for line in lines:
                line = line.strip()
                if not line:
                    continue
                if is_error_output(line):
                    queue.put_nowait(StreamEvent.error(line))
                else:
                    logger.debug("claude stderr [%s]: %s", session_id, line)
            if not data:
                break
    finally:
        queue.put_nowait(None)


async def _wait_or_kill(proc: asyncio.subprocess.Process) -> None:
    try:
        await asyncio.wait_for(proc.wait(), timeout=TERMINATE_GRACE_SECONDS)
    except asyncio.TimeoutError:
        try:
            proc.kill()
        except ProcessLookupError:
            return
        await proc.wait()


async def _spawn_failure(message: str) -> AsyncIterator[StreamEvent]:
    yield StreamEvent.error(message)
    yield StreamEvent.done()
