"""Claude Code session log parser.

Turns the raw text of one ``{sessionId}.jsonl`` file into display-ready
messages. No I/O happens here.

JSONL entry types:
- "user": User messages. ``message.content`` is a plain string for prompts;
  list content carries tool results and is not a conversational turn.
- "assistant": AI responses. ``message.content`` is an array of text,
  thinking and tool_use blocks. One response is written as several lines
  sharing ``message.id``, each a superset of the previous one, so only the
  last line per id is kept.
- "system", "file-history-snapshot", "progress", "summary", ...: Skipped.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Union

from .core import Message, parse_iso

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UserRecord:
    uuid: str
    timestamp: datetime | None
    content: object  # str for prompts, list for tool results


@dataclass(frozen=True)
class AssistantRecord:
    uuid: str
    timestamp: datetime | None
    message_id: str | None
    content: object = field(default_factory=list)


@dataclass(frozen=True)
class OtherRecord:
    type: str


LogRecord = Union[UserRecord, AssistantRecord, OtherRecord]


def parse_record(line: str) -> LogRecord | None:
    """Narrow one JSONL line into a typed record, or None if it is malformed."""
    line = line.strip()
    if not line:
        return None
    try:
        entry = json.loads(line)
    except json.JSONDecodeError:
        return None
    if not isinstance(entry, dict):
        return None

    entry_type = entry.get("type", "")
    msg_data = entry.get("message")
    if not isinstance(msg_data, dict):
        msg_data = {}
    uuid = entry.get("uuid") if isinstance(entry.get("uuid"), str) else ""
    timestamp = entry.get("timestamp")
    timestamp = parse_iso(timestamp) if isinstance(timestamp, str) else None

    if entry_type == "user":
        return UserRecord(uuid=uuid, timestamp=timestamp, content=msg_data.get("content"))

    if entry_type == "assistant":
        message_id = msg_data.get("id")
        return AssistantRecord(
            uuid=uuid,
            timestamp=timestamp,
            message_id=message_id if isinstance(message_id, str) and message_id else None,
            content=msg_data.get("content", []),
        )

    return OtherRecord(type=str(entry_type))


def parse_session_log(text: str) -> list[Message]:
    """Reconstruct the ordered, deduplicated conversation in a session log."""
    records: list[tuple[int, LogRecord]] = []
    for line_num, line in enumerate(text.splitlines(), 1):
        record = parse_record(line)
        if record is None:
            if line.strip():
                logger.debug("Skipping malformed log line %d", line_num)
            continue
        records.append((line_num, record))

    # message.id -> line number of its final (most complete) record
    last_line_for_id: dict[str, int] = {}
    for line_num, record in records:
        if isinstance(record, AssistantRecord) and record.message_id:
            last_line_for_id[record.message_id] = line_num

    messages = []
    for line_num, record in records:
        if isinstance(record, UserRecord):
            if isinstance(record.content, str) and record.content.strip():
                messages.append(Message(
                    id=record.uuid or f"line-{line_num}",
                    role="user",
                    content=record.content,
                    timestamp=record.timestamp,
                ))

        elif isinstance(record, AssistantRecord):
            if record.message_id and last_line_for_id[record.message_id] != line_num:
                continue
            text_content = flatten_content(record.content)
            if not text_content.strip():
                continue
            messages.append(Message(
                id=record.uuid or record.message_id or f"line-{line_num}",
                role="assistant",
                content=text_content,
                timestamp=record.timestamp,
            ))

    return messages


def flatten_content(content: object) -> str:
    """Flatten assistant content blocks into one display string.

    Text blocks are kept verbatim, tool calls become a fenced block naming
    the tool, thinking and unknown blocks are dropped.
    """
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""

    parts = []
    for block in content:
        if not isinstance(block, dict):
            continue

        block_type = block.get("type", "")

        if block_type == "text":
            text = block.get("text")
            if isinstance(text, str):
                parts.append(text)

        elif block_type == "tool_use":
            tool_name = block.get("name") or "unknown"
            tool_input = block.get("input")
            rendered = json.dumps(tool_input, indent=2, ensure_ascii=False) if tool_input else ""
            parts.append(f"\n```tool: {tool_name}\n{rendered}\n```\n")

    return "".join(parts)


def first_user_prompt(lines: Iterable[str]) -> str | None:
    """Return the first plain-text user prompt, for use as a session title."""
    for line in lines:
        record = parse_record(line)
        if isinstance(record, UserRecord) and isinstance(record.content, str):
            if record.content.strip():
                return record.content
    return None
