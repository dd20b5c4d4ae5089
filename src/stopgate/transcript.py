from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

LOGGER = logging.getLogger(__name__)

RECENT_MESSAGE_LIMIT = 20

TranscriptReader = Callable[[str, Optional[datetime]], str]


@dataclass
class TranscriptEntry:
    timestamp: datetime
    role: str  # user|assistant|system
    content: str


def parse_timestamp(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _message_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if not isinstance(item, dict):
                continue
            if item.get("type") == "text" and item.get("text"):
                parts.append(str(item["text"]))
            elif item.get("type") == "tool_use":
                parts.append("[Tool use omitted]")
        return " ".join(parts)
    return "[Complex content]"


def simplify_entry(raw: dict[str, Any]) -> TranscriptEntry | None:
    timestamp = parse_timestamp(raw.get("timestamp"))
    if timestamp is None:
        return None
    entry_type = raw.get("type")
    role = entry_type if entry_type in {"user", "assistant", "system"} else "system"

    if role == "system":
        content = str(raw.get("content") or "")
        if raw.get("subtype") == "compact_boundary":
            content = "=== Session Compacted ==="
        elif raw.get("subtype") == "informational":
            content = content.split("\n")[0] or "System message"
        return TranscriptEntry(timestamp, "system", content)

    if raw.get("toolUseResult") is not None:
        return TranscriptEntry(timestamp, "system", "[Tool result omitted]")

    message = raw.get("message")
    if isinstance(message, dict):
        msg_role = message.get("role")
        if msg_role in {"user", "assistant"}:
            role = msg_role
        return TranscriptEntry(timestamp, role, _message_text(message.get("content")))

    content = raw.get("content") or raw.get("summary") or "[No content]"
    return TranscriptEntry(timestamp, role, str(content))


def load_entries(path: str) -> list[TranscriptEntry]:
    entries: list[TranscriptEntry] = []
    with open(path, encoding="utf-8", errors="replace") as f:
        for line in f:
            line = line.rstrip("\r\n")
            if not line:
                continue
            try:
                raw = json.loads(line)
            except json.JSONDecodeError:
                LOGGER.debug("Skipping malformed transcript line")
                continue
            if not isinstance(raw, dict):
                continue
            entry = simplify_entry(raw)
            if entry is not None:
                entries.append(entry)
    return entries


def format_entries(entries: list[TranscriptEntry]) -> str:
    lines: list[str] = []
    for entry in entries:
        stamp = entry.timestamp.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]
        role = entry.role.capitalize()
        content_lines = entry.content.split("\n")
        if len(content_lines) == 1:
            lines.append(f"[{stamp}] {role}: {content_lines[0]}")
        else:
            lines.append(f"[{stamp}] {role}:")
            lines.extend(f"  {line}" for line in content_lines)
    return "\n".join(lines)


def read_recent_messages(
    transcript_path: str,
    since: datetime | None = None,
    limit: int = RECENT_MESSAGE_LIMIT,
) -> str:
    """Render the conversation since the last commit, newest `limit` entries."""
    if not transcript_path:
        LOGGER.warning("No transcript path provided; skipping transcript context")
        return ""
    if not os.path.isfile(transcript_path):
        LOGGER.warning("Transcript path is not a file; skipping context: %s", transcript_path)
        return ""
    try:
        entries = load_entries(transcript_path)
    except OSError as exc:
        LOGGER.warning("Failed to read transcript %s: %s", transcript_path, exc)
        return ""

    if since is not None:
        if since.tzinfo is None:
            since = since.replace(tzinfo=timezone.utc)
        entries = [e for e in entries if e.timestamp >= since]
    used = entries[-limit:] if limit > 0 else []
    LOGGER.debug(
        "Recent transcript messages: since=%s after_filter=%d used=%d",
        since.isoformat() if since else None,
        len(entries),
        len(used),
    )
    return format_entries(used)
