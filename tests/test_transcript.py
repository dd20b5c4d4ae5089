import json
import sys
from datetime import datetime, timezone
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

import stopgate.transcript as transcript  # noqa: E402


def write_jsonl(path, entries):
    path.write_text("\n".join(json.dumps(e) for e in entries) + "\n", encoding="utf-8")


def test_parse_timestamp_variants():
    parsed = transcript.parse_timestamp("2024-05-01T12:30:00.123Z")
    assert parsed == datetime(2024, 5, 1, 12, 30, 0, 123000, tzinfo=timezone.utc)
    naive = transcript.parse_timestamp("2024-05-01T12:30:00")
    assert naive.tzinfo is timezone.utc
    assert transcript.parse_timestamp("not a date") is None
    assert transcript.parse_timestamp(None) is None


def test_simplify_entry_shapes():
    ts = "2024-05-01T12:00:00Z"
    user = transcript.simplify_entry(
        {"type": "user", "timestamp": ts, "message": {"role": "user", "content": "Add parser"}}
    )
    assert (user.role, user.content) == ("user", "Add parser")

    assistant = transcript.simplify_entry(
        {
            "type": "assistant",
            "timestamp": ts,
            "message": {
                "role": "assistant",
                "content": [
                    {"type": "text", "text": "Working on it"},
                    {"type": "tool_use", "name": "Edit", "input": {}},
                ],
            },
        }
    )
    assert assistant.content == "Working on it [Tool use omitted]"

    tool_result = transcript.simplify_entry(
        {"type": "user", "timestamp": ts, "toolUseResult": {"stdout": "big"}, "message": {}}
    )
    assert (tool_result.role, tool_result.content) == ("system", "[Tool result omitted]")

    compacted = transcript.simplify_entry(
        {"type": "system", "subtype": "compact_boundary", "timestamp": ts, "content": "x"}
    )
    assert compacted.content == "=== Session Compacted ==="

    assert transcript.simplify_entry({"type": "user", "message": {}}) is None


def test_read_recent_messages_formats_and_limits(tmp_path):
    path = tmp_path / "session.jsonl"
    entries = [
        {
            "type": "user",
            "timestamp": f"2024-05-01T12:00:{i:02d}.000Z",
            "message": {"role": "user", "content": f"message {i}"},
        }
        for i in range(30)
    ]
    write_jsonl(path, entries)
    text = transcript.read_recent_messages(str(path))
    lines = text.split("\n")
    assert len(lines) == transcript.RECENT_MESSAGE_LIMIT
    assert lines[0] == "[2024-05-01 12:00:10.000] User: message 10"
    assert lines[-1] == "[2024-05-01 12:00:29.000] User: message 29"


def test_read_recent_messages_since_last_commit(tmp_path):
    path = tmp_path / "session.jsonl"
    write_jsonl(
        path,
        [
            {"type": "user", "timestamp": "2024-05-01T10:00:00Z", "message": {"content": "old"}},
            {"type": "user", "timestamp": "2024-05-01T12:00:00Z", "message": {"content": "new"}},
        ],
    )
    since = datetime(2024, 5, 1, 11, 0, tzinfo=timezone.utc)
    text = transcript.read_recent_messages(str(path), since)
    assert "new" in text
    assert "old" not in text


def test_read_recent_messages_multiline_and_malformed(tmp_path):
    path = tmp_path / "session.jsonl"
    path.write_text(
        "not json\n"
        + json.dumps(
            {
                "type": "assistant",
                "timestamp": "2024-05-01T12:00:00Z",
                "message": {"role": "assistant", "content": "line one\nline two"},
            }
        )
        + "\n",
        encoding="utf-8",
    )
    text = transcript.read_recent_messages(str(path))
    assert text == "[2024-05-01 12:00:00.000] Assistant:\n  line one\n  line two"


def test_read_recent_messages_missing_transcript(tmp_path):
    assert transcript.read_recent_messages("") == ""
    assert transcript.read_recent_messages(str(tmp_path / "missing.jsonl")) == ""
