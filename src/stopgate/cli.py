from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

from stopgate.claude import (
    DEFAULT_COMMIT_MODEL,
    DEFAULT_COMMIT_TIMEOUT,
    DEFAULT_REVIEW_MODEL,
    DEFAULT_REVIEW_TIMEOUT,
    DEFAULT_SUMMARY_MODEL,
    DEFAULT_SUMMARY_TIMEOUT,
    ClaudeCommitMessageGenerator,
    ClaudeReviewer,
    ClaudeSummarizer,
)
from stopgate.session import Collaborators, StopHookResult, run_stop_hook
from stopgate.tasks import ClaudeMdTaskLookup
from stopgate.vcs import GitRepository

LOGGER = logging.getLogger("stopgate")

DEFAULT_LOG_DIR = "/tmp/stopgate"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def read_json_stdin() -> dict[str, Any]:
    raw = sys.stdin.read()
    if not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return data if isinstance(data, dict) else {}


def json_get(data: dict[str, Any], path: str) -> str:
    cur: Any = data
    for part in path.split("."):
        if isinstance(cur, dict):
            cur = cur.get(part, "")
        else:
            cur = ""
            break
    if isinstance(cur, (dict, list)):
        return ""
    if cur is None:
        return ""
    return str(cur)


def write_text(path: str, content: str) -> None:
    with open(path, "w", encoding="utf-8") as f:
        f.write(content)


def append_text(path: str, content: str) -> None:
    with open(path, "a", encoding="utf-8") as f:
        f.write(content)


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_config(path: str) -> dict[str, str]:
    config: dict[str, str] = {}
    if not os.path.isfile(path):
        return config
    with open(path, encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            if line.startswith("export "):
                line = line[len("export ") :].strip()
            if "=" not in line:
                continue
            key, value = line.split("=", 1)
            key = key.strip()
            value = value.strip()
            if len(value) >= 2 and value[0] == value[-1] and value[0] in {'"', "'"}:
                value = value[1:-1]
            if key:
                config[key] = value
    return config


def setting(config: dict[str, str], key: str, default: str = "") -> str:
    return config.get(key) or os.environ.get(key) or default


def ensure_directory(path: str) -> str | None:
    try:
        os.makedirs(path, exist_ok=True)
    except OSError:
        return None
    return path if os.path.isdir(path) else None


def resolve_log_dir(config: dict[str, str]) -> str:
    log_dir = setting(config, "STOPGATE_LOG_DIR", DEFAULT_LOG_DIR)
    resolved = ensure_directory(log_dir)
    if resolved:
        return resolved
    fallback = ensure_directory("/tmp")
    return fallback or "/tmp"


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    text = value.strip().lower()
    if text in {"1", "true", "yes", "on"}:
        return True
    if text in {"0", "false", "no", "off"}:
        return False
    return default


def parse_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return default
    return parsed if parsed > 0 else default


def find_project_root(start_dir: str) -> str:
    cur = os.path.abspath(start_dir)
    while True:
        git_path = os.path.join(cur, ".git")
        if os.path.isdir(git_path) or os.path.isfile(git_path):
            return cur
        parent = os.path.dirname(cur)
        if parent == cur:
            return ""
        cur = parent


def resolve_config_path(cwd: str) -> str:
    config_name = os.path.join(".stopgate", "settings.conf")
    candidates: list[str] = []
    if cwd:
        candidates.append(os.path.join(cwd, config_name))
    project_root = find_project_root(cwd) if cwd else ""
    if project_root and project_root != cwd:
        candidates.append(os.path.join(project_root, config_name))
    candidates.append(os.path.expanduser(os.path.join("~", config_name)))
    for candidate in candidates:
        if os.path.isfile(candidate):
            return candidate
    return candidates[-1]


def configure_logging(log_dir: str, level_name: str) -> logging.Handler | None:
    """Send package logs to <log_dir>/stopgate.log; stdout carries hook JSON."""
    level = logging.getLevelName(level_name.strip().upper() or "INFO")
    if not isinstance(level, int):
        level = logging.INFO
    try:
        handler: logging.Handler = logging.FileHandler(
            os.path.join(log_dir, "stopgate.log"), encoding="utf-8"
        )
    except OSError:
        handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    LOGGER.addHandler(handler)
    LOGGER.setLevel(level)
    return handler


def build_collaborators(project_root: str, config: dict[str, str]) -> Collaborators:
    return Collaborators(
        repo=GitRepository(project_root),
        tasks=ClaudeMdTaskLookup(project_root),
        reviewer=ClaudeReviewer(
            model=setting(config, "REVIEWER_MODEL", DEFAULT_REVIEW_MODEL),
            timeout=parse_float(setting(config, "REVIEWER_TIMEOUT"), DEFAULT_REVIEW_TIMEOUT),
        ),
        summarizer=ClaudeSummarizer(
            model=setting(config, "SUMMARY_MODEL", DEFAULT_SUMMARY_MODEL),
            timeout=parse_float(setting(config, "SUMMARY_TIMEOUT"), DEFAULT_SUMMARY_TIMEOUT),
        ),
        commit_messages=ClaudeCommitMessageGenerator(
            model=setting(config, "COMMIT_MESSAGE_MODEL", DEFAULT_COMMIT_MODEL),
            timeout=parse_float(setting(config, "COMMIT_MESSAGE_TIMEOUT"), DEFAULT_COMMIT_TIMEOUT),
        ),
    )


def write_run_log(
    log_dir: str,
    *,
    session_id: str,
    cwd: str,
    in_stop_hook: bool,
    result: StopHookResult,
) -> dict[str, Any]:
    verdict = result.verdict
    compression = result.compression
    entry: dict[str, Any] = {
        "timestamp": utc_now(),
        "session_id": session_id,
        "cwd": cwd,
        "stop_hook_active": in_stop_hook,
        "status": verdict.status if verdict else "",
        "message": verdict.message if verdict else result.output.system_message,
        "details": verdict.details if verdict else None,
        "commit_message": verdict.commit_message if verdict else "",
        "committed": result.committed,
        "decision": result.output.decision or "allow",
        "suggestion": result.suggestion,
        "degraded": result.degraded,
        "output": result.output.to_dict(),
    }
    if compression is not None:
        entry["diff"] = {
            "original_size": compression.original_size,
            "review_size": len(compression.text),
            "compressed": compression.compressed,
            "chunks": compression.chunk_count,
            "failed_chunks": compression.failed_chunks,
            "ratio": round(compression.ratio, 3),
        }
    try:
        append_text(os.path.join(log_dir, "log.jsonl"), json.dumps(entry) + "\n")
        write_text(os.path.join(log_dir, "latest.json"), json.dumps(entry, indent=2) + "\n")
    except OSError as exc:
        LOGGER.warning("Could not write run log: %s", exc)
    return entry


def emit(output: dict[str, Any]) -> None:
    sys.stdout.write(json.dumps(output) + "\n")
    sys.stdout.flush()


def main() -> int:
    data = read_json_stdin()
    session_id = json_get(data, "session_id")
    cwd = json_get(data, "cwd")
    transcript_path = json_get(data, "transcript_path")
    in_stop_hook = parse_bool(json_get(data, "stop_hook_active"), False)

    cwd_path = os.path.abspath(cwd) if cwd else os.getcwd()
    project_root = find_project_root(cwd_path) or cwd_path
    config = parse_config(resolve_config_path(cwd_path))

    if not parse_bool(setting(config, "STOPGATE_ENABLED"), True):
        emit({"continue": True})
        return 0

    log_dir = resolve_log_dir(config)
    handler = configure_logging(log_dir, setting(config, "STOPGATE_LOG_LEVEL", "INFO"))
    try:
        LOGGER.info("=== STOP HOOK STARTED === session=%s stop_hook_active=%s", session_id, in_stop_hook)
        result = run_stop_hook(
            build_collaborators(project_root, config),
            transcript_path=transcript_path,
            in_stop_hook=in_stop_hook,
            auto_commit=parse_bool(setting(config, "STOPGATE_AUTO_COMMIT"), True),
            compress=parse_bool(setting(config, "REVIEWER_COMPRESS"), True),
            prompt_dump_dir=os.path.join(log_dir, "prompts"),
        )
        write_run_log(
            log_dir,
            session_id=session_id,
            cwd=cwd_path,
            in_stop_hook=in_stop_hook,
            result=result,
        )
        emit(result.output.to_dict())
    except Exception:  # noqa: BLE001
        LOGGER.exception("Error in stop review hook")
        emit({"continue": True})
    finally:
        if handler is not None:
            LOGGER.removeHandler(handler)
            handler.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
