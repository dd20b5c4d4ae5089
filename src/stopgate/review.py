from __future__ import annotations

import json
import logging
from dataclasses import dataclass, replace
from typing import Any, Protocol

from stopgate.results import Outcome

LOGGER = logging.getLogger(__name__)

ON_TRACK = "on_track"
DEVIATION = "deviation"
NEEDS_VERIFICATION = "needs_verification"
CRITICAL_FAILURE = "critical_failure"
REVIEW_FAILED = "review_failed"

VERDICT_STATUSES = (ON_TRACK, DEVIATION, NEEDS_VERIFICATION, CRITICAL_FAILURE, REVIEW_FAILED)

# Circuit breaker: a larger diff or digest is costly and likely to be
# silently truncated by the reviewer.
MAX_REVIEW_DIFF_SIZE = 50_000
MAX_TASK_CHARS = 2_000
MAX_CONTEXT_CHARS = 2_000
# Raw (uncompressed) diffs are clipped to this inside the prompt.
MAX_RAW_DIFF_CHARS = 10_000
# Prompts above this size are written to the log directory for inspection.
PROMPT_DUMP_THRESHOLD = 20_000



class DiffTooLargeError(ValueError):
    def __init__(self, size: int, limit: int = MAX_REVIEW_DIFF_SIZE) -> None:
        self.size = size
        self.limit = limit
        super().__init__(f"Diff too large for review: {size} characters (limit {limit})")


class ReviewResponseError(ValueError):
    """The reviewer answer held no usable JSON object."""


class Reviewer(Protocol):
    def review(self, prompt: str) -> str: ...


@dataclass(frozen=True)
class ReviewVerdict:
    status: str
    message: str
    commit_message: str = ""
    details: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "status": self.status,
            "message": self.message,
            "commitMessage": self.commit_message,
        }
        if self.details:
            data["details"] = self.details
        return data


@dataclass(frozen=True)
class NormalizedVerdict:
    verdict: ReviewVerdict
    degraded: bool = False


@dataclass(frozen=True)
class SessionControlOutput:
    may_stop: bool
    system_message: str = ""
    decision: str | None = None
    reason: str | None = None

    def with_note(self, note: str) -> SessionControlOutput:
        message = f"{self.system_message}\n\n{note}" if self.system_message else note
        return replace(self, system_message=message)

    def to_dict(self) -> dict[str, Any]:
        output: dict[str, Any] = {}
        if self.may_stop:
            output["continue"] = True
        else:
            output["decision"] = self.decision or "block"
            output["reason"] = self.reason or ""
        if self.system_message:
            output["systemMessage"] = self.system_message
        return output


REVIEW_PROMPT_TEMPLATE = """You are reviewing an AI assistant's work on a coding task. Analyze if the work is on track or has deviated.
{doc_note}

## Active Task Requirements:
{task}

## Recent Conversation:
{messages}

{diff_section}

## Review Categories:
1. **on_track**: Work aligns with task requirements, waiting for user input
2. **deviation**: Work has deviated from requirements (especially if trying to "simplify")
3. **needs_verification**: Claims completion but hasn't tested/verified
4. **critical_failure**: Broke something important (deleted files, broke build, etc)

## Red Flags to Watch For:
- Any mention of "simplifying" or "simple solution" when stuck
- Claiming things work without testing
- Making changes unrelated to the current task
- Deleting or overwriting important files

## IMPORTANT:
- Documentation updates (.md files) are ALWAYS acceptable and have been filtered out
- Focus only on code changes when determining if work is on track{compressed_note}

CRITICAL: You MUST respond with ONLY a valid JSON object. No other text before or after.

Output EXACTLY this format (no markdown, no explanation, just the JSON):
{{
  "status": "on_track|deviation|needs_verification|critical_failure",
  "message": "Brief explanation for the user",
  "commitMessage": "Conventional commit message (e.g., 'wip: {task_id} work in progress')",
  "details": "Optional detailed explanation"
}}

Example valid response:
{{"status":"on_track","message":"Fixed logging bug","commitMessage":"fix: resolve undefined logFile variable","details":"Bug fix for stop hook implementation"}}

Be strict about deviations - if the changes don't directly address the task requirements, it's a deviation.
REMEMBER: Output ONLY the JSON object, nothing else!"""

DOC_NOTE = (
    "\n## Important Note:\n"
    "Changes to documentation files have been filtered out from the diff below "
    "and are always acceptable. Focus only on the code changes shown."
)
COMPRESSED_NOTE = (
    "\n- The diff has been compressed into summaries to save tokens - "
    "focus on the high-level changes described"
)


def build_review_request(
    task: str,
    messages: str,
    diff: str,
    *,
    has_doc_changes: bool = False,
    compressed: bool = False,
    task_id: str | None = None,
) -> Outcome[str]:
    """Assemble the reviewer prompt, refusing diffs over the size ceiling."""
    LOGGER.debug(
        "Building review prompt: task=%d messages=%d diff=%d",
        len(task),
        len(messages),
        len(diff),
    )
    if len(diff) > MAX_REVIEW_DIFF_SIZE:
        error = DiffTooLargeError(len(diff))
        LOGGER.warning("%s", error)
        return Outcome.failure(error)

    if compressed:
        diff_section = f"## Compressed Git Diff Summary:\n{diff}"
    else:
        diff_section = (
            "## Git Diff (code changes only, documentation excluded):\n"
            f"```diff\n{diff[:MAX_RAW_DIFF_CHARS]}\n```"
        )
    prompt = REVIEW_PROMPT_TEMPLATE.format(
        doc_note=DOC_NOTE if has_doc_changes else "",
        task=task[:MAX_TASK_CHARS],
        messages=messages[:MAX_CONTEXT_CHARS],
        diff_section=diff_section,
        compressed_note=COMPRESSED_NOTE if compressed else "",
        task_id=task_id or "TASK_XXX",
    )
    LOGGER.debug("Final prompt length: %d characters", len(prompt))
    return Outcome.success(prompt)


def call_reviewer(reviewer: Reviewer, prompt: str) -> Outcome[str]:
    try:
        return Outcome.success(reviewer.review(prompt))
    except Exception as exc:  # noqa: BLE001
        LOGGER.error("Reviewer call failed: %s", exc)
        return Outcome.failure(exc)


def _load_json_object(text: str) -> Any:
    """Parse the whole answer, else the first decodable ``{...}`` inside it."""
    text = text.strip()
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass
    decoder = json.JSONDecoder()
    idx = text.find("{")
    if idx == -1:
        raise ReviewResponseError(f"No JSON found in response: {text[:200]}")
    while idx != -1:
        try:
            return decoder.raw_decode(text, idx)[0]
        except json.JSONDecodeError:
            idx = text.find("{", idx + 1)
    raise ReviewResponseError(f"Could not parse JSON from response: {text[:200]}")


def _unwrap_cli_envelope(data: Any) -> Any:
    """Legacy `claude --output-format json` envelope: the answer is in `result`."""
    if isinstance(data, dict) and data.get("type") == "result" and isinstance(data.get("result"), str):
        LOGGER.debug("Unwrapping CLI result envelope")
        return _unwrap_cli_envelope(_load_json_object(data["result"]))
    return data


def normalize_review_response(raw: str) -> Outcome[NormalizedVerdict]:
    LOGGER.debug("Reviewer raw response: %s", raw[:500])
    try:
        data = _unwrap_cli_envelope(_load_json_object(raw))
    except ReviewResponseError as exc:
        LOGGER.error("%s", exc)
        return Outcome.failure(exc)
    if not isinstance(data, dict):
        return Outcome.failure(ReviewResponseError(f"Expected a JSON object, got {type(data).__name__}"))

    status = str(data.get("status") or "")
    message = str(data.get("message") or "")
    degraded = not status or not message or status not in VERDICT_STATUSES
    if degraded:
        LOGGER.warning("Invalid response structure: %s", json.dumps(data)[:200])
    details = data.get("details")
    verdict = ReviewVerdict(
        status=status,
        message=message,
        commit_message=str(data.get("commitMessage") or ""),
        details=str(details) if details else None,
    )
    return Outcome.success(NormalizedVerdict(verdict=verdict, degraded=degraded))


def _with_details(message: str, details: str | None, label: str = "Details: ") -> str:
    if details:
        return f"{message}\n\n{label}{details}"
    return message


def generate_stop_output(verdict: ReviewVerdict, in_stop_hook: bool) -> SessionControlOutput:
    """Map a verdict to the hook decision.

    When the host is already continuing because of an earlier block, every
    verdict allows the stop so the assistant is never looped indefinitely.
    """
    if in_stop_hook:
        return SessionControlOutput(
            may_stop=True,
            system_message=_with_details(f"Review: {verdict.message}", verdict.details),
        )

    status = verdict.status
    if status == ON_TRACK:
        return SessionControlOutput(
            may_stop=True,
            system_message=_with_details(f"Project is on track. {verdict.message}", verdict.details),
        )
    if status == DEVIATION:
        return SessionControlOutput(
            may_stop=False,
            decision="block",
            reason=(
                f"Deviation detected: {verdict.message}. Please fix the issues and "
                "align with the task requirements."
            ),
            system_message=_with_details(f"DEVIATION DETECTED: {verdict.message}", verdict.details),
        )
    if status == NEEDS_VERIFICATION:
        return SessionControlOutput(
            may_stop=False,
            decision="block",
            reason=(
                f"Verification needed: {verdict.message}. Please test your changes "
                "before proceeding."
            ),
            system_message=_with_details(f"VERIFICATION NEEDED: {verdict.message}", verdict.details),
        )
    if status == CRITICAL_FAILURE:
        return SessionControlOutput(
            may_stop=True,
            system_message=_with_details(
                f"CRITICAL ISSUE: {verdict.message}\n\n"
                "Work has been stopped. Please review the changes.",
                verdict.details,
            ),
        )
    if status == REVIEW_FAILED:
        return SessionControlOutput(
            may_stop=True,
            system_message=_with_details(
                f"REVIEW SYSTEM ERROR: {verdict.message}", verdict.details, label=""
            ),
        )
    return SessionControlOutput(
        may_stop=True,
        system_message=f"Unexpected review status: {status or 'missing'} - {verdict.message}",
    )
