from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from datetime import datetime

from stopgate.claude import CommitMessageGenerator
from stopgate.diffs import CompressionResult, Summarizer, compress_diff, filter_diff
from stopgate.review import (
    ON_TRACK,
    PROMPT_DUMP_THRESHOLD,
    REVIEW_FAILED,
    Reviewer,
    ReviewVerdict,
    SessionControlOutput,
    build_review_request,
    call_reviewer,
    generate_stop_output,
    normalize_review_response,
)
from stopgate.tasks import TASK_MARKER, ActiveTask, ActiveTaskLookup
from stopgate.transcript import TranscriptReader, read_recent_messages
from stopgate.vcs import GitError, VersionControl

LOGGER = logging.getLogger(__name__)

EXPLORATORY_COMMIT_MESSAGE = "chore: exploratory work and improvements"
PROJECT_DOCS_COMMIT_MESSAGE = "docs: update project documentation"
NO_CHANGES_MESSAGE = "No changes to commit"

NON_TASK_HISTORY_DEPTH = 10
# Prior consecutive commits without a task marker before suggesting a task.
NON_TASK_SUGGESTION_THRESHOLD = 2


@dataclass
class Collaborators:
    repo: VersionControl
    tasks: ActiveTaskLookup
    reviewer: Reviewer
    summarizer: Summarizer
    commit_messages: CommitMessageGenerator
    read_transcript: TranscriptReader = read_recent_messages


@dataclass
class StopHookResult:
    output: SessionControlOutput
    verdict: ReviewVerdict | None = None
    committed: bool = False
    suggestion: str | None = None
    compression: CompressionResult | None = None
    degraded: bool = False


def count_non_task_commits(summaries: list[str]) -> int:
    """Length of the run of newest-first commits lacking a task marker."""
    count = 0
    for summary in summaries:
        if TASK_MARKER in summary:
            break
        count += 1
    return count


def non_task_suggestion(prior_count: int) -> str | None:
    if prior_count < NON_TASK_SUGGESTION_THRESHOLD:
        return None
    return (
        f"I notice you've made {prior_count + 1} commits without an active task. "
        "Consider using planning mode (shift-tab) to create a task for better tracking."
    )


class SessionReviewer:
    def __init__(
        self,
        collaborators: Collaborators,
        *,
        compress: bool = True,
        prompt_dump_dir: str = "",
    ) -> None:
        self.deps = collaborators
        self.compress = compress
        self.prompt_dump_dir = prompt_dump_dir
        self.active_task: ActiveTask | None = None
        self.compression: CompressionResult | None = None
        self.degraded = False

    def review(self, transcript_path: str) -> ReviewVerdict:
        self.active_task = self.deps.tasks.active_task()
        LOGGER.debug("Active task check: %s", bool(self.active_task))
        bundle = filter_diff(self._read_diff())

        if not bundle.full_diff.strip():
            return ReviewVerdict(ON_TRACK, NO_CHANGES_MESSAGE)

        if self.active_task is None:
            if bundle.doc_only_changes:
                return ReviewVerdict(ON_TRACK, "Documentation updates only", PROJECT_DOCS_COMMIT_MESSAGE)
            return ReviewVerdict(
                ON_TRACK,
                "No active task - exploratory work",
                self._exploratory_commit_message(bundle.filtered_diff or bundle.full_diff),
            )

        task = self.active_task
        if bundle.doc_only_changes:
            return ReviewVerdict(
                ON_TRACK,
                "Documentation updates only - auto-approved",
                f"docs: update {task.label} documentation",
            )
        if not bundle.filtered_diff.strip():
            LOGGER.warning("No code changes to review despite non-documentation diff")
            return ReviewVerdict(ON_TRACK, "No code changes to review", f"wip: {task.label} work in progress")

        try:
            return self._review_code(task, bundle.filtered_diff, bundle.has_doc_changes, transcript_path)
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("Review failed unexpectedly")
            return self._review_failed(
                "Could not review changes", "review failed", f"Unexpected error: {exc}"
            )

    def _read_diff(self) -> str:
        try:
            return self.deps.repo.diff()
        except (GitError, OSError) as exc:
            LOGGER.error("Error getting git diff: %s", exc)
            return ""

    def _exploratory_commit_message(self, diff: str) -> str:
        try:
            message = self.deps.commit_messages.generate(diff, None)
        except Exception as exc:  # noqa: BLE001
            LOGGER.debug("Commit message fallback used: %s", exc)
            return EXPLORATORY_COMMIT_MESSAGE
        return message.strip() or EXPLORATORY_COMMIT_MESSAGE

    def _review_failed(self, message: str, suffix: str, details: str) -> ReviewVerdict:
        label = self.active_task.label if self.active_task else "TASK"
        return ReviewVerdict(
            REVIEW_FAILED,
            message,
            f"wip: {label} work in progress - {suffix}",
            details,
        )

    def _since_last_commit(self) -> datetime | None:
        try:
            return self.deps.repo.last_commit_time()
        except (GitError, OSError):
            return None

    def _review_code(
        self, task: ActiveTask, code_diff: str, has_doc_changes: bool, transcript_path: str
    ) -> ReviewVerdict:
        recent = self.deps.read_transcript(transcript_path, self._since_last_commit())

        if self.compress:
            self.compression = compress_diff(code_diff, self.deps.summarizer)
        else:
            self.compression = CompressionResult(text=code_diff, original_size=len(code_diff))
        if self.compression.compressed:
            LOGGER.info("Using compressed diff for review")

        request = build_review_request(
            task.content,
            recent,
            self.compression.text,
            has_doc_changes=has_doc_changes,
            compressed=self.compression.compressed,
            task_id=task.task_id,
        )
        if not request.ok or request.value is None:
            LOGGER.warning("Review preparation failed: %s", request.error)
            return self._review_failed(
                "Could not review changes - diff too large or review failed",
                "review skipped",
                str(request.error),
            )
        self._dump_prompt(request.value)

        started = time.monotonic()
        raw = call_reviewer(self.deps.reviewer, request.value)
        LOGGER.debug("Reviewer call finished in %.0f ms", (time.monotonic() - started) * 1000)
        if not raw.ok or raw.value is None:
            return self._review_failed(
                "Could not review changes", "review failed", f"Reviewer error: {raw.error}"
            )

        parsed = normalize_review_response(raw.value)
        if not parsed.ok or parsed.value is None:
            return self._review_failed(
                "Could not review changes", "review failed", f"Reviewer error: {parsed.error}"
            )
        self.degraded = parsed.value.degraded
        if self.degraded:
            LOGGER.warning(
                "Reviewer verdict incomplete, applying policy as-is: status=%r",
                parsed.value.verdict.status,
            )
        return parsed.value.verdict

    def _dump_prompt(self, prompt: str) -> None:
        if len(prompt) <= PROMPT_DUMP_THRESHOLD or not self.prompt_dump_dir:
            return
        try:
            os.makedirs(self.prompt_dump_dir, exist_ok=True)
            path = os.path.join(self.prompt_dump_dir, f"stop_review_prompt_{int(time.time() * 1000)}.txt")
            with open(path, "w", encoding="utf-8") as f:
                f.write(prompt)
        except OSError as exc:
            LOGGER.debug("Could not save large prompt: %s", exc)
            return
        LOGGER.info("Large prompt saved to: %s", path)

    def commit_changes(self, message: str) -> bool:
        try:
            self.deps.repo.commit_all(message)
        except (GitError, OSError) as exc:
            LOGGER.error("Git commit failed: %s", exc)
            return False
        return True

    def prior_non_task_commits(self) -> int:
        """Consecutive non-task commits before the one just made."""
        try:
            summaries = self.deps.repo.recent_commit_summaries(NON_TASK_HISTORY_DEPTH + 1)
        except (GitError, OSError):
            return 0
        return count_non_task_commits(summaries[1:])


def stage_untracked(repo: VersionControl) -> None:
    try:
        files = repo.untracked_files()
    except (GitError, OSError) as exc:
        LOGGER.warning("Failed to check for untracked files: %s", exc)
        return
    if files:
        LOGGER.debug("Adding %d untracked files", len(files))
    for path in files:
        try:
            repo.stage(path)
        except (GitError, OSError) as exc:
            LOGGER.warning("Failed to add file %s: %s", path, exc)


def run_stop_hook(
    collaborators: Collaborators,
    *,
    transcript_path: str = "",
    in_stop_hook: bool = False,
    auto_commit: bool = True,
    compress: bool = True,
    prompt_dump_dir: str = "",
) -> StopHookResult:
    repo = collaborators.repo
    if not repo.is_repository():
        return StopHookResult(
            SessionControlOutput(
                may_stop=True, system_message="Not a git repository - skipping auto-commit"
            )
        )

    stage_untracked(repo)
    try:
        changed = repo.has_changes()
    except (GitError, OSError):
        changed = False
    if not changed:
        LOGGER.info("No changes detected, exiting early")
        return StopHookResult(SessionControlOutput(may_stop=True, system_message=NO_CHANGES_MESSAGE))

    reviewer = SessionReviewer(collaborators, compress=compress, prompt_dump_dir=prompt_dump_dir)
    verdict = reviewer.review(transcript_path)

    committed = False
    suggestion: str | None = None
    if verdict.commit_message and auto_commit:
        committed = reviewer.commit_changes(verdict.commit_message)
        if committed:
            LOGGER.info("Auto-committed: %s", verdict.commit_message)
            if reviewer.active_task is None and TASK_MARKER not in verdict.commit_message:
                suggestion = non_task_suggestion(reviewer.prior_non_task_commits())

    output = generate_stop_output(verdict, in_stop_hook)
    if suggestion:
        output = output.with_note(suggestion)
    LOGGER.info("Review complete: status=%s message=%s", verdict.status, verdict.message)
    return StopHookResult(
        output=output,
        verdict=verdict,
        committed=committed,
        suggestion=suggestion,
        compression=reviewer.compression,
        degraded=reviewer.degraded,
    )
