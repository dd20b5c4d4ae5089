from __future__ import annotations

import logging
import re
import shutil
import subprocess
import tempfile
from typing import Any, Callable, Protocol

LOGGER = logging.getLogger(__name__)

DEFAULT_REVIEW_MODEL = "sonnet"
DEFAULT_SUMMARY_MODEL = "haiku"
DEFAULT_COMMIT_MODEL = "haiku"
DEFAULT_REVIEW_TIMEOUT = 60.0
DEFAULT_SUMMARY_TIMEOUT = 15.0
DEFAULT_COMMIT_TIMEOUT = 30.0

# Smaller models get a shorter excerpt of the diff.
MAX_SUMMARY_INPUT = 3_000
MAX_COMMIT_INPUT = 3_000

CONVENTIONAL_COMMIT_RE = re.compile(
    r"^(feat|fix|docs|style|refactor|test|chore|build|ci|perf|wip)(\([^)]+\))?:"
)


class ClaudeCliError(RuntimeError):
    pass


class CommitMessageError(RuntimeError):
    pass


class CommitMessageGenerator(Protocol):
    def generate(self, diff: str, task_id: str | None = None) -> str: ...


Runner = Callable[..., "subprocess.CompletedProcess[Any]"]


def run_claude_prompt(
    prompt: str,
    model: str,
    timeout: float,
    runner: Runner = subprocess.run,
    executable: str = "claude",
) -> str:
    """Run one non-interactive Claude prompt and return its text output.

    The CLI runs from a scratch directory so that this project's hooks are
    not triggered by the nested session.
    """
    if not shutil.which(executable):
        raise ClaudeCliError(f"{executable} executable not found")
    cmd = [executable, "-p", "--model", model, "--output-format", "text"]
    LOGGER.debug("Claude prompt start: model=%s timeout=%ss chars=%d", model, timeout, len(prompt))
    with tempfile.TemporaryDirectory(prefix="stopgate-") as scratch:
        try:
            result = runner(
                cmd,
                input=prompt,
                capture_output=True,
                text=True,
                cwd=scratch,
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise ClaudeCliError(f"timeout after {timeout}s") from exc
        except OSError as exc:
            raise ClaudeCliError(str(exc)) from exc
    if result.returncode != 0:
        stderr = (result.stderr or "").strip()
        raise ClaudeCliError(f"claude exited {result.returncode}: {stderr[:500]}")
    text = (result.stdout or "").strip()
    if not text:
        raise ClaudeCliError("claude returned no output")
    LOGGER.debug("Claude prompt done: model=%s chars=%d", model, len(text))
    return text


def truncate_at_newline(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    clipped = text[:limit]
    last_newline = clipped.rfind("\n")
    if last_newline > limit * 0.8:
        clipped = clipped[:last_newline]
    return f"{clipped}\n... (diff truncated)"


SUMMARY_PROMPT_TEMPLATE = """You are a git diff summarizer. Your ONLY job is to summarize code changes.
DO NOT mention any tools, commands, or actions you might take.
DO NOT say what you will do - just provide the summary directly.

Summarize this git diff in 2-3 concise bullet points. Focus on WHAT changed, not HOW.
Ignore formatting, whitespace, and minor refactoring. Group related changes together.

{diff}

Respond with ONLY bullet points (use • character), no headers or explanations. Keep total under 300 characters."""


class ClaudeReviewer:
    def __init__(
        self,
        model: str = DEFAULT_REVIEW_MODEL,
        timeout: float = DEFAULT_REVIEW_TIMEOUT,
        runner: Runner = subprocess.run,
    ) -> None:
        self.model = model
        self.timeout = timeout
        self.runner = runner

    def review(self, prompt: str) -> str:
        return run_claude_prompt(prompt, self.model, self.timeout, self.runner)


class ClaudeSummarizer:
    def __init__(
        self,
        model: str = DEFAULT_SUMMARY_MODEL,
        timeout: float = DEFAULT_SUMMARY_TIMEOUT,
        runner: Runner = subprocess.run,
    ) -> None:
        self.model = model
        self.timeout = timeout
        self.runner = runner

    def summarize(self, chunk: str) -> str:
        if not chunk.strip():
            return "• No changes detected"
        prompt = SUMMARY_PROMPT_TEMPLATE.format(diff=truncate_at_newline(chunk, MAX_SUMMARY_INPUT))
        return run_claude_prompt(prompt, self.model, self.timeout, self.runner)


class ClaudeCommitMessageGenerator:
    def __init__(
        self,
        model: str = DEFAULT_COMMIT_MODEL,
        timeout: float = DEFAULT_COMMIT_TIMEOUT,
        runner: Runner = subprocess.run,
    ) -> None:
        self.model = model
        self.timeout = timeout
        self.runner = runner

    def build_prompt(self, diff: str, task_id: str | None = None) -> str:
        task_context = f"\nActive task: {task_id}" if task_id else ""
        if task_id:
            fmt = f"type: description or type: {task_id} description"
            examples = (
                f"feat: {task_id} add user auth, fix: {task_id} resolve parsing bug, "
                f"docs: {task_id} update readme"
            )
        else:
            fmt = "type: description"
            examples = "feat: add user auth, fix: resolve parsing bug, docs: update readme"
        return (
            "Write a conventional commit message for these changes. "
            f"Return only the commit message, nothing else.{task_context}\n\n"
            f"{diff[:MAX_COMMIT_INPUT]}\n\n"
            f"Use format: {fmt}\n"
            f"Examples: {examples}"
        )

    def generate(self, diff: str, task_id: str | None = None) -> str:
        output = run_claude_prompt(
            self.build_prompt(diff, task_id), self.model, self.timeout, self.runner
        )
        for line in output.splitlines():
            line = line.strip().strip("`")
            if CONVENTIONAL_COMMIT_RE.match(line):
                return line
        raise CommitMessageError(f"no conventional commit line in: {output[:200]}")
