import subprocess
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

import stopgate.claude as claude  # noqa: E402


class FakeRunner:
    def __init__(self, stdout="", returncode=0, stderr="", error=None):
        self.stdout = stdout
        self.returncode = returncode
        self.stderr = stderr
        self.error = error
        self.calls = []

    def __call__(self, cmd, **kwargs):
        self.calls.append((cmd, kwargs))
        if self.error:
            raise self.error
        return subprocess.CompletedProcess(cmd, self.returncode, self.stdout, self.stderr)


@pytest.fixture
def claude_on_path(monkeypatch):
    monkeypatch.setattr(claude.shutil, "which", lambda name: f"/usr/bin/{name}")


def test_run_claude_prompt_invokes_cli(claude_on_path):
    runner = FakeRunner(stdout="  answer \n")
    assert claude.run_claude_prompt("hello", "sonnet", 12, runner) == "answer"
    cmd, kwargs = runner.calls[0]
    assert cmd == ["claude", "-p", "--model", "sonnet", "--output-format", "text"]
    assert kwargs["input"] == "hello"
    assert kwargs["timeout"] == 12
    assert kwargs["check"] is False
    assert not Path(kwargs["cwd"]).exists()


def test_run_claude_prompt_missing_executable(monkeypatch):
    monkeypatch.setattr(claude.shutil, "which", lambda name: None)
    with pytest.raises(claude.ClaudeCliError, match="not found"):
        claude.run_claude_prompt("hello", "sonnet", 12, FakeRunner(stdout="x"))


def test_run_claude_prompt_failures(claude_on_path):
    with pytest.raises(claude.ClaudeCliError, match="timeout"):
        claude.run_claude_prompt(
            "p", "haiku", 1, FakeRunner(error=subprocess.TimeoutExpired(["claude"], 1))
        )
    with pytest.raises(claude.ClaudeCliError, match="exited 2"):
        claude.run_claude_prompt("p", "haiku", 1, FakeRunner(returncode=2, stderr="boom"))
    with pytest.raises(claude.ClaudeCliError, match="no output"):
        claude.run_claude_prompt("p", "haiku", 1, FakeRunner(stdout="   "))


def test_truncate_at_newline():
    assert claude.truncate_at_newline("short", 100) == "short"
    text = "a" * 90 + "\n" + "b" * 50
    clipped = claude.truncate_at_newline(text, 100)
    assert clipped == "a" * 90 + "\n... (diff truncated)"


def test_summarizer(claude_on_path):
    runner = FakeRunner(stdout="• added parser")
    summarizer = claude.ClaudeSummarizer(runner=runner)
    assert summarizer.summarize("   ") == "• No changes detected"
    assert runner.calls == []
    assert summarizer.summarize("diff --git a/x b/x") == "• added parser"
    cmd, kwargs = runner.calls[0]
    assert cmd[3] == claude.DEFAULT_SUMMARY_MODEL
    assert "diff --git a/x b/x" in kwargs["input"]


def test_reviewer_passes_prompt(claude_on_path):
    runner = FakeRunner(stdout='{"status": "on_track", "message": "ok"}')
    reviewer = claude.ClaudeReviewer(model="opus", timeout=5, runner=runner)
    assert reviewer.review("prompt").startswith("{")
    assert runner.calls[0][0][3] == "opus"


def test_commit_message_generator_picks_conventional_line(claude_on_path):
    runner = FakeRunner(stdout="Here you go:\n`feat: TASK_003 add parser`\n")
    generator = claude.ClaudeCommitMessageGenerator(runner=runner)
    assert generator.generate("diff", "TASK_003") == "feat: TASK_003 add parser"
    prompt = runner.calls[0][1]["input"]
    assert "Active task: TASK_003" in prompt


def test_commit_message_generator_rejects_prose(claude_on_path):
    generator = claude.ClaudeCommitMessageGenerator(runner=FakeRunner(stdout="I changed things"))
    with pytest.raises(claude.CommitMessageError):
        generator.generate("diff")


def test_commit_prompt_without_task():
    prompt = claude.ClaudeCommitMessageGenerator().build_prompt("x" * 5000)
    assert "Active task" not in prompt
    assert "x" * claude.MAX_COMMIT_INPUT in prompt
    assert "x" * (claude.MAX_COMMIT_INPUT + 1) not in prompt
