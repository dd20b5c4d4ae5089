import json
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

import stopgate.review as review  # noqa: E402


def test_build_review_request_accepts_diff_at_limit():
    diff = "+" * review.MAX_REVIEW_DIFF_SIZE
    outcome = review.build_review_request("task", "messages", diff, compressed=True)
    assert outcome.ok
    assert "## Compressed Git Diff Summary:" in outcome.value


def test_build_review_request_rejects_diff_over_limit():
    diff = "+" * (review.MAX_REVIEW_DIFF_SIZE + 1)
    outcome = review.build_review_request("task", "messages", diff)
    assert not outcome.ok
    assert isinstance(outcome.error, review.DiffTooLargeError)
    assert outcome.error.size == review.MAX_REVIEW_DIFF_SIZE + 1


def test_build_review_request_clips_sections():
    task = "T" * (review.MAX_TASK_CHARS + 500)
    messages = "M" * (review.MAX_CONTEXT_CHARS + 500)
    diff = "D" * (review.MAX_RAW_DIFF_CHARS + 500)
    prompt = review.build_review_request(task, messages, diff, task_id="TASK_007").value
    assert "T" * review.MAX_TASK_CHARS in prompt
    assert "T" * (review.MAX_TASK_CHARS + 1) not in prompt
    assert "M" * (review.MAX_CONTEXT_CHARS + 1) not in prompt
    assert "D" * (review.MAX_RAW_DIFF_CHARS + 1) not in prompt
    assert "```diff" in prompt
    assert "wip: TASK_007 work in progress" in prompt


def test_build_review_request_notes():
    plain = review.build_review_request("task", "", "diff").value
    noted = review.build_review_request(
        "task", "", "diff", has_doc_changes=True, compressed=True
    ).value
    assert "documentation files have been filtered out" not in plain
    assert "documentation files have been filtered out" in noted
    assert "compressed into summaries" in noted
    assert "TASK_XXX" in plain


def test_call_reviewer_returns_failure_outcome():
    class BrokenReviewer:
        def review(self, prompt):
            raise RuntimeError("cli missing")

    outcome = review.call_reviewer(BrokenReviewer(), "prompt")
    assert not outcome.ok
    assert "cli missing" in str(outcome.error)


def test_normalize_plain_json():
    raw = json.dumps(
        {
            "status": "on_track",
            "message": "Fixed bug",
            "commitMessage": "fix: TASK_001 resolve bug",
            "details": "all good",
        }
    )
    outcome = review.normalize_review_response(raw)
    assert outcome.ok
    verdict = outcome.value.verdict
    assert not outcome.value.degraded
    assert verdict.status == review.ON_TRACK
    assert verdict.commit_message == "fix: TASK_001 resolve bug"
    assert verdict.details == "all good"


def test_normalize_json_inside_prose_and_fences():
    raw = (
        "Here is my review:\n```json\n"
        '{"status": "deviation", "message": "Simplified the parser"}\n'
        "```\nLet me know."
    )
    outcome = review.normalize_review_response(raw)
    assert outcome.ok
    assert outcome.value.verdict.status == review.DEVIATION
    assert outcome.value.verdict.commit_message == ""


def test_normalize_takes_first_object_when_trailing_prose_has_braces():
    raw = '{"status": "on_track", "message": "ok"}\nNote: see {x} and {"y": 1}'
    outcome = review.normalize_review_response(raw)
    assert outcome.ok
    assert outcome.value.verdict.status == review.ON_TRACK
    assert outcome.value.verdict.message == "ok"


def test_normalize_skips_braces_before_the_verdict():
    raw = 'Checked {the parser}. {"status": "deviation", "message": "Tests removed"} {end}'
    outcome = review.normalize_review_response(raw)
    assert outcome.ok
    assert outcome.value.verdict.status == review.DEVIATION


def test_normalize_unwraps_cli_envelope_with_prose():
    inner = 'Sure. {"status": "needs_verification", "message": "No tests run"} Done.'
    raw = json.dumps({"type": "result", "subtype": "success", "result": inner})
    outcome = review.normalize_review_response(raw)
    assert outcome.ok
    assert outcome.value.verdict.status == review.NEEDS_VERIFICATION
    assert outcome.value.verdict.message == "No tests run"


def test_normalize_marks_incomplete_verdicts_degraded():
    missing_message = review.normalize_review_response('{"status": "on_track"}')
    assert missing_message.ok
    assert missing_message.value.degraded

    unknown_status = review.normalize_review_response(
        '{"status": "great", "message": "looks fine"}'
    )
    assert unknown_status.ok
    assert unknown_status.value.degraded
    assert unknown_status.value.verdict.status == "great"


def test_normalize_rejects_unparsable_responses():
    no_json = review.normalize_review_response("I could not review this.")
    assert not no_json.ok
    assert isinstance(no_json.error, review.ReviewResponseError)

    broken = review.normalize_review_response("result: {status: on_track,}")
    assert not broken.ok

    not_object = review.normalize_review_response("[1, 2, 3]")
    assert not not_object.ok


@pytest.mark.parametrize("status", list(review.VERDICT_STATUSES) + ["bogus", ""])
def test_stop_hook_active_always_allows(status):
    verdict = review.ReviewVerdict(status, "msg")
    output = review.generate_stop_output(verdict, in_stop_hook=True)
    assert output.may_stop
    assert output.decision is None
    assert output.system_message.startswith("Review: msg")
    assert output.to_dict()["continue"] is True


@pytest.mark.parametrize(
    "status,may_stop",
    [
        (review.ON_TRACK, True),
        (review.DEVIATION, False),
        (review.NEEDS_VERIFICATION, False),
        (review.CRITICAL_FAILURE, True),
        (review.REVIEW_FAILED, True),
        ("bogus", True),
    ],
)
def test_policy_covers_every_status(status, may_stop):
    output = review.generate_stop_output(review.ReviewVerdict(status, "msg"), in_stop_hook=False)
    assert output.may_stop is may_stop
    assert output.system_message
    if may_stop:
        assert output.decision is None
    else:
        assert output.decision == "block"
        assert output.reason


def test_policy_messages():
    deviation = review.generate_stop_output(
        review.ReviewVerdict(review.DEVIATION, "Removed validation", details="see parser.py"),
        in_stop_hook=False,
    )
    assert deviation.reason.startswith("Deviation detected: Removed validation")
    assert deviation.system_message.endswith("Details: see parser.py")
    assert deviation.to_dict() == {
        "decision": "block",
        "reason": deviation.reason,
        "systemMessage": deviation.system_message,
    }

    critical = review.generate_stop_output(
        review.ReviewVerdict(review.CRITICAL_FAILURE, "Deleted tests"), in_stop_hook=False
    )
    assert critical.system_message.startswith("CRITICAL ISSUE: Deleted tests")
    assert "Work has been stopped" in critical.system_message

    failed = review.generate_stop_output(
        review.ReviewVerdict(review.REVIEW_FAILED, "Could not review", details="timeout"),
        in_stop_hook=False,
    )
    assert failed.system_message == "REVIEW SYSTEM ERROR: Could not review\n\ntimeout"

    unknown = review.generate_stop_output(review.ReviewVerdict("", "odd"), in_stop_hook=False)
    assert unknown.system_message == "Unexpected review status: missing - odd"


def test_control_output_with_note():
    output = review.SessionControlOutput(may_stop=True, system_message="Project is on track.")
    noted = output.with_note("Consider a task.")
    assert noted.system_message == "Project is on track.\n\nConsider a task."
    assert output.system_message == "Project is on track."
    bare = review.SessionControlOutput(may_stop=True).with_note("hint")
    assert bare.to_dict() == {"continue": True, "systemMessage": "hint"}


def test_verdict_to_dict_uses_wire_keys():
    verdict = review.ReviewVerdict("on_track", "ok", "feat: x")
    assert verdict.to_dict() == {"status": "on_track", "message": "ok", "commitMessage": "feat: x"}
