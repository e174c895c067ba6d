"""Tests for comment classification and the text the engine posts."""

import string
from datetime import datetime, timedelta, timezone

from hypothesis import given, settings
from hypothesis import strategies as st

from src.shipwright.agent.prompts import PlanOutput
from src.shipwright.engine import formatting
from src.shipwright.engine.comments import (
    BOT_MARKER,
    find_recorded_pr_number,
    is_self_authored,
    newest_human_comment,
    parse_approval,
)
from src.shipwright.recovery import CIOutcome, CIStatus
from src.shipwright.tracker.models import TrackerComment


BASE = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)


def _comment(body: str, minutes: int, comment_id: str = None) -> TrackerComment:
    return TrackerComment(
        id=comment_id or str(minutes),
        author_account_id="human-1",
        body=body,
        created=BASE + timedelta(minutes=minutes),
    )


class TestParseApproval:
    def test_plain_keyword(self):
        assert parse_approval("approve", "approve") == ""
        assert parse_approval("  Approve!  ", "approve") == ""

    def test_notes_after_keyword(self):
        assert parse_approval("approve, keep it minimal", "approve") == "keep it minimal"
        assert parse_approval("approved - use the v2 endpoint", "approve") == "use the v2 endpoint"

    def test_feedback_is_not_approval(self):
        assert parse_approval("I do not approve", "approve") is None
        assert parse_approval("please use /healthz", "approve") is None

    def test_custom_keyword(self):
        assert parse_approval("LGTM ship it", "lgtm") == "ship it"

    @given(notes=st.text(alphabet=string.ascii_letters + string.digits, min_size=1))
    @settings(max_examples=50)
    def test_notes_preserved(self, notes):
        assert parse_approval(f"approve: {notes}", "approve") == notes


class TestNewestHumanComment:
    def test_skips_bot_and_empty_comments(self):
        comments = [
            _comment("use /healthz", 1),
            _comment(f"{BOT_MARKER} Updated plan", 2),
            _comment("   ", 3),
        ]

        assert newest_human_comment(comments, None).body == "use /healthz"

    def test_respects_watermark(self):
        comments = [_comment("old feedback", 1), _comment("approve", 5)]

        assert newest_human_comment(comments, BASE + timedelta(minutes=1)).body == "approve"
        assert newest_human_comment(comments, BASE + timedelta(minutes=5)) is None

    def test_order_independent(self):
        comments = [_comment("newest", 9), _comment("older", 2), _comment("middle", 4)]

        assert newest_human_comment(comments, None).body == "newest"
        assert newest_human_comment(list(reversed(comments)), None).body == "newest"

    def test_stops_at_watermark_even_behind_bot_comments(self):
        comments = [_comment("before", 1), _comment(f"{BOT_MARKER} plan", 3)]

        assert newest_human_comment(comments, BASE + timedelta(minutes=2)) is None

    @given(minutes=st.lists(st.integers(min_value=0, max_value=1000), min_size=1, max_size=20, unique=True))
    @settings(max_examples=50)
    def test_result_is_newest(self, minutes):
        comments = [_comment(f"c{m}", m) for m in minutes]

        assert newest_human_comment(comments, None).body == f"c{max(minutes)}"


class TestRecordedPrNumber:
    def test_found_in_completion_comment(self):
        body = formatting.implementation_done_comment(
            "claude/PROJ-1-x", "https://github.com/acme/web/pull/42", 42, "note", "Done"
        )

        assert find_recorded_pr_number([_comment(body, 1)]) == 42

    def test_plain_text_form(self):
        assert find_recorded_pr_number([_comment("PR #: 17", 1)]) == 17

    def test_latest_wins(self):
        comments = [_comment("**PR #:** 5", 1), _comment("**PR #:** 9", 2)]

        assert find_recorded_pr_number(comments) == 9

    def test_missing(self):
        assert find_recorded_pr_number([_comment("no pr here", 1)]) is None


class TestFormatting:
    def test_every_tracker_comment_is_self_authored(self):
        plan = PlanOutput(technical_plan="edit app.py", functional_summary="adds a check")
        texts = [
            formatting.analyzing_comment(),
            formatting.plan_comment(plan, "approve"),
            formatting.replanning_comment(),
            formatting.planning_failed_comment("boom"),
            formatting.replanning_failed_comment("boom"),
            formatting.implementation_started_comment(),
            formatting.rework_started_comment(),
            formatting.rework_no_changes_comment(),
            formatting.rework_done_comment("fixed", "note", "Done"),
            formatting.conflict_comment("CONFLICT"),
            formatting.failure_comment("Implementation error", "boom", "output"),
            formatting.interrupted_comment("implementing"),
            formatting.merged_comment(42, "main"),
        ]

        assert all(is_self_authored(text) for text in texts)

    def test_plan_comment_includes_both_plans(self):
        plan = PlanOutput(technical_plan="edit app.py", functional_summary="adds a check")

        text = formatting.plan_comment(plan, "ship", revised=True)

        assert "Updated Plan" in text
        assert "edit app.py" in text and "adds a check" in text
        assert "`ship`" in text

    def test_plan_comment_with_questions(self):
        plan = PlanOutput(technical_plan="", functional_summary="", questions="1. Which page?")

        text = formatting.plan_comment(plan, "approve")

        assert "Questions before planning" in text
        assert "1. Which page?" in text

    def test_ci_notes(self):
        passed = CIOutcome(status=CIStatus.PASSED, run_url="https://ci/1", fix_attempts=2)

        assert "https://ci/1" in formatting.ci_note(passed)
        assert "2 automatic fix" in formatting.ci_note(passed)
        assert "No staging CI run" in formatting.ci_note(CIOutcome(status=CIStatus.NOT_FOUND))
        assert "not configured" in formatting.ci_note(CIOutcome(status=CIStatus.SKIPPED))

    def test_failure_comment_truncates_output(self):
        text = formatting.failure_comment("Implementation error", "boom", "x" * 5000)

        assert text.count("x") == formatting.OUTPUT_EXCERPT_CHARS

    def test_pr_text(self):
        body = formatting.pr_body(
            "PROJ-1", "Add X", None, "", "note", "https://example.atlassian.net/browse/PROJ-1"
        )

        assert formatting.pr_title("PROJ-1", "Add X") == "PROJ-1: Add X"
        assert "No plan recorded." in body
        assert "See commits." in body
        assert "(https://example.atlassian.net/browse/PROJ-1)" in body

    def test_commit_messages(self):
        assert formatting.implementation_commit_message("PROJ-1", "Add X").startswith("PROJ-1: Add X")
        message = formatting.rework_commit_message("PROJ-1", "y" * 500)
        assert message.count("y") == formatting.FEEDBACK_EXCERPT_CHARS
