"""Tests for webhook parsing, signatures, the event dispatcher and the reconciler."""

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from pydantic import TypeAdapter

from src.shipwright.state.models import TaskPhase, TaskRecord
from src.shipwright.tracker.models import TrackerComment, TrackerIssue
from src.shipwright.triggers import (
    ChangeRequestFeedback,
    CommentCreated,
    EventDispatcher,
    GitHubWebhookParser,
    IssueCreated,
    IssueUpdated,
    JiraWebhookParser,
    compute_signature,
    verify_signature,
)
from src.shipwright.triggers.models import TriggerEvent
from src.shipwright.triggers.reconciler import Reconciler


def run_async(coro):
    return asyncio.run(coro)


def _issue_data(key="PROJ-1", status="To Do"):
    return {
        "key": key,
        "fields": {
            "summary": "Add health check",
            "status": {"name": status},
            "labels": ["claude-bot"],
            "reporter": {"accountId": "human-1"},
        },
    }


def _comment_data(body="approve"):
    return {
        "id": "10001",
        "author": {"accountId": "human-1", "displayName": "Dana"},
        "body": body,
        "created": "2024-05-01T10:00:00.000+0000",
    }


class TestSignature:
    def test_matching_signature(self):
        body = b'{"webhookEvent": "jira:issue_created"}'
        digest = compute_signature("s3cret", body)

        assert verify_signature("s3cret", body, digest)
        assert verify_signature("s3cret", body, f"sha256={digest}")
        assert verify_signature("s3cret", body, f"sha256={digest.upper()}")

    def test_mismatch_and_missing(self):
        body = b"{}"

        assert not verify_signature("s3cret", body, "sha256=" + "0" * 64)
        assert not verify_signature("s3cret", body, None)
        assert not verify_signature("s3cret", b"{ }", compute_signature("s3cret", body))

    def test_unset_secret_disables_check(self):
        assert verify_signature(None, b"{}", None)
        assert verify_signature("", b"{}", "garbage")


class TestJiraWebhookParser:
    parser = JiraWebhookParser()

    def test_issue_created(self):
        event = self.parser.parse({"webhookEvent": "jira:issue_created", "issue": _issue_data()})

        assert isinstance(event, IssueCreated)
        assert event.issue.key == "PROJ-1"
        assert event.issue.labels == ["claude-bot"]

    def test_issue_updated_reads_changelog(self):
        event = self.parser.parse(
            {
                "webhookEvent": "jira:issue_updated",
                "issue": _issue_data(status="Done"),
                "changelog": {
                    "items": [
                        {"field": "status", "toString": "Done"},
                        {"field": "assignee", "to": "bot-1"},
                    ]
                },
            }
        )

        assert isinstance(event, IssueUpdated)
        assert event.status_changed_to == "Done"
        assert event.assignee_changed_to == "bot-1"

    def test_issue_updated_without_changelog(self):
        event = self.parser.parse({"webhookEvent": "jira:issue_updated", "issue": _issue_data()})

        assert event.status_changed_to is None
        assert event.assignee_changed_to is None

    def test_comment_created(self):
        event = self.parser.parse(
            {
                "webhookEvent": "comment_created",
                "issue": {"key": "PROJ-1"},
                "comment": _comment_data("approve, ship it"),
            }
        )

        assert isinstance(event, CommentCreated)
        assert event.issue_key == "PROJ-1"
        assert event.comment.body == "approve, ship it"
        assert event.comment.created == datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)

    @pytest.mark.parametrize(
        "payload",
        [
            {"webhookEvent": "jira:issue_created"},
            {"webhookEvent": "jira:issue_created", "issue": {"fields": {}}},
            {"webhookEvent": "comment_created", "issue": {"key": "PROJ-1"}},
            {"webhookEvent": "comment_created", "comment": _comment_data()},
            {"webhookEvent": "jira:issue_deleted", "issue": _issue_data()},
            ["not", "a", "dict"],
        ],
    )
    def test_malformed_or_unsupported_ignored(self, payload):
        assert self.parser.parse(payload) is None


class TestGitHubWebhookParser:
    parser = GitHubWebhookParser()

    def _review(self, state="changes_requested", body="Please handle HEAD", action="submitted"):
        return {
            "action": action,
            "review": {
                "state": state,
                "body": body,
                "user": {"login": "reviewer"},
                "submitted_at": "2024-05-01T10:00:00Z",
            },
            "pull_request": {"number": 42},
        }

    def test_changes_requested_review(self):
        event = self.parser.parse("pull_request_review", self._review())

        assert isinstance(event, ChangeRequestFeedback)
        assert event.pr_number == 42
        assert event.body == "Please handle HEAD"
        assert event.author == "reviewer"

    @pytest.mark.parametrize(
        "kwargs",
        [{"state": "approved"}, {"body": "  "}, {"action": "edited"}],
    )
    def test_reviews_without_feedback_ignored(self, kwargs):
        assert self.parser.parse("pull_request_review", self._review(**kwargs)) is None

    def test_pull_request_conversation_comment(self):
        payload = {
            "action": "created",
            "issue": {"number": 42, "pull_request": {"url": "https://api.github.com/..."}},
            "comment": {
                "body": "Button is misaligned",
                "user": {"login": "qa"},
                "created_at": "2024-05-01T10:00:00Z",
            },
        }

        event = self.parser.parse("issue_comment", payload)

        assert event.pr_number == 42
        assert event.author == "qa"

    def test_plain_issue_comment_ignored(self):
        payload = {
            "action": "created",
            "issue": {"number": 7},
            "comment": {"body": "hi", "created_at": "2024-05-01T10:00:00Z"},
        }

        assert self.parser.parse("issue_comment", payload) is None

    def test_unknown_and_malformed(self):
        assert self.parser.parse("push", {"ref": "refs/heads/main"}) is None
        assert self.parser.parse("pull_request_review", {"action": "submitted", "review": {"state": "commented", "body": "x"}}) is None


class TestTriggerEventModel:
    def test_discriminated_union(self):
        adapter = TypeAdapter(TriggerEvent)

        event = adapter.validate_python(
            {
                "kind": "change_request_feedback",
                "pr_number": 3,
                "body": "fix",
                "created": "2024-05-01T10:00:00Z",
            }
        )

        assert isinstance(event, ChangeRequestFeedback)


class TestEventDispatcher:
    def test_events_reach_handler_and_drain_on_stop(self):
        handled = []

        async def handler(event):
            await asyncio.sleep(0)
            handled.append(event)

        async def scenario():
            dispatcher = EventDispatcher(handler, maxsize=10, workers=2)
            dispatcher.start()
            accepted = [dispatcher.submit(i) for i in range(5)]
            await dispatcher.stop(timeout=5)
            return dispatcher, accepted

        dispatcher, accepted = run_async(scenario())

        assert accepted == [True] * 5
        assert sorted(handled) == [0, 1, 2, 3, 4]
        assert not dispatcher.running

    def test_full_queue_refuses(self):
        async def handler(event):
            await asyncio.sleep(0)

        async def scenario():
            metrics = MagicMock()
            dispatcher = EventDispatcher(handler, maxsize=1, workers=1, metrics=metrics)
            dispatcher.start()
            first = dispatcher.submit("a")
            second = dispatcher.submit("b")
            depth = dispatcher.depth
            await dispatcher.stop(timeout=5)
            return first, second, depth, metrics

        first, second, depth, metrics = run_async(scenario())

        assert (first, second, depth) == (True, False, 1)
        metrics.set_queue_depth.assert_any_call(1)

    def test_handler_errors_do_not_stop_workers(self):
        handled = []

        async def handler(event):
            if event == "bad":
                raise RuntimeError("boom")
            handled.append(event)

        async def scenario():
            dispatcher = EventDispatcher(handler, maxsize=5, workers=1)
            dispatcher.start()
            dispatcher.submit("bad")
            dispatcher.submit("good")
            await dispatcher.stop(timeout=5)

        run_async(scenario())

        assert handled == ["good"]

    def test_submit_before_start_or_after_stop(self):
        async def handler(event):
            pass

        async def scenario():
            dispatcher = EventDispatcher(handler)
            before = dispatcher.submit("x")
            dispatcher.start()
            await dispatcher.stop(timeout=1)
            return before, dispatcher.submit("y")

        assert run_async(scenario()) == (False, False)

    def test_stop_times_out_on_stuck_handler(self):
        async def handler(event):
            await asyncio.sleep(60)

        async def scenario():
            dispatcher = EventDispatcher(handler, maxsize=2, workers=1)
            dispatcher.start()
            dispatcher.submit("slow")
            await dispatcher.stop(timeout=0.05)
            return dispatcher.running

        assert run_async(scenario()) is False

    @pytest.mark.parametrize("kwargs", [{"maxsize": 0}, {"workers": 0}])
    def test_invalid_sizes(self, kwargs):
        with pytest.raises(ValueError):
            EventDispatcher(AsyncMock(), **kwargs)


async def _full_pass(reconciler):
    await reconciler.run_once()
    await reconciler.wait_idle()


def _record(key, phase):
    return TaskRecord(issue_key=key, phase=phase)


@pytest.fixture
def reconciler_deps():
    records = {
        TaskPhase.PLAN_POSTED: [_record("PROJ-2", TaskPhase.PLAN_POSTED)],
        TaskPhase.TEST: [_record("PROJ-3", TaskPhase.TEST), _record("PROJ-4", TaskPhase.TEST)],
        TaskPhase.APPROVED: [_record("PROJ-5", TaskPhase.APPROVED)],
        TaskPhase.FAILED: [_record("PROJ-6", TaskPhase.FAILED), _record("PROJ-7", TaskPhase.FAILED)],
    }
    machine = AsyncMock()
    machine.list_by_phase.side_effect = lambda phase: records.get(phase, [])
    machine.list_all.return_value = [r for group in records.values() for r in group]

    engine = AsyncMock()
    engine.machine = machine

    comments = [
        TrackerComment(
            id="1", body="approve", created=datetime(2024, 5, 1, tzinfo=timezone.utc)
        )
    ]
    issues = {
        "PROJ-2": TrackerIssue(key="PROJ-2", status="To Do", comments=comments),
        "PROJ-3": TrackerIssue(key="PROJ-3", status="Test", comments=comments),
        "PROJ-4": TrackerIssue(key="PROJ-4", status="Done"),
        "PROJ-6": TrackerIssue(key="PROJ-6", status="To Do", assignee_account_id="bot-1"),
        "PROJ-7": TrackerIssue(key="PROJ-7", status="To Do", assignee_account_id="human-1"),
    }
    tracker = AsyncMock()
    tracker.bot_account_id = "bot-1"
    tracker.done_status = "Done"
    tracker.search_ready_issues.return_value = [TrackerIssue(key="PROJ-1", status="To Do")]
    tracker.search_done_pending_issues.return_value = [TrackerIssue(key="PROJ-8", status="Done")]
    tracker.get_issue.side_effect = lambda key: issues[key]
    return engine, tracker, comments


class TestReconciler:
    def test_pass_feeds_every_entry_point(self, reconciler_deps):
        engine, tracker, comments = reconciler_deps
        metrics = MagicMock()
        reconciler = Reconciler(engine, tracker, interval=60, metrics=metrics)

        run_async(_full_pass(reconciler))

        assert engine.handle_new_task.await_args.args[0].key == "PROJ-1"
        engine.handle_comments.assert_any_await("PROJ-2", comments)
        engine.handle_comments.assert_any_await("PROJ-3", comments)
        done_keys = sorted(c.args[0] for c in engine.handle_done.await_args_list)
        assert done_keys == ["PROJ-4", "PROJ-8"]
        reassigned = sorted(c.args[0] for c in engine.handle_reassignment.await_args_list)
        assert reassigned == ["PROJ-5", "PROJ-6"]
        counts = metrics.set_phase_counts.call_args.args[0]
        assert counts["test"] == 2 and counts["failed"] == 2 and counts["done"] == 0
        assert reconciler.last_run_at is not None

    def test_failures_are_isolated(self, reconciler_deps):
        engine, tracker, _ = reconciler_deps
        tracker.search_ready_issues.side_effect = RuntimeError("Jira down")
        engine.handle_comments.side_effect = RuntimeError("boom")

        run_async(_full_pass(Reconciler(engine, tracker)))

        assert engine.handle_reassignment.await_count == 2
        assert engine.handle_done.await_count == 2

    def test_failed_tasks_not_retried_without_bot_account(self, reconciler_deps):
        engine, tracker, _ = reconciler_deps
        tracker.bot_account_id = None

        run_async(_full_pass(Reconciler(engine, tracker)))

        reassigned = [c.args[0] for c in engine.handle_reassignment.await_args_list]
        assert reassigned == ["PROJ-5"]

    def test_start_and_stop(self, reconciler_deps):
        engine, tracker, _ = reconciler_deps

        async def scenario():
            reconciler = Reconciler(engine, tracker, interval=3600)
            reconciler.start()
            await asyncio.sleep(0.05)
            await reconciler.stop()
            return reconciler

        reconciler = run_async(scenario())

        assert reconciler.last_run_at is not None
        assert reconciler._task is None

    def test_slow_implementation_does_not_delay_next_pass(self, reconciler_deps):
        engine, tracker, _ = reconciler_deps
        release = asyncio.Event()

        async def slow_reassignment(key):
            if key == "PROJ-5":
                await release.wait()

        engine.handle_reassignment.side_effect = slow_reassignment

        async def scenario():
            reconciler = Reconciler(engine, tracker, interval=0.01)
            reconciler.start()
            await asyncio.sleep(0.2)
            passes = tracker.search_ready_issues.await_count
            in_flight = reconciler.in_flight
            release.set()
            await reconciler.stop(timeout=1)
            return passes, in_flight

        passes, in_flight = run_async(scenario())

        assert passes > 2
        assert in_flight == ["PROJ-5"]
        implement_calls = [c.args[0] for c in engine.handle_reassignment.await_args_list]
        assert implement_calls.count("PROJ-5") == 1

    def test_stop_cancels_actions_past_timeout(self, reconciler_deps):
        engine, tracker, _ = reconciler_deps
        cancelled = []

        async def hang(key):
            try:
                await asyncio.sleep(3600)
            except asyncio.CancelledError:
                cancelled.append(key)
                raise

        engine.handle_reassignment.side_effect = hang

        async def scenario():
            reconciler = Reconciler(engine, tracker, interval=3600)
            await reconciler.run_once()
            await asyncio.sleep(0.01)
            await reconciler.stop(timeout=0.01)
            return reconciler

        reconciler = run_async(scenario())

        assert sorted(cancelled) == ["PROJ-5", "PROJ-6"]
        assert reconciler.in_flight == []
