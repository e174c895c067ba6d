"""Orchestration engine driving tasks from issue to production merge.

Receives trigger events (from webhooks or reconciliation) and drives each
task through its phases:

    plan → plan review → implement → staging + CI → test → merge

Every public entry point first claims the issue in the ConcurrencyGuard and
silently drops the event when another action already holds it; the next
webhook or reconciliation pass will retry. Entry points are idempotent:
they re-read the task record and return early when the phase or watermark
shows the work was already done.

Failures are caught at phase boundaries. Apart from merge conflicts during
rework, which keep the task in test, a failure moves the task to failed,
records the error, posts it on the issue and hands the issue back to a
human.
"""

import functools
import logging
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

from src.shipwright.admission import ConcurrencyGuard
from src.shipwright.agent.events import AgentResult
from src.shipwright.agent.prompts import PlanOutput, parse_plan_output
from src.shipwright.agent.runner import AgentRunner
from src.shipwright.engine import formatting
from src.shipwright.engine.comments import (
    find_recorded_pr_number,
    is_self_authored,
    newest_human_comment,
    parse_approval,
)
from src.shipwright.errors import (
    AgentRunError,
    CIFailedError,
    ErrorCategory,
    MergeConflictError,
    ShipwrightError,
    classify_error,
)
from src.shipwright.events.emitter import EventEmitter
from src.shipwright.events.models import EventType, TaskEvent
from src.shipwright.hosting.client import GitHubClient
from src.shipwright.hosting.models import PullRequest
from src.shipwright.recovery import CIOutcome, RecoveryLoop
from src.shipwright.state.machine import TaskStateMachine
from src.shipwright.state.models import (
    INTERRUPTIBLE_PHASES,
    TaskPhase,
    TaskRecord,
    is_valid_transition,
    utcnow,
)
from src.shipwright.tracker.client import JiraClient
from src.shipwright.tracker.models import TrackerComment, TrackerIssue
from src.shipwright.triggers.models import (
    ChangeRequestFeedback,
    CommentCreated,
    IssueCreated,
    IssueUpdated,
    TriggerEvent,
)
from src.shipwright.workspace.manager import Workspace, WorkspaceManager


logger = logging.getLogger(__name__)

RETRYABLE_PHASES = (TaskPhase.APPROVED, TaskPhase.FAILED)


@dataclass
class EngineOptions:
    """Workflow settings the engine needs beyond its collaborators.

    Attributes:
        approval_keyword: Comment prefix that approves a plan.
        in_progress_status: Status an issue moves to when picked up.
        review_status: Status an issue moves to once its PR is open.
        production_branch: Branch pull requests target.
        human_account_id: Account issues are handed back to; the issue
            reporter when unset.
    """

    approval_keyword: str = "approve"
    in_progress_status: str = "In Progress"
    review_status: str = "Test"
    production_branch: str = "main"
    human_account_id: Optional[str] = None


class OrchestrationEngine:
    """The task state machine and its side effects.

    Accepts all dependencies via constructor injection. The engine is the
    only writer of task records.

    Attributes:
        machine: Validated access to task records.
        guard: Per-issue claims and implementation slots.
        tracker: Jira client.
        hosting: GitHub client.
        agent: Coding agent runner.
        workspaces: Worktree and staging branch manager.
        recovery: CI validation loop.
        event_emitter: Sink for observability events.
        options: Workflow settings.
    """

    def __init__(
        self,
        machine: TaskStateMachine,
        guard: ConcurrencyGuard,
        tracker: JiraClient,
        hosting: GitHubClient,
        agent: AgentRunner,
        workspaces: WorkspaceManager,
        recovery: RecoveryLoop,
        event_emitter: EventEmitter,
        options: Optional[EngineOptions] = None,
    ):
        self.machine = machine
        self.guard = guard
        self.tracker = tracker
        self.hosting = hosting
        self.agent = agent
        self.workspaces = workspaces
        self.recovery = recovery
        self.event_emitter = event_emitter
        self.options = options or EngineOptions()

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------
    async def handle_event(self, event: TriggerEvent) -> None:
        """Dispatch a trigger event to the matching entry point."""
        if isinstance(event, IssueCreated):
            if self.tracker.is_eligible(event.issue):
                await self.handle_new_task(event.issue)
        elif isinstance(event, IssueUpdated):
            await self._handle_issue_updated(event)
        elif isinstance(event, CommentCreated):
            await self.handle_comments(event.issue_key, [event.comment])
        elif isinstance(event, ChangeRequestFeedback):
            await self.handle_change_request_feedback(event)
        else:
            logger.warning("Unknown trigger event", extra={"event_type": type(event).__name__})

    async def _handle_issue_updated(self, event: IssueUpdated) -> None:
        issue = event.issue
        status = event.status_changed_to
        if status and status.lower() == self.tracker.done_status.lower():
            await self.handle_done(issue.key)
            return

        if self._assigned_to_bot(issue):
            record = await self.machine.get(issue.key)
            if record is not None and record.phase in RETRYABLE_PHASES:
                await self.handle_reassignment(issue.key)
                return

        if self.tracker.is_eligible(issue):
            await self.handle_new_task(issue)

    async def handle_new_task(self, issue: TrackerIssue) -> None:
        """Plan an eligible issue and post the plan for review.

        Nothing is persisted until the plan is posted, so a failed planning
        run leaves no record and the next scan starts over. An issue that is
        already tracked is ignored.
        """
        key = issue.key
        if not self.guard.try_acquire(key):
            return
        try:
            if await self.machine.get(key) is not None:
                logger.debug("Issue already tracked", extra={"issue_key": key})
                return
            await self._plan_new_task(issue)
        finally:
            self.guard.release(key)

    async def handle_comments(self, issue_key: str, comments: List[TrackerComment]) -> None:
        """Act on the newest human comment past the task's watermark.

        In plan-posted the comment is an approval or plan feedback; in test
        it is rework feedback. Other phases ignore comments.
        """
        if not self.guard.try_acquire(issue_key):
            return
        try:
            record = await self.machine.get(issue_key)
            if record is None:
                return
            if record.phase is TaskPhase.PLAN_POSTED:
                comment = newest_human_comment(
                    comments, record.plan_posted_at or record.updated_at
                )
                if comment is not None:
                    await self._on_plan_comment(record, comment)
            elif record.phase is TaskPhase.TEST:
                comment = newest_human_comment(
                    comments, record.last_feedback_check_at or record.updated_at
                )
                if comment is not None:
                    await self._rework(record, comment.body, comment.created)
        finally:
            self.guard.release(issue_key)

    async def handle_change_request_feedback(self, event: ChangeRequestFeedback) -> None:
        """Treat review feedback on a task's pull request as test feedback."""
        if is_self_authored(event.body) or not event.body.strip():
            return
        candidates = await self.machine.list_by_phase(TaskPhase.TEST)
        match = next((r for r in candidates if r.pr_number == event.pr_number), None)
        if match is None:
            logger.debug("No task in test for pull request", extra={"pr_number": event.pr_number})
            return

        key = match.issue_key
        if not self.guard.try_acquire(key):
            return
        try:
            record = await self.machine.get(key)
            if (
                record is None
                or record.phase is not TaskPhase.TEST
                or record.pr_number != event.pr_number
            ):
                return
            watermark = record.last_feedback_check_at or record.updated_at
            if event.created <= watermark:
                return
            await self._rework(record, event.body, event.created)
        finally:
            self.guard.release(key)

    async def handle_reassignment(self, issue_key: str) -> None:
        """Drive implementation for a task in approved or failed."""
        if not self.guard.try_acquire(issue_key):
            return
        try:
            record = await self.machine.get(issue_key)
            if record is None or record.phase not in RETRYABLE_PHASES:
                return
            logger.info(
                "Driving implementation",
                extra={"issue_key": issue_key, "phase": record.phase.value},
            )
            await self._implement(record)
        finally:
            self.guard.release(issue_key)

    async def handle_done(self, issue_key: str) -> None:
        """Merge a task's pull request once the issue reached its done status.

        The PR number comes from the record or, when there is none, from
        the implementation-complete comment on the issue. Tasks in failed
        are left for a human.
        """
        if not self.guard.try_acquire(issue_key):
            return
        try:
            record = await self.machine.get(issue_key)
            if record is not None and record.phase is not TaskPhase.TEST:
                logger.info(
                    "Ignoring done status outside test",
                    extra={"issue_key": issue_key, "phase": record.phase.value},
                )
                return

            pr_number = record.pr_number if record is not None else None
            if pr_number is None:
                issue = await self.tracker.get_issue(issue_key)
                pr_number = find_recorded_pr_number(issue.comments)
            if pr_number is None:
                logger.warning("Could not find PR number", extra={"issue_key": issue_key})
                return

            await self._merge(issue_key, record, pr_number)
        finally:
            self.guard.release(issue_key)

    async def recover_interrupted(self) -> List[str]:
        """Fail tasks whose implementation or merge was cut off by a restart.

        Returns:
            Issue keys that were moved to failed.
        """
        recovered: List[str] = []
        for phase in INTERRUPTIBLE_PHASES:
            for record in await self.machine.list_by_phase(phase):
                key = record.issue_key
                if not self.guard.try_acquire(key):
                    continue
                try:
                    error = ShipwrightError(f"Interrupted by restart during {phase.value}")
                    await self._advance(
                        record,
                        TaskPhase.FAILED,
                        last_error=error.message,
                        branch_name=None,
                        workspace_path=None,
                    )
                    await self.workspaces.destroy_workspace(key, _record_workspace(record))
                    await self._best_effort(
                        "post interruption comment",
                        key,
                        self.tracker.add_comment(key, formatting.interrupted_comment(phase.value)),
                    )
                    await self._hand_back(key, record.creator_account_id)
                    await self._emit_error(key, error, phase, record.summary)
                    recovered.append(key)
                finally:
                    self.guard.release(key)
        if recovered:
            logger.warning("Recovered interrupted tasks", extra={"issue_keys": recovered})
        return recovered

    async def status_snapshot(self) -> Dict[str, Any]:
        """Summary of tracked tasks and admission state for /status."""
        records = await self.machine.list_all()
        counts = Counter(record.phase.value for record in records)
        return {
            "phases": {phase.value: counts.get(phase.value, 0) for phase in TaskPhase},
            "in_flight": sorted(self.guard.in_flight),
            "active_slots": sorted(self.guard.active_slots),
            "max_concurrent_tasks": self.guard.max_active_tasks,
            "total_accrued_cost": round(sum(r.accrued_cost for r in records), 4),
            "tasks": [
                {
                    "issue_key": record.issue_key,
                    "phase": record.phase.value,
                    "pr_url": record.pr_url,
                    "accrued_cost": record.accrued_cost,
                    "last_error": record.last_error,
                }
                for record in records
            ],
        }

    # -------------------------------------------------------------------------
    # Planning
    # -------------------------------------------------------------------------
    async def _plan_new_task(self, issue: TrackerIssue) -> None:
        key = issue.key
        logger.info("Planning task", extra={"issue_key": key, "summary": issue.summary})
        await self._best_effort(
            "move issue to in progress",
            key,
            self.tracker.transition_issue(key, self.options.in_progress_status),
        )

        try:
            await self.tracker.add_comment(key, formatting.analyzing_comment())
            result = await self.agent.plan(key, issue.summary, issue.description)
            await self._record_agent_run(key, "plan", result, persist=False)
            if not result.success:
                raise AgentRunError(
                    f"Planning failed: {result.error or 'Unknown error'}",
                    output=result.output,
                    category=ErrorCategory.BUDGET if result.budget_exceeded else None,
                )
            plan = parse_plan_output(result.output)
            stored_plan = _stored_plan(plan, result.output)
            if not stored_plan:
                raise AgentRunError("Planning produced no plan", output=result.output)

            await self.tracker.add_comment(
                key, formatting.plan_comment(plan, self.options.approval_keyword)
            )
            record = await self.machine.create(
                key,
                TaskPhase.PLAN_POSTED,
                summary=issue.summary,
                description=issue.description,
                plan=stored_plan,
                conversation_token=result.conversation_token,
                accrued_cost=result.cost_usd,
                plan_posted_at=utcnow(),
                creator_account_id=issue.reporter_account_id,
            )
        except Exception as exc:
            logger.exception("Planning failed", extra={"issue_key": key})
            await self._best_effort(
                "post planning failure",
                key,
                self.tracker.add_comment(key, formatting.planning_failed_comment(str(exc))),
            )
            await self._hand_back(key, issue.reporter_account_id)
            await self._emit_error(key, exc, TaskPhase.PLANNING, issue.summary)
            return

        await self._emit_transition(key, TaskPhase.NEW, TaskPhase.PLAN_POSTED)
        await self._emit_plan_ready(record, plan)
        await self._hand_back(key, record.creator_account_id)

    async def _on_plan_comment(self, record: TaskRecord, comment: TrackerComment) -> None:
        notes = parse_approval(comment.body, self.options.approval_keyword)
        if notes is None:
            await self._replan(record, comment.body, comment.created)
            return

        logger.info(
            "Plan approved",
            extra={"issue_key": record.issue_key, "reviewer_notes": notes or None},
        )
        # Comments up to the approval are consumed; the test watermark starts past it
        record = await self._advance(
            record,
            TaskPhase.APPROVED,
            reviewer_notes=notes or None,
            last_feedback_check_at=comment.created,
        )
        await self._implement(record)

    async def _replan(self, record: TaskRecord, feedback: str, feedback_at: datetime) -> None:
        """Revise the plan with reviewer feedback.

        The watermark advances whether or not re-planning succeeds, so the
        same comment is never processed twice.
        """
        key = record.issue_key
        previous = record.plan_posted_at
        watermark = _after(feedback_at if previous is None else max(previous, feedback_at))
        logger.info("Re-planning with feedback", extra={"issue_key": key})
        try:
            await self.tracker.add_comment(key, formatting.replanning_comment())
            result = await self.agent.plan(
                key,
                record.summary,
                record.description,
                previous_plan=record.plan,
                feedback=feedback,
            )
            await self._record_agent_run(key, "plan", result)
            if not result.success:
                raise AgentRunError(result.error or "Unknown error", output=result.output)
            plan = parse_plan_output(result.output)
            stored_plan = _stored_plan(plan, result.output)
            if not stored_plan:
                raise AgentRunError("Planning produced no plan", output=result.output)

            await self.tracker.add_comment(
                key,
                formatting.plan_comment(plan, self.options.approval_keyword, revised=True),
            )
            record = await self._advance(
                record,
                TaskPhase.PLAN_POSTED,
                plan=stored_plan,
                conversation_token=result.conversation_token or record.conversation_token,
                plan_posted_at=watermark,
                last_error=None,
            )
        except Exception as exc:
            logger.exception("Re-planning failed", extra={"issue_key": key})
            await self._best_effort(
                "post re-planning failure",
                key,
                self.tracker.add_comment(key, formatting.replanning_failed_comment(str(exc))),
            )
            await self.machine.update(key, plan_posted_at=watermark, last_error=str(exc))
            await self._emit_error(key, exc, TaskPhase.PLAN_POSTED, record.summary)
            return

        await self._emit_plan_ready(record, plan)
        await self._hand_back(key, record.creator_account_id)

    # -------------------------------------------------------------------------
    # Implementation
    # -------------------------------------------------------------------------
    async def _implement(self, record: TaskRecord) -> None:
        """Run one implementation cycle; the caller holds the issue claim.

        A task that cannot get an implementation slot stays in approved and
        is picked up again by a later trigger.
        """
        key = record.issue_key
        if record.phase is TaskPhase.FAILED:
            record = await self._advance(record, TaskPhase.APPROVED, last_error=None)
        if record.phase is not TaskPhase.APPROVED:
            return
        if not self.guard.reserve_slot(key):
            logger.info("No implementation slot free, task stays approved", extra={"issue_key": key})
            return

        workspace: Optional[Workspace] = None
        try:
            record = await self._advance(record, TaskPhase.IMPLEMENTING)
            await self._best_effort(
                "post implementation start",
                key,
                self.tracker.add_comment(key, formatting.implementation_started_comment()),
            )
            await self._assign_bot(key)

            workspace = await self.workspaces.create_workspace(key, record.summary)
            record = await self.machine.update(
                key, branch_name=workspace.branch_name, workspace_path=str(workspace.path)
            )

            result = await self.agent.implement(
                key,
                record.summary,
                record.description,
                record.plan or "",
                record.reviewer_notes,
                workspace.path,
            )
            await self._record_agent_run(key, "implement", result)
            if result.conversation_token:
                record = await self.machine.update(
                    key, conversation_token=result.conversation_token
                )
            if not result.success:
                raise AgentRunError(
                    f"Implementation failed: {result.error}",
                    output=result.output,
                    category=ErrorCategory.BUDGET if result.budget_exceeded else None,
                )

            # The branch is fresh from production, so a leftover remote
            # branch from an earlier attempt is overwritten
            push = await self.workspaces.commit_and_push(
                workspace,
                formatting.implementation_commit_message(key, record.summary),
                force=True,
            )
            push.require_pushed()

            outcome = await self._integrate(record, workspace)
            note = formatting.ci_note(outcome)
            pr = await self._open_pull_request(record, workspace, result.output, note)

            await self._best_effort(
                "add pending label", key, self.tracker.add_label(key, self.tracker.pending_label)
            )
            await self._best_effort(
                "post implementation result",
                key,
                self.tracker.add_comment(
                    key,
                    formatting.implementation_done_comment(
                        workspace.branch_name,
                        pr.html_url,
                        pr.number,
                        note,
                        self.tracker.done_status,
                    ),
                ),
            )
            await self._best_effort(
                "move issue to review",
                key,
                self.tracker.transition_issue(key, self.options.review_status),
            )
            await self._hand_back(key, record.creator_account_id)

            record = await self._advance(
                record,
                TaskPhase.TEST,
                pr_number=pr.number,
                pr_url=pr.html_url,
                last_feedback_check_at=_after(record.last_feedback_check_at),
                ci_fix_attempts=outcome.fix_attempts,
                last_error=None,
            )
        except Exception as exc:
            await self._fail(record, exc, "Implementation error", workspace)
            return
        finally:
            self.guard.release_slot(key)

        await self._emit(
            EventType.IMPLEMENTATION_DONE,
            key,
            summary=record.summary,
            message=f"PR #{pr.number} is open and staging is updated.",
            url=pr.html_url,
            pr_number=pr.number,
        )

    async def _integrate(self, record: TaskRecord, workspace: Workspace) -> CIOutcome:
        """Merge the pushed branch into staging and validate it in CI."""
        key = record.issue_key
        try:
            staging_sha = await self.workspaces.merge_into_staging(workspace.branch_name)
        except MergeConflictError as exc:
            await self._emit(
                EventType.MERGE_CONFLICT,
                key,
                branch=workspace.branch_name,
                error_message=str(exc),
            )
            raise

        try:
            outcome = await self.recovery.validate(
                key,
                record.summary,
                workspace,
                staging_sha,
                on_agent_result=functools.partial(self._record_agent_run, key, "fix"),
            )
        except CIFailedError as exc:
            await self._emit(
                EventType.CI_RESULT,
                key,
                status="failed",
                fix_attempts=exc.attempts,
                run_url=exc.run_url,
            )
            await self.machine.update(key, ci_fix_attempts=exc.attempts)
            raise

        await self._emit(
            EventType.CI_RESULT,
            key,
            status=outcome.status.value,
            fix_attempts=outcome.fix_attempts,
            run_url=outcome.run_url,
        )
        return outcome

    async def _open_pull_request(
        self,
        record: TaskRecord,
        workspace: Workspace,
        output: str,
        note: str,
    ) -> PullRequest:
        """Open the task's pull request, reusing one left by an earlier attempt."""
        existing = await self.hosting.find_open_pull_request(workspace.branch_name)
        if existing is not None:
            logger.info(
                "Reusing open pull request",
                extra={"issue_key": record.issue_key, "pr_number": existing.number},
            )
            return existing
        return await self.hosting.create_pull_request(
            head=workspace.branch_name,
            base=self.options.production_branch,
            title=formatting.pr_title(record.issue_key, record.summary),
            body=formatting.pr_body(
                record.issue_key,
                record.summary,
                record.plan,
                output,
                note,
                self.tracker.issue_url(record.issue_key),
            ),
        )

    # -------------------------------------------------------------------------
    # Rework
    # -------------------------------------------------------------------------
    async def _rework(self, record: TaskRecord, feedback: str, feedback_at: datetime) -> None:
        """Apply test feedback on the task's existing branch.

        The watermark moves to the feedback's timestamp on every outcome
        except a failure, which moves the task to failed.

        Rework takes an implementation slot; with none free the feedback is
        left unconsumed so a later rescan retries it.
        """
        key = record.issue_key
        if not record.branch_name:
            await self._fail(
                record, ShipwrightError("No branch recorded for this task"), "Rework failed"
            )
            return

        if not self.guard.reserve_slot(key):
            logger.info("No implementation slot free, rework deferred", extra={"issue_key": key})
            return
        try:
            await self._rework_in_slot(record, feedback, feedback_at)
        finally:
            self.guard.release_slot(key)

    async def _rework_in_slot(
        self, record: TaskRecord, feedback: str, feedback_at: datetime
    ) -> None:
        key = record.issue_key
        logger.info("Reworking with test feedback", extra={"issue_key": key})
        await self._best_effort(
            "post rework start", key, self.tracker.add_comment(key, formatting.rework_started_comment())
        )
        await self._assign_bot(key)

        workspace: Optional[Workspace] = None
        try:
            workspace = await self.workspaces.attach_workspace(key, record.branch_name)
            result = await self.agent.rework(
                key,
                record.summary,
                record.description,
                record.plan or "",
                feedback,
                workspace.path,
                conversation_token=record.conversation_token,
            )
            await self._record_agent_run(key, "rework", result)
            if not result.success:
                raise AgentRunError(
                    f"Rework failed: {result.error}",
                    output=result.output,
                    category=ErrorCategory.BUDGET if result.budget_exceeded else None,
                )
            token = result.conversation_token or record.conversation_token

            push = await self.workspaces.commit_and_push(
                workspace, formatting.rework_commit_message(key, feedback)
            )
            if not push.pushed:
                await self._best_effort(
                    "ask for clarification",
                    key,
                    self.tracker.add_comment(key, formatting.rework_no_changes_comment()),
                )
                await self._hand_back(key, record.creator_account_id)
                await self.machine.update(
                    key,
                    last_feedback_check_at=feedback_at,
                    conversation_token=token,
                    workspace_path=str(workspace.path),
                )
                return

            outcome = await self._integrate(record, workspace)
            await self._best_effort(
                "post rework result",
                key,
                self.tracker.add_comment(
                    key,
                    formatting.rework_done_comment(
                        result.output, formatting.ci_note(outcome), self.tracker.done_status
                    ),
                ),
            )
            await self._hand_back(key, record.creator_account_id)
            await self._advance(
                record,
                TaskPhase.TEST,
                last_feedback_check_at=feedback_at,
                conversation_token=token,
                workspace_path=str(workspace.path),
                ci_fix_attempts=outcome.fix_attempts,
                last_error=None,
            )
        except MergeConflictError as exc:
            logger.warning("Rework conflicts with staging", extra={"issue_key": key})
            await self.machine.update(key, last_feedback_check_at=feedback_at, last_error=str(exc))
            await self._best_effort(
                "post conflict", key, self.tracker.add_comment(key, formatting.conflict_comment(str(exc)))
            )
            await self._hand_back(key, record.creator_account_id)
            await self._emit_error(key, exc, TaskPhase.TEST, record.summary)
        except Exception as exc:
            await self._fail(record, exc, "Rework failed", workspace)

    # -------------------------------------------------------------------------
    # Merge
    # -------------------------------------------------------------------------
    async def _merge(
        self, issue_key: str, record: Optional[TaskRecord], pr_number: int
    ) -> None:
        if record is not None:
            record = await self._advance(record, TaskPhase.MERGING)

        try:
            pr = await self.hosting.get_pull_request(pr_number)
            merged_now = pr.is_open
            if merged_now:
                await self.hosting.merge_pull_request(pr_number, f"{issue_key}: {pr.title}")
            else:
                logger.info(
                    "Pull request already closed",
                    extra={"issue_key": issue_key, "pr_number": pr_number, "state": pr.state},
                )

            branch = pr.head_ref or (record.branch_name if record is not None else None)
            if branch:
                await self._best_effort(
                    "delete feature branch", issue_key, self.hosting.delete_branch(branch)
                )
            await self._best_effort(
                "remove pending label",
                issue_key,
                self.tracker.remove_label(issue_key, self.tracker.pending_label),
            )
            if merged_now:
                await self._best_effort(
                    "post merge result",
                    issue_key,
                    self.tracker.add_comment(
                        issue_key,
                        formatting.merged_comment(pr_number, self.options.production_branch),
                    ),
                )
            await self.workspaces.destroy_workspace(issue_key, _record_workspace(record))
            if record is not None:
                await self._advance(
                    record, TaskPhase.DONE, branch_name=None, workspace_path=None
                )
                await self.machine.remove(issue_key)
        except Exception as exc:
            if record is not None:
                await self._fail(record, exc, "Auto-merge failed")
            else:
                logger.exception("Auto-merge failed", extra={"issue_key": issue_key})
                await self._best_effort(
                    "post merge failure",
                    issue_key,
                    self.tracker.add_comment(
                        issue_key, formatting.failure_comment("Auto-merge failed", str(exc))
                    ),
                )
            return

        await self._emit(
            EventType.MERGED,
            issue_key,
            summary=record.summary if record is not None else pr.title,
            message=f"PR #{pr_number} merged to {self.options.production_branch}.",
            url=pr.html_url,
            pr_number=pr_number,
            already_closed=not merged_now,
        )

    # -------------------------------------------------------------------------
    # Failure handling
    # -------------------------------------------------------------------------
    async def _fail(
        self,
        record: TaskRecord,
        exc: BaseException,
        heading: str,
        workspace: Optional[Workspace] = None,
    ) -> None:
        """Move a task to failed, tear down its workspace and tell a human."""
        key = record.issue_key
        message = str(exc) or type(exc).__name__
        logger.error(
            "Task failed",
            exc_info=exc,
            extra={
                "issue_key": key,
                "phase": record.phase.value,
                "category": classify_error(exc).value,
            },
        )

        phase = record.phase
        try:
            current = await self.machine.get(key)
            if current is not None:
                phase = current.phase
                if is_valid_transition(current.phase, TaskPhase.FAILED):
                    await self._advance(
                        current,
                        TaskPhase.FAILED,
                        last_error=message,
                        branch_name=None,
                        workspace_path=None,
                    )
                else:
                    await self.machine.update(key, last_error=message)
        except Exception:
            logger.exception("Failed to record task failure", extra={"issue_key": key})

        await self.workspaces.destroy_workspace(key, workspace or _record_workspace(record))
        output = exc.output if isinstance(exc, AgentRunError) else None
        await self._best_effort(
            "post failure",
            key,
            self.tracker.add_comment(key, formatting.failure_comment(heading, message, output)),
        )
        await self._hand_back(key, record.creator_account_id)
        await self._emit_error(key, exc, phase, record.summary)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------
    def _assigned_to_bot(self, issue: TrackerIssue) -> bool:
        bot = self.tracker.bot_account_id
        return bool(bot) and issue.assignee_account_id == bot

    async def _assign_bot(self, issue_key: str) -> None:
        if self.tracker.bot_account_id:
            await self._best_effort(
                "assign to automation",
                issue_key,
                self.tracker.assign_issue(issue_key, self.tracker.bot_account_id),
            )

    async def _hand_back(self, issue_key: str, fallback_account: Optional[str]) -> None:
        """Assign the issue to a human, or unassign it when none is known."""
        account = self.options.human_account_id or fallback_account
        await self._best_effort(
            "hand issue back", issue_key, self.tracker.assign_issue(issue_key, account)
        )

    async def _best_effort(self, description: str, issue_key: str, operation) -> None:
        """Await a tracker or host side effect whose failure must not fail the task."""
        try:
            await operation
        except Exception as exc:
            logger.warning(
                "Side effect failed: %s",
                description,
                extra={"issue_key": issue_key, "error": str(exc)},
            )

    async def _advance(self, record: TaskRecord, to_phase: TaskPhase, **fields: Any) -> TaskRecord:
        updated = await self.machine.advance(record.issue_key, to_phase, **fields)
        await self._emit_transition(record.issue_key, record.phase, to_phase)
        return updated

    async def _record_agent_run(
        self, issue_key: str, kind: str, result: AgentResult, persist: bool = True
    ) -> None:
        """Add a run's cost to the task and emit an agent event."""
        if persist and result.cost_usd > 0:
            await self.machine.add_cost(issue_key, result.cost_usd)
        await self._emit(
            EventType.AGENT_INVOCATION,
            issue_key,
            kind=kind,
            success=result.success,
            cost_usd=result.cost_usd,
            num_turns=result.num_turns,
            error=result.error,
        )

    async def _emit_transition(
        self, issue_key: str, from_phase: TaskPhase, to_phase: TaskPhase
    ) -> None:
        await self._emit(
            EventType.STATE_TRANSITION,
            issue_key,
            from_phase=from_phase.value,
            to_phase=to_phase.value,
        )

    async def _emit_plan_ready(self, record: TaskRecord, plan: PlanOutput) -> None:
        await self._emit(
            EventType.PLAN_READY,
            record.issue_key,
            summary=record.summary,
            message=plan.questions or plan.functional_summary,
            url=self.tracker.issue_url(record.issue_key),
            has_questions=plan.has_questions,
        )

    async def _emit_error(
        self, issue_key: str, exc: BaseException, phase: TaskPhase, summary: str
    ) -> None:
        await self._emit(
            EventType.ERROR,
            issue_key,
            error_message=str(exc),
            category=classify_error(exc).value,
            phase=phase.value,
            summary=summary,
            message=str(exc),
            url=self.tracker.issue_url(issue_key),
        )

    async def _emit(self, event_type: EventType, issue_key: str, **details: Any) -> None:
        await self._safe_emit(
            TaskEvent(event_type=event_type, issue_key=issue_key, details=details)
        )

    async def _safe_emit(self, event: TaskEvent) -> None:
        """Emit an event, swallowing exceptions to avoid disrupting the engine."""
        try:
            await self.event_emitter.emit(event)
        except Exception:
            logger.exception(
                "Failed to emit task event",
                extra={"event_type": event.event_type.value, "issue_key": event.issue_key},
            )


def _stored_plan(plan: PlanOutput, output: str) -> str:
    """Text kept as the task's plan; questions are kept verbatim."""
    if plan.has_questions:
        return output.strip()
    return plan.technical_plan


def _after(previous: Optional[datetime]) -> datetime:
    """Current time, nudged past previous so watermarks strictly increase."""
    now = utcnow()
    if previous is not None and now <= previous:
        return previous + timedelta(microseconds=1)
    return now


def _record_workspace(record: Optional[TaskRecord]) -> Optional[Workspace]:
    if record is None or not record.has_workspace:
        return None
    return Workspace(
        issue_key=record.issue_key,
        branch_name=record.branch_name,
        path=Path(record.workspace_path),
    )
