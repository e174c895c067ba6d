"""CI validation with bounded agent-assisted repair.

After a feature branch is merged into staging, RecoveryLoop waits for the
CI run triggered by that staging commit and polls it with escalating
intervals until it completes or the overall timeout passes. A failing run
starts a fix cycle:

1. fetch the tail of every failed job's log
2. run the agent in fix mode against the task's worktree
3. require a new commit, push it and merge into staging again
4. wait for the next run

At most max_retries fix cycles run; a run that still fails afterwards
raises CIFailedError with the last failure reason.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Sequence

from src.shipwright.agent.events import AgentResult
from src.shipwright.agent.runner import AgentRunner
from src.shipwright.errors import (
    AgentRunError,
    CIFailedError,
    ErrorCategory,
    NoChangesError,
)
from src.shipwright.hosting.client import GitHubClient
from src.shipwright.hosting.models import WorkflowRun
from src.shipwright.workspace.manager import Workspace, WorkspaceManager


logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVALS = (15.0, 30.0, 60.0)

AgentResultCallback = Callable[[AgentResult], Awaitable[None]]


class CIStatus(str, Enum):
    SKIPPED = "skipped"
    PASSED = "passed"
    NOT_FOUND = "not_found"


@dataclass
class CIOutcome:
    """Result of a successful validation.

    Attributes:
        status: skipped (CI not configured), passed, or not_found (no run
            appeared in time; treated as non-fatal).
        run_url: The passing run, when there was one.
        fix_attempts: Fix cycles performed before the run passed.
    """

    status: CIStatus
    run_url: Optional[str] = None
    fix_attempts: int = 0


class RecoveryLoop:
    """Polls CI for staging commits and drives fix cycles.

    Attributes:
        workflow: Workflow file name or id; None disables validation.
        staging_branch: Branch the workflow runs on.
        max_retries: Maximum fix cycles per validation.
        poll_intervals: Sleep before each status poll; the last value
            repeats.
        run_timeout: Seconds a run may take before it counts as failed.
        appear_timeout: Seconds to wait for a run to show up.
    """

    def __init__(
        self,
        hosting: GitHubClient,
        agent: AgentRunner,
        workspaces: WorkspaceManager,
        workflow: Optional[str],
        staging_branch: str = "staging",
        max_retries: int = 2,
        poll_intervals: Sequence[float] = DEFAULT_POLL_INTERVALS,
        run_timeout: float = 1800,
        appear_timeout: float = 180,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        if not poll_intervals:
            raise ValueError("poll_intervals cannot be empty")
        self.hosting = hosting
        self.agent = agent
        self.workspaces = workspaces
        self.workflow = workflow
        self.staging_branch = staging_branch
        self.max_retries = max_retries
        self.poll_intervals = tuple(poll_intervals)
        self.run_timeout = run_timeout
        self.appear_timeout = appear_timeout
        self._sleep = sleep
        self._clock = clock

    @property
    def enabled(self) -> bool:
        return bool(self.workflow)

    async def validate(
        self,
        issue_key: str,
        summary: str,
        workspace: Workspace,
        staging_sha: str,
        on_agent_result: Optional[AgentResultCallback] = None,
    ) -> CIOutcome:
        """Wait for CI on a staging commit, repairing failures.

        Args:
            issue_key: Task being validated.
            summary: Task summary, used in fix prompts.
            workspace: The task's worktree, where fixes are made.
            staging_sha: Staging commit produced by the latest merge.
            on_agent_result: Awaited after every fix run, e.g. to record cost.

        Returns:
            CIOutcome for a passing, skipped or missing run.

        Raises:
            CIFailedError: If the run still fails after max_retries fixes.
            AgentRunError: If a fix run itself fails.
            NoChangesError: If a fix run changes nothing.
            MergeConflictError: If re-merging the fix into staging conflicts.
        """
        if not self.enabled:
            return CIOutcome(status=CIStatus.SKIPPED)

        attempts = 0
        sha = staging_sha
        while True:
            run = await self._wait_for_run(sha)
            if run is None:
                logger.warning(
                    "No CI run appeared for staging commit",
                    extra={"issue_key": issue_key, "staging_sha": sha, "workflow": self.workflow},
                )
                return CIOutcome(status=CIStatus.NOT_FOUND, fix_attempts=attempts)

            run = await self._wait_for_completion(run)
            if run.succeeded:
                logger.info(
                    "CI passed",
                    extra={"issue_key": issue_key, "run_url": run.html_url, "fix_attempts": attempts},
                )
                return CIOutcome(status=CIStatus.PASSED, run_url=run.html_url, fix_attempts=attempts)

            reason = self._failure_reason(run)
            if attempts >= self.max_retries:
                logger.warning(
                    "CI still failing after all fix attempts",
                    extra={"issue_key": issue_key, "attempts": attempts, "reason": reason},
                )
                raise CIFailedError(
                    f"CI failed after {attempts} fix attempt(s): {reason}",
                    run_url=run.html_url,
                    attempts=attempts,
                )

            attempts += 1
            logger.info(
                "CI failed, starting fix attempt",
                extra={"issue_key": issue_key, "attempt": attempts, "reason": reason},
            )
            sha = await self._fix(issue_key, summary, workspace, run, attempts, on_agent_result)

    async def _fix(
        self,
        issue_key: str,
        summary: str,
        workspace: Workspace,
        run: WorkflowRun,
        attempt: int,
        on_agent_result: Optional[AgentResultCallback],
    ) -> str:
        logs = await self._failed_job_logs(run)
        result = await self.agent.fix_build(
            issue_key, summary, workspace.branch_name, attempt, logs, workspace.path
        )
        if on_agent_result is not None:
            await on_agent_result(result)
        if not result.success:
            raise AgentRunError(
                f"Build fix attempt {attempt} failed: {result.error}",
                output=result.output,
                category=ErrorCategory.BUDGET if result.budget_exceeded else None,
            )

        push = await self.workspaces.commit_and_push(
            workspace, f"{issue_key}: Fix build failure (attempt {attempt})"
        )
        if not push.pushed:
            raise NoChangesError(f"Build fix attempt {attempt} made no changes")
        return await self.workspaces.merge_into_staging(workspace.branch_name)

    async def _wait_for_run(self, sha: str) -> Optional[WorkflowRun]:
        deadline = self._clock() + self.appear_timeout
        while True:
            runs = await self.hosting.list_workflow_runs(
                self.workflow, self.staging_branch, head_sha=sha
            )
            for run in runs:
                if run.head_sha == sha:
                    return run
            if self._clock() >= deadline:
                return None
            await self._sleep(self.poll_intervals[0])

    async def _wait_for_completion(self, run: WorkflowRun) -> WorkflowRun:
        """Poll until the run completes; an unfinished run is returned at timeout."""
        deadline = self._clock() + self.run_timeout
        poll = 0
        while not run.is_completed:
            if self._clock() >= deadline:
                logger.warning(
                    "CI run exceeded its timeout",
                    extra={"run_id": run.id, "timeout": self.run_timeout},
                )
                return run
            interval = self.poll_intervals[min(poll, len(self.poll_intervals) - 1)]
            await self._sleep(interval)
            poll += 1
            run = await self.hosting.get_workflow_run(run.id)
        return run

    async def _failed_job_logs(self, run: WorkflowRun) -> List[str]:
        logs: List[str] = []
        for job in await self.hosting.list_failed_jobs(run.id):
            tail = await self.hosting.get_job_log_tail(job.id)
            logs.append(f"=== Job: {job.name} ===\n{tail}")
        return logs

    def _failure_reason(self, run: WorkflowRun) -> str:
        if not run.is_completed:
            return f"run {run.html_url or run.id} did not finish within {int(self.run_timeout)}s"
        return f"run {run.html_url or run.id} concluded {run.conclusion}"
