"""Periodic reconciliation against the tracker.

Webhooks can be lost, delayed or misconfigured. The reconciler runs the same
engine entry points from polling so that every task eventually advances
without them:

1. ready issues that are not tracked yet are planned
2. plan-posted and test tasks have their comments rescanned; a test task
   whose issue reached the done status is merged
3. approved tasks are driven again (they may have waited for a slot)
4. failed tasks reassigned to the automation are retried
5. issues carrying the pending label in the done status are merged

Each item runs as its own background task, so a long implementation or CI
wait never holds up the next pass. An issue that still has an action in
flight from an earlier pass is skipped; a failure is logged and nothing
else is affected.
"""

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional

from src.shipwright.engine.orchestrator import OrchestrationEngine
from src.shipwright.events.metrics import ShipwrightMetrics
from src.shipwright.state.models import TaskPhase, utcnow
from src.shipwright.tracker.client import JiraClient


logger = logging.getLogger(__name__)


class Reconciler:
    """Polls the tracker and feeds the engine on a fixed interval.

    Attributes:
        engine: The orchestration engine.
        tracker: Jira client used for polling.
        interval: Seconds between passes.
        last_run_at: When the last pass finished.
    """

    def __init__(
        self,
        engine: OrchestrationEngine,
        tracker: JiraClient,
        interval: float = 300,
        metrics: Optional[ShipwrightMetrics] = None,
    ):
        self.engine = engine
        self.tracker = tracker
        self.interval = interval
        self.metrics = metrics
        self.last_run_at: Optional[datetime] = None
        self._task: Optional[asyncio.Task] = None
        self._in_flight: Dict[str, asyncio.Task] = {}

    @property
    def in_flight(self) -> List[str]:
        """Issue keys with a reconciliation action still running."""
        return sorted(self._in_flight)

    async def run_once(self) -> None:
        """Run one reconciliation pass."""
        logger.info("Reconciliation pass starting")
        machine = self.engine.machine

        try:
            for issue in await self.tracker.search_ready_issues():
                self._spawn(issue.key, "plan", lambda issue=issue: self.engine.handle_new_task(issue))
        except Exception:
            logger.exception("Failed to search ready issues")

        for phase in (TaskPhase.PLAN_POSTED, TaskPhase.TEST):
            for record in await machine.list_by_phase(phase):
                self._spawn(
                    record.issue_key,
                    "rescan",
                    lambda key=record.issue_key, phase=phase: self._rescan(key, phase),
                )

        for record in await machine.list_by_phase(TaskPhase.APPROVED):
            self._spawn(
                record.issue_key,
                "implement",
                lambda key=record.issue_key: self.engine.handle_reassignment(key),
            )

        if self.tracker.bot_account_id:
            for record in await machine.list_by_phase(TaskPhase.FAILED):
                self._spawn(
                    record.issue_key,
                    "retry",
                    lambda key=record.issue_key: self._retry_failed(key),
                )

        try:
            for issue in await self.tracker.search_done_pending_issues():
                self._spawn(issue.key, "merge", lambda key=issue.key: self.engine.handle_done(key))
        except Exception:
            logger.exception("Failed to search done issues")

        if self.metrics is not None:
            records = await machine.list_all()
            counts = {phase.value: 0 for phase in TaskPhase}
            for record in records:
                counts[record.phase.value] += 1
            self.metrics.set_phase_counts(counts)

        self.last_run_at = utcnow()
        logger.info("Reconciliation pass complete")

    async def _rescan(self, issue_key: str, phase: TaskPhase) -> None:
        issue = await self.tracker.get_issue(issue_key)
        done = (issue.status or "").lower() == self.tracker.done_status.lower()
        if phase is TaskPhase.TEST and done:
            await self.engine.handle_done(issue_key)
        else:
            await self.engine.handle_comments(issue_key, issue.comments)

    async def _retry_failed(self, issue_key: str) -> None:
        issue = await self.tracker.get_issue(issue_key)
        if issue.assignee_account_id == self.tracker.bot_account_id:
            await self.engine.handle_reassignment(issue_key)

    def _spawn(
        self,
        issue_key: str,
        action: str,
        operation: Callable[[], Awaitable[None]],
    ) -> None:
        if issue_key in self._in_flight:
            logger.debug(
                "Reconciliation action still running, skipping",
                extra={"issue_key": issue_key, "action": action},
            )
            return
        task = asyncio.create_task(
            self._guarded(issue_key, action, operation),
            name=f"reconcile:{action}:{issue_key}",
        )
        self._in_flight[issue_key] = task
        task.add_done_callback(lambda _: self._in_flight.pop(issue_key, None))

    async def _guarded(
        self,
        issue_key: str,
        action: str,
        operation: Callable[[], Awaitable[None]],
    ) -> None:
        try:
            await operation()
        except Exception:
            logger.exception(
                "Reconciliation step failed",
                extra={"issue_key": issue_key, "action": action},
            )

    async def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Wait for the actions started by earlier passes.

        Returns:
            True when none is left running.
        """
        pending = list(self._in_flight.values())
        if not pending:
            return True
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        return not still_running

    def start(self) -> None:
        """Run passes in the background until stop() is called."""
        if self._task is None:
            self._task = asyncio.create_task(self._loop(), name="reconciler")

    async def stop(self, timeout: float = 0) -> None:
        """Stop polling, give running actions `timeout` seconds, cancel the rest.

        A cancelled implementation leaves its task in implementing; startup
        recovery moves it to failed.
        """
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        if timeout > 0:
            await self.wait_idle(timeout)
        remaining = list(self._in_flight.values())
        for task in remaining:
            task.cancel()
        if remaining:
            logger.warning(
                "Cancelled reconciliation actions on shutdown",
                extra={"issue_keys": sorted(self._in_flight)},
            )
            await asyncio.gather(*remaining, return_exceptions=True)

    async def _loop(self) -> None:
        while True:
            try:
                await self.run_once()
            except Exception:
                logger.exception("Reconciliation pass failed")
            await asyncio.sleep(self.interval)
