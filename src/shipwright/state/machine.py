"""Task state machine.

TaskStateMachine is the only writer of task records. It wraps a TaskStore
and enforces:
- records are created only in an entry phase
- phase changes follow VALID_TRANSITIONS
- accrued_cost only ever grows

Callers are expected to hold the task's ConcurrencyGuard claim, so a
read-modify-write here never races another writer for the same issue.
"""

import logging
from typing import Any, List, Optional

from src.shipwright.state.models import (
    ENTRY_PHASES,
    TaskPhase,
    TaskRecord,
    is_valid_transition,
)
from src.shipwright.state.store import TaskStore


logger = logging.getLogger(__name__)


class InvalidTransitionError(Exception):
    """Raised when an invalid phase transition is attempted.

    Attributes:
        issue_key: The task being transitioned.
        from_phase: The current phase.
        to_phase: The attempted target phase.
    """

    def __init__(
        self,
        issue_key: str,
        from_phase: TaskPhase,
        to_phase: TaskPhase,
        message: Optional[str] = None,
    ):
        self.issue_key = issue_key
        self.from_phase = from_phase
        self.to_phase = to_phase
        self.message = message or (
            f"Invalid transition for {issue_key} from {from_phase.value} to {to_phase.value}"
        )
        super().__init__(self.message)


class TaskNotFoundError(Exception):
    """Raised when a task record does not exist.

    Attributes:
        issue_key: The issue key that was not found.
    """

    def __init__(self, issue_key: str):
        self.issue_key = issue_key
        super().__init__(f"Task not found: {issue_key}")


class TaskExistsError(Exception):
    """Raised when creating a record for an issue that is already tracked."""

    def __init__(self, issue_key: str, phase: TaskPhase):
        self.issue_key = issue_key
        self.phase = phase
        super().__init__(f"Task {issue_key} already tracked in phase {phase.value}")


class TaskStateMachine:
    """Validated access to task records.

    Attributes:
        store: The backing TaskStore.

    Example:
        >>> machine = TaskStateMachine(store)
        >>> await machine.create("PROJ-1", TaskPhase.PLAN_POSTED, summary="Add health check")
        >>> await machine.advance("PROJ-1", TaskPhase.APPROVED, reviewer_notes="keep it minimal")
    """

    def __init__(self, store: TaskStore):
        self.store = store

    async def get(self, issue_key: str) -> Optional[TaskRecord]:
        return await self.store.get(issue_key)

    async def require(self, issue_key: str) -> TaskRecord:
        """Return the record for an issue or raise TaskNotFoundError."""
        record = await self.store.get(issue_key)
        if record is None:
            raise TaskNotFoundError(issue_key)
        return record

    async def create(
        self,
        issue_key: str,
        phase: TaskPhase = TaskPhase.NEW,
        **fields: Any,
    ) -> TaskRecord:
        """Create the record for a newly tracked issue.

        Args:
            issue_key: Tracker issue key.
            phase: First durable phase; must be an entry phase.
            **fields: Initial field values.

        Returns:
            The stored record.

        Raises:
            ValueError: If phase is not an entry phase.
            TaskExistsError: If the issue is already tracked.
        """
        if phase not in ENTRY_PHASES:
            raise ValueError(f"Tasks cannot be created in phase {phase.value}")
        existing = await self.store.get(issue_key)
        if existing is not None:
            raise TaskExistsError(issue_key, existing.phase)
        fields.pop("phase", None)
        record = await self.store.upsert(issue_key, phase=phase, **fields)
        logger.info(
            "Task created",
            extra={"issue_key": issue_key, "phase": phase.value},
        )
        return record

    async def advance(
        self,
        issue_key: str,
        to_phase: TaskPhase,
        **fields: Any,
    ) -> TaskRecord:
        """Move a task to a new phase, writing any extra fields with it.

        Raises:
            TaskNotFoundError: If the issue is not tracked.
            InvalidTransitionError: If the transition is not allowed.
        """
        current = await self.require(issue_key)
        if not is_valid_transition(current.phase, to_phase):
            logger.warning(
                "Rejected invalid transition",
                extra={
                    "issue_key": issue_key,
                    "from_phase": current.phase.value,
                    "to_phase": to_phase.value,
                },
            )
            raise InvalidTransitionError(issue_key, current.phase, to_phase)

        fields.pop("phase", None)
        record = await self.store.upsert(issue_key, phase=to_phase, **fields)
        logger.info(
            "Task transitioned",
            extra={
                "issue_key": issue_key,
                "from_phase": current.phase.value,
                "to_phase": to_phase.value,
            },
        )
        return record

    async def update(self, issue_key: str, **fields: Any) -> TaskRecord:
        """Write non-phase fields of an existing task.

        Raises:
            TaskNotFoundError: If the issue is not tracked.
            ValueError: If a phase change is attempted.
        """
        if "phase" in fields:
            raise ValueError("Use advance() to change a task's phase")
        await self.require(issue_key)
        return await self.store.upsert(issue_key, **fields)

    async def add_cost(self, issue_key: str, amount: float) -> TaskRecord:
        """Add agent spend to a task's accrued cost.

        Raises:
            ValueError: If amount is negative.
            TaskNotFoundError: If the issue is not tracked.
        """
        if amount < 0:
            raise ValueError("Cost increments cannot be negative")
        current = await self.require(issue_key)
        if amount == 0:
            return current
        return await self.store.upsert(
            issue_key, accrued_cost=current.accrued_cost + amount
        )

    async def remove(self, issue_key: str) -> bool:
        removed = await self.store.delete(issue_key)
        if removed:
            logger.info("Task record removed", extra={"issue_key": issue_key})
        return removed

    async def list_by_phase(self, phase: TaskPhase) -> List[TaskRecord]:
        return await self.store.list_by_phase(phase)

    async def list_all(self) -> List[TaskRecord]:
        return await self.store.list_all()
