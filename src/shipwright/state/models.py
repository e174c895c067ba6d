"""Task state models.

This module defines the durable data model for tracked issues:
- TaskPhase: Enum of all phases a task moves through
- TaskRecord: One row per tracked issue
- VALID_TRANSITIONS: Map defining allowed phase transitions

Phase flow:
    new → planning → plan-posted → approved → implementing → test
    → merging → done

with failed reachable from planning, implementing, test and merging, a
self-loop on plan-posted (plan revision) and on test (rework), and the
re-entry edge failed → approved when the issue is handed back to the
automation.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TaskPhase(str, Enum):
    """Phases that a tracked issue progresses through.

    Attributes:
        NEW: Issue detected as eligible, nothing done yet.
        PLANNING: The agent is producing a plan in read-only mode.
        PLAN_POSTED: Plan posted on the issue; waiting for approval or
            feedback.
        APPROVED: Plan approved; waiting for an implementation slot.
        IMPLEMENTING: The agent is changing code in the task's workspace.
        TEST: Pull request open and merged into staging; reviewers test and
            may request rework.
        MERGING: Issue reached its done status; the pull request is being
            merged to production.
        DONE: Merged to production. Records are deleted on reaching it.
        FAILED: Unrecoverable error; waiting for a human to hand it back.
    """

    NEW = "new"
    PLANNING = "planning"
    PLAN_POSTED = "plan-posted"
    APPROVED = "approved"
    IMPLEMENTING = "implementing"
    TEST = "test"
    MERGING = "merging"
    DONE = "done"
    FAILED = "failed"


class TaskRecord(BaseModel):
    """Durable state of one tracked issue.

    Attributes:
        issue_key: Tracker issue key, e.g. "PROJ-1".
        phase: Current phase.
        summary: Issue summary captured when the task was created.
        description: Issue description captured when the task was created.
        plan: Latest proposed or approved technical plan.
        branch_name: Feature branch of the active workspace.
        workspace_path: Filesystem path of the active workspace.
        pr_number: Pull request number once implementation succeeded.
        pr_url: Pull request URL once implementation succeeded.
        reviewer_notes: Text following the approval keyword.
        conversation_token: Agent session id used to resume context.
        accrued_cost: Total agent spend for this task in USD; never
            decreases.
        plan_posted_at: Watermark for comments on the posted plan.
        last_feedback_check_at: Watermark for comments while in test.
        creator_account_id: Reporter of the issue; failures are handed
            back to this account when no human account is configured.
        last_error: Message of the most recent failure.
        ci_fix_attempts: Fix cycles used by the most recent CI validation.
        created_at: When the record was created (UTC).
        updated_at: When the record was last written (UTC).
    """

    issue_key: str = Field(..., min_length=1)
    phase: TaskPhase = TaskPhase.NEW
    summary: str = ""
    description: str = ""
    plan: Optional[str] = None
    branch_name: Optional[str] = None
    workspace_path: Optional[str] = None
    pr_number: Optional[int] = Field(default=None, gt=0)
    pr_url: Optional[str] = None
    reviewer_notes: Optional[str] = None
    conversation_token: Optional[str] = None
    accrued_cost: float = Field(default=0.0, ge=0.0)
    plan_posted_at: Optional[datetime] = None
    last_feedback_check_at: Optional[datetime] = None
    creator_account_id: Optional[str] = None
    last_error: Optional[str] = None
    ci_fix_attempts: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def has_workspace(self) -> bool:
        return bool(self.branch_name and self.workspace_path)


# Columns that may be written through TaskStore.upsert. issue_key,
# created_at and updated_at are managed by the store itself.
MUTABLE_FIELDS = tuple(
    name
    for name in TaskRecord.model_fields
    if name not in ("issue_key", "created_at", "updated_at")
)


# Valid phase transitions map
#
# Key design decisions:
# - planning happens before anything is persisted, so the first durable
#   phase is normally plan-posted
# - plan-posted and test loop on themselves for revisions and rework
# - failed only re-enters through approved, when the issue is reassigned
#   to the automation
# - done is terminal; the record is deleted when it is reached
VALID_TRANSITIONS: Dict[TaskPhase, List[TaskPhase]] = {
    TaskPhase.NEW: [
        TaskPhase.PLANNING,
    ],
    # PLANNING: plan posted, or failed
    TaskPhase.PLANNING: [
        TaskPhase.PLAN_POSTED,
        TaskPhase.FAILED,
    ],
    # PLAN_POSTED: revised on feedback, or approved
    TaskPhase.PLAN_POSTED: [
        TaskPhase.PLAN_POSTED,
        TaskPhase.APPROVED,
    ],
    # APPROVED: picked up once a slot is free
    TaskPhase.APPROVED: [
        TaskPhase.IMPLEMENTING,
    ],
    TaskPhase.IMPLEMENTING: [
        TaskPhase.TEST,
        TaskPhase.FAILED,
    ],
    # TEST: rework loops; done status starts the merge; a rework that fails
    # for any reason other than a conflict fails the task
    TaskPhase.TEST: [
        TaskPhase.TEST,
        TaskPhase.MERGING,
        TaskPhase.FAILED,
    ],
    TaskPhase.MERGING: [
        TaskPhase.DONE,
        TaskPhase.FAILED,
    ],
    TaskPhase.DONE: [],
    # FAILED: handed back to the automation
    TaskPhase.FAILED: [
        TaskPhase.APPROVED,
    ],
}

# Phases a record may be created in. Everything before plan-posted happens
# in memory.
ENTRY_PHASES = (TaskPhase.NEW, TaskPhase.PLANNING, TaskPhase.PLAN_POSTED)

# Phases during which a workspace may be attached to the task
WORKSPACE_PHASES = (TaskPhase.IMPLEMENTING, TaskPhase.TEST, TaskPhase.MERGING)

# Phases whose work is interrupted, not resumable, when the process dies
INTERRUPTIBLE_PHASES = (TaskPhase.IMPLEMENTING, TaskPhase.MERGING)


def is_valid_transition(from_phase: TaskPhase, to_phase: TaskPhase) -> bool:
    """Check if a phase transition is valid.

    Example:
        >>> is_valid_transition(TaskPhase.TEST, TaskPhase.TEST)
        True
        >>> is_valid_transition(TaskPhase.DONE, TaskPhase.APPROVED)
        False
    """
    return to_phase in VALID_TRANSITIONS.get(from_phase, [])


def is_terminal_phase(phase: TaskPhase) -> bool:
    """Check if a phase has no outgoing transitions."""
    return len(VALID_TRANSITIONS.get(phase, [])) == 0
