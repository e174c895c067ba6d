"""Durable task state.

This package tracks each issue through its phases:
- new → planning → plan-posted → approved → implementing → test
- → merging → done, with failed as the side branch

Records persist in SQLite by default, or Postgres when configured, and are
only written through TaskStateMachine.
"""

from src.shipwright.state.models import (
    ENTRY_PHASES,
    INTERRUPTIBLE_PHASES,
    TaskPhase,
    TaskRecord,
    VALID_TRANSITIONS,
    WORKSPACE_PHASES,
    is_terminal_phase,
    is_valid_transition,
)
from src.shipwright.state.machine import (
    InvalidTransitionError,
    TaskExistsError,
    TaskNotFoundError,
    TaskStateMachine,
)
from src.shipwright.state.store import (
    SQLiteTaskStore,
    StoreError,
    TaskStore,
    create_task_store,
)

__all__ = [
    # Models
    "ENTRY_PHASES",
    "INTERRUPTIBLE_PHASES",
    "TaskPhase",
    "TaskRecord",
    "VALID_TRANSITIONS",
    "WORKSPACE_PHASES",
    "is_terminal_phase",
    "is_valid_transition",
    # State machine
    "InvalidTransitionError",
    "TaskExistsError",
    "TaskNotFoundError",
    "TaskStateMachine",
    # Stores
    "SQLiteTaskStore",
    "StoreError",
    "TaskStore",
    "create_task_store",
]
