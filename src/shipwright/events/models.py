"""Task event models for observability.

This module defines the data models for engine events:
- EventType: Enum of all event types emitted by the engine
- TaskEvent: Structured event with the issue key, timestamp and details

Events feed the logging, metrics and notification sinks. They are
informational only; the engine never depends on an event being delivered.
"""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict

from pydantic import BaseModel, Field


# LogRecord attributes that logging refuses to overwrite through extra=
_RESERVED_LOG_KEYS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None))
) | {"message", "asctime"}


class EventType(str, Enum):
    """Types of events emitted by the orchestration engine.

    Attributes:
        STATE_TRANSITION: A task moved between phases.
        PLAN_READY: A plan (or clarifying questions) was posted for review.
        IMPLEMENTATION_DONE: A pull request is open and staging validated.
        MERGED: The pull request was merged to production.
        ERROR: A task failed; details carry the error category.
        AGENT_INVOCATION: The coding agent finished a run.
        MERGE_CONFLICT: Merging a feature branch into staging conflicted.
        CI_RESULT: A staging CI validation finished.
    """

    STATE_TRANSITION = "state_transition"
    PLAN_READY = "plan_ready"
    IMPLEMENTATION_DONE = "implementation_done"
    MERGED = "merged"
    ERROR = "error"
    AGENT_INVOCATION = "agent_invocation"
    MERGE_CONFLICT = "merge_conflict"
    CI_RESULT = "ci_result"


class TaskEvent(BaseModel):
    """Structured event emitted by the engine.

    Attributes:
        event_type: The category of event.
        issue_key: Tracker issue the event concerns.
        timestamp: When the event occurred (UTC timezone).
        details: Additional context specific to the event type.

    Details Field Conventions:
        For STATE_TRANSITION events:
            - from_phase, to_phase

        For ERROR events:
            - error_message, category, phase, summary, message, url

        For AGENT_INVOCATION events:
            - kind, success, cost_usd, num_turns, error

        For CI_RESULT events:
            - status, fix_attempts, run_url

        For PLAN_READY, IMPLEMENTATION_DONE and MERGED events:
            - summary, message, url, and pr_number where known
    """

    event_type: EventType = Field(
        ...,
        description="The category of event being emitted",
    )

    issue_key: str = Field(
        ...,
        min_length=1,
        description='Tracker issue key, e.g. "PROJ-1"',
    )

    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the event occurred (UTC timezone)",
    )

    details: Dict[str, Any] = Field(
        default_factory=dict,
        description="Additional context specific to the event type",
    )

    def to_log_dict(self) -> Dict[str, Any]:
        """Flatten the event for structured logging.

        Example:
            >>> event = TaskEvent(
            ...     event_type=EventType.ERROR,
            ...     issue_key="PROJ-1",
            ...     details={"error_message": "No changes to push"},
            ... )
            >>> event.to_log_dict()["event_type"]
            'error'
        """
        flat = {
            "event_type": self.event_type.value,
            "issue_key": self.issue_key,
            "timestamp": self.timestamp.isoformat(),
        }
        for key, value in self.details.items():
            flat[f"detail_{key}" if key in _RESERVED_LOG_KEYS else key] = value
        return flat
