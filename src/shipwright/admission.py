"""Admission control for engine entry points.

ConcurrencyGuard owns two process-local sets:

- claimed issue keys: at most one engine action per issue at a time;
  a failed claim means the caller drops the event and lets the next
  webhook or reconciliation pass retry it
- implementation slots: a ceiling on how many issues may run an
  implementation cycle (workspace, agent, CI) at once

The engine runs on a single event loop, so plain sets are sufficient;
nothing here awaits between check and update.
"""

import logging
from typing import FrozenSet, Set


logger = logging.getLogger(__name__)


class ConcurrencyGuard:
    """Per-issue mutual exclusion plus a global implementation ceiling.

    Attributes:
        max_active_tasks: Maximum concurrently reserved implementation slots.

    Example:
        >>> guard = ConcurrencyGuard(max_active_tasks=2)
        >>> guard.try_acquire("PROJ-1")
        True
        >>> guard.try_acquire("PROJ-1")
        False
        >>> guard.release("PROJ-1")
    """

    def __init__(self, max_active_tasks: int):
        if max_active_tasks < 1:
            raise ValueError("max_active_tasks must be at least 1")
        self.max_active_tasks = max_active_tasks
        self._claimed: Set[str] = set()
        self._slots: Set[str] = set()

    def try_acquire(self, issue_key: str) -> bool:
        """Claim an issue. Returns False if another action already holds it."""
        if issue_key in self._claimed:
            logger.debug("Issue already in flight", extra={"issue_key": issue_key})
            return False
        self._claimed.add(issue_key)
        return True

    def release(self, issue_key: str) -> None:
        self._claimed.discard(issue_key)

    def is_held(self, issue_key: str) -> bool:
        return issue_key in self._claimed

    @property
    def in_flight(self) -> FrozenSet[str]:
        return frozenset(self._claimed)

    def reserve_slot(self, issue_key: str) -> bool:
        """Reserve an implementation slot for an issue.

        Re-reserving a slot the issue already holds succeeds.

        Returns:
            True if the issue holds a slot afterwards, False when the
            ceiling is reached.
        """
        if issue_key in self._slots:
            return True
        if len(self._slots) >= self.max_active_tasks:
            logger.info(
                "Implementation capacity reached",
                extra={
                    "issue_key": issue_key,
                    "active": sorted(self._slots),
                    "max_active_tasks": self.max_active_tasks,
                },
            )
            return False
        self._slots.add(issue_key)
        return True

    def release_slot(self, issue_key: str) -> None:
        self._slots.discard(issue_key)

    @property
    def active_slots(self) -> FrozenSet[str]:
        return frozenset(self._slots)

    @property
    def has_capacity(self) -> bool:
        return len(self._slots) < self.max_active_tasks
