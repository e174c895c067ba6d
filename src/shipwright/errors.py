"""Error taxonomy shared by every Shipwright component.

Failures fall into four categories that decide how they are handled:

- transient: network errors and HTTP 429/502/503/504; retried locally with
  backoff before surfacing
- conflict: merge conflicts on the staging branch; never retried
  automatically
- budget: the coding agent hit its turn or cost ceiling; surfaced, not
  retried
- permanent: everything else, including no-op implementations and missing
  agent output

The engine catches errors at phase boundaries and uses classify_error() to
decide whether a failure moves the task to failed or keeps it in test.
"""

import asyncio
from enum import Enum
from typing import Optional

import httpx


class ErrorCategory(str, Enum):
    """How a failure should be treated by the caller."""

    TRANSIENT = "transient"
    CONFLICT = "conflict"
    BUDGET = "budget"
    PERMANENT = "permanent"


class ShipwrightError(Exception):
    """Base class for errors raised by Shipwright components.

    Attributes:
        message: Human-readable error description.
        category: Handling category for this error.
    """

    category = ErrorCategory.PERMANENT

    def __init__(self, message: str, category: Optional[ErrorCategory] = None):
        self.message = message
        if category is not None:
            self.category = category
        super().__init__(message)


class TransientError(ShipwrightError):
    """A failure that is safe to retry with backoff."""

    category = ErrorCategory.TRANSIENT


class MergeConflictError(ShipwrightError):
    """Raised when a feature branch cannot be merged into staging cleanly.

    Attributes:
        branch_name: The feature branch that conflicted.
        target_branch: The branch it was being merged into.
    """

    category = ErrorCategory.CONFLICT

    def __init__(self, branch_name: str, target_branch: str, details: str = ""):
        self.branch_name = branch_name
        self.target_branch = target_branch
        self.details = details
        message = f"Merge conflict merging {branch_name} into {target_branch}"
        if details:
            message = f"{message}: {details}"
        super().__init__(message)


class BudgetExceededError(ShipwrightError):
    """Raised when the coding agent exhausted its turn or cost budget."""

    category = ErrorCategory.BUDGET


class NoChangesError(ShipwrightError):
    """Raised when an implementation cycle produced nothing to commit."""

    def __init__(self, message: str = "No changes to push"):
        super().__init__(message)


class AgentRunError(ShipwrightError):
    """Raised when a coding agent invocation did not succeed.

    Attributes:
        output: Whatever text the agent produced before failing.
    """

    def __init__(
        self,
        message: str,
        output: str = "",
        category: Optional[ErrorCategory] = None,
    ):
        self.output = output
        super().__init__(message, category)


class CIFailedError(ShipwrightError):
    """Raised when CI keeps failing after every allowed fix attempt.

    Attributes:
        run_url: Link to the last failing run, when known.
        attempts: Fix cycles that were performed.
    """

    def __init__(
        self, message: str, run_url: Optional[str] = None, attempts: int = 0
    ):
        self.run_url = run_url
        self.attempts = attempts
        super().__init__(message)


TRANSIENT_STATUS_CODES = {429, 502, 503, 504}

_NETWORK_MARKERS = (
    "econnreset",
    "etimedout",
    "enotfound",
    "socket hang up",
    "connection reset",
    "connection refused",
    "timed out",
    "could not resolve host",
    "network",
)


def classify_error(error: BaseException) -> ErrorCategory:
    """Classify an exception into the handling taxonomy.

    Args:
        error: The exception raised by an operation.

    Returns:
        The ErrorCategory the caller should apply.
    """
    if isinstance(error, ShipwrightError):
        return error.category

    status_code = getattr(error, "status_code", None)
    if isinstance(status_code, int) and status_code in TRANSIENT_STATUS_CODES:
        return ErrorCategory.TRANSIENT

    if isinstance(
        error, (httpx.TransportError, asyncio.TimeoutError, ConnectionError)
    ):
        return ErrorCategory.TRANSIENT

    message = str(error)
    lowered = message.lower()
    if any(marker in lowered for marker in _NETWORK_MARKERS):
        return ErrorCategory.TRANSIENT
    if "merge conflict" in lowered or "CONFLICT" in message:
        return ErrorCategory.CONFLICT
    if "budget" in lowered or "max_turns" in lowered:
        return ErrorCategory.BUDGET
    return ErrorCategory.PERMANENT


def is_transient(error: BaseException) -> bool:
    """Return True when the error is worth retrying."""
    return classify_error(error) is ErrorCategory.TRANSIENT
