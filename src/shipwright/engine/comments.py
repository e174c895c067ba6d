"""Comment classification for plan review and test feedback.

Human input arrives as tracker comments. These helpers decide which comment
(if any) should be acted on:

- comments written by the automation carry BOT_MARKER and are skipped
- only comments strictly newer than the task's watermark are candidates
- of those, the newest is the one processed

Comments are sorted by creation time before scanning, so the result does
not depend on the order the API returned them in.
"""

import re
from datetime import datetime
from typing import Iterable, Optional

from src.shipwright.tracker.models import TrackerComment


BOT_MARKER = "\U0001F916"

# Bold markup is lost when comments round-trip through the tracker
_RECORDED_PR = re.compile(r"(?:\*\*)?PR #:(?:\*\*)?\s*(\d+)")

# Rest of the approval word ("approved") and separators before the notes
_APPROVAL_TAIL = re.compile(r"^\w*[\s,.:;!\-]*")


def is_self_authored(text: str) -> bool:
    return text.lstrip().startswith(BOT_MARKER)


def parse_approval(text: str, keyword: str) -> Optional[str]:
    """Classify a comment as approval.

    Returns:
        None if the comment is not an approval, otherwise the reviewer
        notes following the keyword ("" when there are none).

    Example:
        >>> parse_approval("approve, keep it minimal", "approve")
        'keep it minimal'
        >>> parse_approval("please also log errors", "approve") is None
        True
    """
    stripped = text.strip()
    if not stripped.lower().startswith(keyword.lower()):
        return None
    rest = stripped[len(keyword):]
    return _APPROVAL_TAIL.sub("", rest, count=1).strip()


def newest_human_comment(
    comments: Iterable[TrackerComment],
    watermark: Optional[datetime],
) -> Optional[TrackerComment]:
    """Newest comment written by a person after the watermark.

    Scans newest first and stops at the first comment at or before the
    watermark.
    """
    for comment in sorted(comments, key=lambda c: c.created, reverse=True):
        if watermark is not None and comment.created <= watermark:
            return None
        if is_self_authored(comment.body) or not comment.body.strip():
            continue
        return comment
    return None


def find_recorded_pr_number(comments: Iterable[TrackerComment]) -> Optional[int]:
    """PR number from the most recent implementation-complete comment."""
    for comment in sorted(comments, key=lambda c: c.created, reverse=True):
        match = _RECORDED_PR.search(comment.body)
        if match:
            return int(match.group(1))
    return None
