"""Issue tracker data models.

TrackerIssue and TrackerComment are the plain-text views of Jira issues and
comments the engine works with. Both are built from REST API or webhook
payloads through from_api().
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from src.shipwright.tracker.adf import adf_to_text


def parse_jira_datetime(value: Any) -> datetime:
    """Parse Jira timestamps such as "2024-05-01T10:00:00.000+0000"."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    text = str(value)
    try:
        return datetime.strptime(text, "%Y-%m-%dT%H:%M:%S.%f%z")
    except ValueError:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class TrackerComment(BaseModel):
    """A comment on a tracker issue.

    Attributes:
        id: Comment id.
        author_account_id: Account that wrote the comment.
        author_name: Display name of the author.
        body: Plain-text body.
        created: When the comment was created (UTC aware).
    """

    id: str
    author_account_id: Optional[str] = None
    author_name: Optional[str] = None
    body: str = ""
    created: datetime

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "TrackerComment":
        author = data.get("author") or {}
        return cls(
            id=str(data.get("id", "")),
            author_account_id=author.get("accountId"),
            author_name=author.get("displayName"),
            body=adf_to_text(data.get("body")),
            created=parse_jira_datetime(data.get("created")),
        )


class TrackerIssue(BaseModel):
    """A tracker issue.

    Attributes:
        key: Issue key, e.g. "PROJ-1".
        summary: One-line summary.
        description: Plain-text description.
        status: Workflow status name.
        labels: Issue labels.
        assignee_account_id: Current assignee, if any.
        reporter_account_id: Account that reported the issue.
        comments: Comments in the order the API returned them.
    """

    key: str
    summary: str = ""
    description: str = ""
    status: Optional[str] = None
    labels: List[str] = Field(default_factory=list)
    assignee_account_id: Optional[str] = None
    reporter_account_id: Optional[str] = None
    comments: List[TrackerComment] = Field(default_factory=list)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "TrackerIssue":
        fields = data.get("fields") or {}
        status = fields.get("status") or {}
        assignee = fields.get("assignee") or {}
        reporter = fields.get("reporter") or {}
        comment_block = fields.get("comment") or {}
        return cls(
            key=data["key"],
            summary=fields.get("summary") or "",
            description=adf_to_text(fields.get("description")),
            status=status.get("name"),
            labels=list(fields.get("labels") or []),
            assignee_account_id=assignee.get("accountId"),
            reporter_account_id=reporter.get("accountId"),
            comments=[
                TrackerComment.from_api(comment)
                for comment in comment_block.get("comments") or []
            ],
        )
