"""Inbound trigger events.

Webhook payloads are validated at the boundary and turned into one of a
closed set of tagged variants before they reach the engine:

- IssueCreated: a tracker issue was created
- IssueUpdated: a tracker issue changed (status and assignee changes are
  pulled out of the changelog)
- CommentCreated: a comment was added to a tracker issue
- ChangeRequestFeedback: a review or conversation comment on a pull request

The `kind` field is the discriminator, so TriggerEvent can be validated
directly from a dict.
"""

from datetime import datetime
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field

from src.shipwright.tracker.models import TrackerComment, TrackerIssue


class IssueCreated(BaseModel):
    kind: Literal["issue_created"] = "issue_created"
    issue: TrackerIssue


class IssueUpdated(BaseModel):
    """An issue update.

    Attributes:
        issue: Issue state after the update.
        status_changed_to: New status name when the update changed status.
        assignee_changed_to: New assignee account when the update changed
            the assignee.
    """

    kind: Literal["issue_updated"] = "issue_updated"
    issue: TrackerIssue
    status_changed_to: Optional[str] = None
    assignee_changed_to: Optional[str] = None


class CommentCreated(BaseModel):
    kind: Literal["comment_created"] = "comment_created"
    issue_key: str = Field(..., min_length=1)
    comment: TrackerComment


class ChangeRequestFeedback(BaseModel):
    """Feedback left on a pull request.

    Attributes:
        pr_number: Pull request the feedback is on.
        body: Feedback text.
        author: Login of the author.
        created: When the feedback was submitted.
    """

    kind: Literal["change_request_feedback"] = "change_request_feedback"
    pr_number: int = Field(..., gt=0)
    body: str
    author: Optional[str] = None
    created: datetime


TriggerEvent = Annotated[
    Union[IssueCreated, IssueUpdated, CommentCreated, ChangeRequestFeedback],
    Field(discriminator="kind"),
]
