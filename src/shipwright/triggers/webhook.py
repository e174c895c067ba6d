"""Webhook payload parsers for Jira and GitHub.

Each parser turns a raw JSON payload into one of the trigger event variants
in triggers.models, or returns None for payloads the engine does not act
on. Malformed payloads are logged and ignored; a webhook sender gets a 200
either way, so nothing is retried on its side.

Jira events:

    {
      "webhookEvent": "jira:issue_updated",
      "issue": {"key": "PROJ-1", "fields": {...}},
      "changelog": {"items": [{"field": "status", "toString": "Done"}]},
      "comment": {...}            # comment_created only
    }

GitHub events (X-GitHub-Event header):

- pull_request_review with state changes_requested or commented
- issue_comment created on a pull request
"""

import logging
from typing import Any, Dict, Optional

from pydantic import ValidationError

from src.shipwright.tracker.models import TrackerComment, TrackerIssue, parse_jira_datetime
from src.shipwright.triggers.models import (
    ChangeRequestFeedback,
    CommentCreated,
    IssueCreated,
    IssueUpdated,
    TriggerEvent,
)


logger = logging.getLogger(__name__)

REVIEW_STATES = ("changes_requested", "commented")


class JiraWebhookParser:
    """Parses Jira webhook payloads into trigger events."""

    def parse(self, payload: Dict[str, Any]) -> Optional[TriggerEvent]:
        """Parse a Jira webhook payload.

        Args:
            payload: The decoded JSON body.

        Returns:
            IssueCreated, IssueUpdated or CommentCreated, or None for
            unsupported or malformed payloads.
        """
        if not isinstance(payload, dict):
            logger.warning("Invalid Jira payload: expected dict, got %s", type(payload))
            return None

        event_name = payload.get("webhookEvent")
        try:
            if event_name == "jira:issue_created":
                return IssueCreated(issue=self._issue(payload))
            if event_name == "jira:issue_updated":
                return self._issue_updated(payload)
            if event_name == "comment_created":
                return self._comment_created(payload)
        except (KeyError, TypeError, ValueError, ValidationError) as e:
            logger.warning(
                "Malformed Jira webhook payload",
                extra={"webhook_event": event_name, "error": str(e)},
            )
            return None

        logger.debug("Ignoring Jira webhook event: %s", event_name)
        return None

    def _issue(self, payload: Dict[str, Any]) -> TrackerIssue:
        issue_data = payload.get("issue")
        if not isinstance(issue_data, dict):
            raise ValueError("missing 'issue' object")
        return TrackerIssue.from_api(issue_data)

    def _issue_updated(self, payload: Dict[str, Any]) -> IssueUpdated:
        status_to: Optional[str] = None
        assignee_to: Optional[str] = None
        changelog = payload.get("changelog") or {}
        for item in changelog.get("items") or []:
            field = item.get("field")
            if field == "status":
                status_to = item.get("toString")
            elif field == "assignee":
                assignee_to = item.get("to") or item.get("toAccountId")
        return IssueUpdated(
            issue=self._issue(payload),
            status_changed_to=status_to,
            assignee_changed_to=assignee_to,
        )

    def _comment_created(self, payload: Dict[str, Any]) -> CommentCreated:
        comment_data = payload.get("comment")
        if not isinstance(comment_data, dict):
            raise ValueError("missing 'comment' object")
        issue_data = payload.get("issue") or {}
        return CommentCreated(
            issue_key=issue_data["key"],
            comment=TrackerComment.from_api(comment_data),
        )


class GitHubWebhookParser:
    """Parses GitHub webhook payloads into change request feedback."""

    def parse(self, event_name: Optional[str], payload: Dict[str, Any]) -> Optional[TriggerEvent]:
        """Parse a GitHub webhook payload.

        Args:
            event_name: Value of the X-GitHub-Event header.
            payload: The decoded JSON body.

        Returns:
            ChangeRequestFeedback, or None for events that carry no
            feedback.
        """
        if not isinstance(payload, dict):
            logger.warning("Invalid GitHub payload: expected dict, got %s", type(payload))
            return None

        try:
            if event_name == "pull_request_review":
                return self._review(payload)
            if event_name == "issue_comment":
                return self._issue_comment(payload)
        except (KeyError, TypeError, ValueError, ValidationError) as e:
            logger.warning(
                "Malformed GitHub webhook payload",
                extra={"github_event": event_name, "error": str(e)},
            )
            return None

        logger.debug("Ignoring GitHub webhook event: %s", event_name)
        return None

    def _review(self, payload: Dict[str, Any]) -> Optional[ChangeRequestFeedback]:
        if payload.get("action") != "submitted":
            return None
        review = payload.get("review") or {}
        state = (review.get("state") or "").lower()
        body = (review.get("body") or "").strip()
        if state not in REVIEW_STATES or not body:
            return None
        return ChangeRequestFeedback(
            pr_number=payload["pull_request"]["number"],
            body=body,
            author=_login(review.get("user")),
            created=parse_jira_datetime(review["submitted_at"]),
        )

    def _issue_comment(self, payload: Dict[str, Any]) -> Optional[ChangeRequestFeedback]:
        if payload.get("action") != "created":
            return None
        issue = payload.get("issue") or {}
        # Conversation comments on plain issues carry no pull_request link
        if not issue.get("pull_request"):
            return None
        comment = payload.get("comment") or {}
        body = (comment.get("body") or "").strip()
        if not body:
            return None
        return ChangeRequestFeedback(
            pr_number=issue["number"],
            body=body,
            author=_login(comment.get("user")),
            created=parse_jira_datetime(comment["created_at"]),
        )


def _login(user: Any) -> Optional[str]:
    if isinstance(user, dict):
        return user.get("login")
    return None
