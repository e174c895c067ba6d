"""Jira Cloud REST API client.

Async wrapper around the Jira REST v3 endpoints the engine needs:
- Searching for issues ready for automation and issues approved for merge
- Reading issues and their full comment history
- Posting comments, transitioning, assigning and labelling issues

Requests go through ApiClient's retry loop; authentication is HTTP basic
with the account email and an API token.
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from src.shipwright.http import ApiClient, ApiError
from src.shipwright.tracker.adf import markdown_to_adf
from src.shipwright.tracker.models import TrackerComment, TrackerIssue


logger = logging.getLogger(__name__)

ISSUE_FIELDS = [
    "summary",
    "description",
    "status",
    "labels",
    "assignee",
    "reporter",
    "comment",
]

COMMENT_PAGE_SIZE = 100
SEARCH_PAGE_SIZE = 50


class JiraAPIError(ApiError):
    """Raised when a Jira API request fails."""


class TransitionNotFoundError(JiraAPIError):
    """Raised when an issue has no transition to the requested status.

    Attributes:
        available: Names of the transitions that do exist.
    """

    def __init__(self, issue_key: str, status_name: str, available: List[str]):
        self.available = available
        super().__init__(
            f'No transition to "{status_name}" found for {issue_key}. '
            f"Available: {', '.join(available) or 'none'}",
            status_code=400,
        )


class JiraClient(ApiClient):
    """Async Jira Cloud client.

    Attributes:
        email: Account email used for basic auth.
        project_key: Project searched for eligible issues.
        bot_account_id: Account the automation works as.
        bot_label: Label that marks issues for automation.
        ready_status: Status of issues waiting to be picked up.
        done_status: Status that approves the final merge.

    Example:
        >>> client = JiraClient("https://example.atlassian.net", "bot@example.com", "token", "PROJ")
        >>> async with client:
        ...     await client.add_comment("PROJ-1", "Hello")
    """

    service_name = "Jira API"
    error_class = JiraAPIError

    def __init__(
        self,
        base_url: str,
        email: str,
        api_token: str,
        project_key: str,
        bot_account_id: Optional[str] = None,
        bot_label: str = "claude-bot",
        ready_status: str = "To Do",
        done_status: str = "Done",
        **kwargs: Any,
    ):
        self.email = email
        self.api_token = api_token
        self.project_key = project_key
        self.bot_account_id = bot_account_id
        self.bot_label = bot_label
        self.ready_status = ready_status
        self.done_status = done_status
        super().__init__(base_url, **kwargs)

    def _auth(self) -> Optional[httpx.Auth]:
        return httpx.BasicAuth(self.email, self.api_token)

    @property
    def pending_label(self) -> str:
        return f"{self.bot_label}-pr-pending"

    def issue_url(self, issue_key: str) -> str:
        return f"{self.base_url}/browse/{issue_key}"

    def is_eligible(self, issue: TrackerIssue) -> bool:
        """Whether an issue is ready to be picked up by the automation."""
        if (issue.status or "").lower() != self.ready_status.lower():
            return False
        assigned = bool(self.bot_account_id) and issue.assignee_account_id == self.bot_account_id
        return assigned or self.bot_label in issue.labels

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------
    def _eligibility_jql(self) -> str:
        if self.bot_account_id:
            match = f'(assignee = "{self.bot_account_id}" OR labels = "{self.bot_label}")'
        else:
            match = f'labels = "{self.bot_label}"'
        return (
            f"project = {self.project_key} AND {match} "
            f'AND status = "{self.ready_status}" ORDER BY priority DESC, created ASC'
        )

    async def search(self, jql: str, fields: Optional[List[str]] = None) -> List[TrackerIssue]:
        """Run a JQL search, following pagination."""
        issues: List[TrackerIssue] = []
        next_page: Optional[str] = None
        while True:
            body: Dict[str, Any] = {
                "jql": jql,
                "fields": fields or ISSUE_FIELDS,
                "maxResults": SEARCH_PAGE_SIZE,
            }
            if next_page:
                body["nextPageToken"] = next_page
            response = await self._request("POST", "/rest/api/3/search/jql", json_data=body)
            data = response.json()
            issues.extend(TrackerIssue.from_api(item) for item in data.get("issues") or [])
            next_page = data.get("nextPageToken")
            if not next_page or data.get("isLast"):
                break
        return issues

    async def search_ready_issues(self) -> List[TrackerIssue]:
        """Issues in the ready status assigned to or labelled for the bot."""
        return await self.search(self._eligibility_jql())

    async def search_done_pending_issues(self) -> List[TrackerIssue]:
        """Issues with an open automation PR that reached the done status."""
        jql = (
            f'project = {self.project_key} AND labels = "{self.pending_label}" '
            f'AND status = "{self.done_status}" ORDER BY updated DESC'
        )
        return await self.search(jql, fields=["summary", "status", "labels"])

    async def get_issue(self, issue_key: str) -> TrackerIssue:
        """Fetch an issue together with its complete comment history."""
        response = await self._request(
            "GET",
            f"/rest/api/3/issue/{issue_key}",
            params={"fields": ",".join(ISSUE_FIELDS)},
        )
        issue = TrackerIssue.from_api(response.json())
        issue.comments = await self.get_comments(issue_key)
        return issue

    async def get_comments(self, issue_key: str) -> List[TrackerComment]:
        """Fetch every comment on an issue, oldest first."""
        comments: List[TrackerComment] = []
        start_at = 0
        while True:
            response = await self._request(
                "GET",
                f"/rest/api/3/issue/{issue_key}/comment",
                params={
                    "startAt": start_at,
                    "maxResults": COMMENT_PAGE_SIZE,
                    "orderBy": "created",
                },
            )
            data = response.json()
            page = data.get("comments") or []
            comments.extend(TrackerComment.from_api(item) for item in page)
            start_at += len(page)
            if not page or start_at >= int(data.get("total", 0)):
                break
        return comments

    async def get_myself(self) -> Dict[str, Any]:
        response = await self._request("GET", "/rest/api/3/myself")
        return response.json()

    async def health_check(self) -> bool:
        try:
            await self.get_myself()
            return True
        except ApiError:
            return False

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------
    async def add_comment(self, issue_key: str, text: str) -> None:
        await self._request(
            "POST",
            f"/rest/api/3/issue/{issue_key}/comment",
            json_data={"body": markdown_to_adf(text)},
        )
        logger.debug("Posted comment", extra={"issue_key": issue_key})

    async def transition_issue(self, issue_key: str, status_name: str) -> None:
        """Move an issue to the status with the given name (case-insensitive).

        Raises:
            TransitionNotFoundError: If no transition leads to that status.
        """
        response = await self._request("GET", f"/rest/api/3/issue/{issue_key}/transitions")
        transitions = response.json().get("transitions") or []
        wanted = status_name.lower()
        for transition in transitions:
            target = (transition.get("to") or {}).get("name") or ""
            if (transition.get("name") or "").lower() == wanted or target.lower() == wanted:
                await self._request(
                    "POST",
                    f"/rest/api/3/issue/{issue_key}/transitions",
                    json_data={"transition": {"id": transition["id"]}},
                )
                logger.info(
                    "Issue transitioned",
                    extra={"issue_key": issue_key, "status": status_name},
                )
                return
        raise TransitionNotFoundError(
            issue_key, status_name, [t.get("name", "") for t in transitions]
        )

    async def assign_issue(self, issue_key: str, account_id: Optional[str]) -> None:
        await self._request(
            "PUT",
            f"/rest/api/3/issue/{issue_key}/assignee",
            json_data={"accountId": account_id},
        )

    async def add_label(self, issue_key: str, label: str) -> None:
        await self._request(
            "PUT",
            f"/rest/api/3/issue/{issue_key}",
            json_data={"update": {"labels": [{"add": label}]}},
        )

    async def remove_label(self, issue_key: str, label: str) -> None:
        await self._request(
            "PUT",
            f"/rest/api/3/issue/{issue_key}",
            json_data={"update": {"labels": [{"remove": label}]}},
        )
