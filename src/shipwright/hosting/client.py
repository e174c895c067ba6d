"""GitHub API client for pull requests and CI runs.

Async wrapper bound to one repository, providing:
- Pull request creation, lookup and squash merge
- Feature branch deletion
- Workflow run listing, status polling and failed job log retrieval

Requests go through ApiClient's retry loop, which also honors GitHub's
rate limit headers.
"""

import logging
from typing import Any, Dict, List, Optional

from src.shipwright.http import ApiClient, ApiError
from src.shipwright.hosting.models import PullRequest, WorkflowJob, WorkflowRun


logger = logging.getLogger(__name__)

LOG_TAIL_LINES = 200


class GitHubAPIError(ApiError):
    """Raised when a GitHub API request fails."""


class GitHubClient(ApiClient):
    """Async GitHub client for one repository.

    Attributes:
        token: GitHub API token (PAT or GitHub App token).
        owner: Repository owner.
        repo: Repository name.

    Example:
        >>> client = GitHubClient(token="ghp_xxx", owner="acme", repo="web")
        >>> async with client:
        ...     pr = await client.get_pull_request(42)
    """

    service_name = "GitHub API"
    error_class = GitHubAPIError

    def __init__(
        self,
        token: str,
        owner: str,
        repo: str,
        base_url: str = "https://api.github.com",
        **kwargs: Any,
    ):
        self.token = token
        self.owner = owner
        self.repo = repo
        super().__init__(base_url, **kwargs)

    def _default_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "User-Agent": "Shipwright/0.1",
        }

    @property
    def _repo_path(self) -> str:
        return f"/repos/{self.owner}/{self.repo}"

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"

    async def get_default_branch(self) -> str:
        response = await self._request("GET", self._repo_path)
        return response.json().get("default_branch", "main")

    async def health_check(self) -> bool:
        try:
            await self._request("GET", self._repo_path)
            return True
        except ApiError as e:
            logger.warning("GitHub API health check failed", extra={"error": str(e)})
            return False

    # -------------------------------------------------------------------------
    # Pull requests
    # -------------------------------------------------------------------------
    async def create_pull_request(
        self, head: str, base: str, title: str, body: str
    ) -> PullRequest:
        logger.info(
            "Creating pull request",
            extra={"repository": self.full_name, "head": head, "base": base},
        )
        response = await self._request(
            "POST",
            f"{self._repo_path}/pulls",
            json_data={"title": title, "body": body, "head": head, "base": base},
        )
        pr = PullRequest.from_api(response.json())
        logger.info(
            "Pull request created",
            extra={"repository": self.full_name, "pr_number": pr.number, "pr_url": pr.html_url},
        )
        return pr

    async def find_open_pull_request(self, head: str) -> Optional[PullRequest]:
        """Find the open pull request whose source branch is head."""
        response = await self._request(
            "GET",
            f"{self._repo_path}/pulls",
            params={"head": f"{self.owner}:{head}", "state": "open"},
        )
        pulls = response.json()
        return PullRequest.from_api(pulls[0]) if pulls else None

    async def get_pull_request(self, number: int) -> PullRequest:
        response = await self._request("GET", f"{self._repo_path}/pulls/{number}")
        return PullRequest.from_api(response.json())

    async def merge_pull_request(
        self, number: int, commit_title: str, merge_method: str = "squash"
    ) -> None:
        await self._request(
            "PUT",
            f"{self._repo_path}/pulls/{number}/merge",
            json_data={"commit_title": commit_title, "merge_method": merge_method},
        )
        logger.info(
            "Pull request merged",
            extra={"repository": self.full_name, "pr_number": number, "method": merge_method},
        )

    async def delete_branch(self, branch_name: str) -> None:
        """Delete a remote branch; a branch that is already gone is fine."""
        try:
            await self._request("DELETE", f"{self._repo_path}/git/refs/heads/{branch_name}")
        except GitHubAPIError as e:
            if e.status_code in (404, 422):
                logger.debug("Branch already deleted", extra={"branch": branch_name})
                return
            raise

    # -------------------------------------------------------------------------
    # CI
    # -------------------------------------------------------------------------
    async def list_workflow_runs(
        self,
        workflow: str,
        branch: str,
        head_sha: Optional[str] = None,
        per_page: int = 10,
    ) -> List[WorkflowRun]:
        """Most recent runs of a workflow on a branch, newest first."""
        params: Dict[str, Any] = {"branch": branch, "per_page": per_page}
        if head_sha:
            params["head_sha"] = head_sha
        response = await self._request(
            "GET",
            f"{self._repo_path}/actions/workflows/{workflow}/runs",
            params=params,
        )
        return [
            WorkflowRun.from_api(item)
            for item in response.json().get("workflow_runs") or []
        ]

    async def get_workflow_run(self, run_id: int) -> WorkflowRun:
        response = await self._request("GET", f"{self._repo_path}/actions/runs/{run_id}")
        return WorkflowRun.from_api(response.json())

    async def list_failed_jobs(self, run_id: int) -> List[WorkflowJob]:
        response = await self._request(
            "GET",
            f"{self._repo_path}/actions/runs/{run_id}/jobs",
            params={"per_page": 100},
        )
        jobs = [WorkflowJob.from_api(item) for item in response.json().get("jobs") or []]
        return [job for job in jobs if job.failed]

    async def get_job_log_tail(self, job_id: int, lines: int = LOG_TAIL_LINES) -> str:
        """Last lines of a job's log. The API answers with a redirect."""
        response = await self._request(
            "GET",
            f"{self._repo_path}/actions/jobs/{job_id}/logs",
            follow_redirects=True,
        )
        return "\n".join(response.text.splitlines()[-lines:])
