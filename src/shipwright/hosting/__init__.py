"""GitHub code hosting integration: pull requests and CI runs."""

from src.shipwright.hosting.client import GitHubAPIError, GitHubClient
from src.shipwright.hosting.models import PullRequest, WorkflowJob, WorkflowRun

__all__ = [
    "GitHubAPIError",
    "GitHubClient",
    "PullRequest",
    "WorkflowJob",
    "WorkflowRun",
]
