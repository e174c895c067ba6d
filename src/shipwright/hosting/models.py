"""Code hosting data models for pull requests and CI runs."""

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel


class PullRequest(BaseModel):
    """A pull request on the hosted repository.

    Attributes:
        number: Pull request number.
        html_url: Browser URL.
        state: "open" or "closed".
        merged: Whether it has been merged.
        title: Title.
        head_ref: Source branch.
        base_ref: Target branch.
    """

    number: int
    html_url: str
    state: str = "open"
    merged: bool = False
    title: str = ""
    head_ref: Optional[str] = None
    base_ref: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.state == "open" and not self.merged

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "PullRequest":
        head = data.get("head") or {}
        base = data.get("base") or {}
        return cls(
            number=data["number"],
            html_url=data.get("html_url", ""),
            state=data.get("state", "open"),
            merged=bool(data.get("merged") or data.get("merged_at")),
            title=data.get("title") or "",
            head_ref=head.get("ref"),
            base_ref=base.get("ref"),
        )


class WorkflowRun(BaseModel):
    """A CI workflow run.

    Attributes:
        id: Run id.
        status: queued, in_progress or completed.
        conclusion: success, failure, cancelled, ... once completed.
        html_url: Browser URL.
        head_sha: Commit the run is for.
        head_branch: Branch the run is for.
        created_at: When the run was created.
    """

    id: int
    status: str
    conclusion: Optional[str] = None
    html_url: str = ""
    head_sha: Optional[str] = None
    head_branch: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def is_completed(self) -> bool:
        return self.status == "completed"

    @property
    def succeeded(self) -> bool:
        return self.is_completed and self.conclusion in ("success", "skipped", "neutral")

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "WorkflowRun":
        return cls(
            id=data["id"],
            status=data.get("status") or "queued",
            conclusion=data.get("conclusion"),
            html_url=data.get("html_url", ""),
            head_sha=data.get("head_sha"),
            head_branch=data.get("head_branch"),
            created_at=data.get("created_at"),
        )


class WorkflowJob(BaseModel):
    """One job of a workflow run."""

    id: int
    name: str
    status: str
    conclusion: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.conclusion in ("failure", "timed_out")

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "WorkflowJob":
        return cls(
            id=data["id"],
            name=data.get("name") or str(data["id"]),
            status=data.get("status") or "queued",
            conclusion=data.get("conclusion"),
        )
