"""Git worktree and staging branch management.

WorkspaceManager gives each active task an isolated git worktree on its own
feature branch, cut from the production branch's current tip, and owns the
shared staging branch:

- create_workspace(): fresh branch and worktree; stale ones are removed
  first so re-creation is idempotent
- attach_workspace(): reuse a task's worktree for rework, recreating it
  from the pushed branch if it is gone
- commit_and_push(): stage, commit and push; reports "no changes" instead
  of creating empty commits
- merge_into_staging(): the single serialization point; one merge at a time
  under an asyncio.Lock, and a conflicting merge is aborted so staging is
  never left half merged
- destroy_workspace(): best-effort removal that never raises

Merges run in the main clone at repo_path, which is reserved for this
manager; feature work only ever happens inside worktrees.
"""

import asyncio
import logging
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from src.shipwright.errors import MergeConflictError, NoChangesError
from src.shipwright.workspace.git import GitCommandError, GitRunner


logger = logging.getLogger(__name__)

SLUG_MAX_LENGTH = 40

_NON_ALNUM = re.compile(r"[^a-z0-9]+")


@dataclass
class WorkspaceConfig:
    """Configuration for workspace management.

    Attributes:
        repo_path: Local clone worktrees are created from.
        base_path: Directory that holds the worktrees.
        production_branch: Branch feature branches are cut from.
        staging_branch: Shared pre-production integration branch.
        branch_prefix: Prefix for feature branch names.
        remote: Name of the remote to fetch from and push to.
    """

    repo_path: Path
    base_path: Path
    production_branch: str = "main"
    staging_branch: str = "staging"
    branch_prefix: str = "claude"
    remote: str = "origin"


@dataclass(frozen=True)
class Workspace:
    """An isolated worktree attached to one task."""

    issue_key: str
    branch_name: str
    path: Path


@dataclass(frozen=True)
class PushResult:
    """Outcome of commit_and_push().

    Attributes:
        pushed: Whether anything was pushed.
        commit_sha: Tip of the pushed branch.
        reason: Why nothing was pushed, when pushed is False.
    """

    pushed: bool
    commit_sha: Optional[str] = None
    reason: str = ""

    def require_pushed(self) -> "PushResult":
        """Raise NoChangesError when nothing was pushed."""
        if not self.pushed:
            raise NoChangesError(self.reason or "No changes to push")
        return self


def slugify(text: str, max_length: int = SLUG_MAX_LENGTH) -> str:
    """Lower-case text, collapse non-alphanumeric runs to '-' and truncate.

    Example:
        >>> slugify("Add health check!")
        'add-health-check'
    """
    slug = _NON_ALNUM.sub("-", text.lower()).strip("-")
    return slug[:max_length].rstrip("-")


def build_branch_name(prefix: str, issue_key: str, summary: str) -> str:
    """Derive the feature branch name for a task.

    Example:
        >>> build_branch_name("claude", "PROJ-1", "Add health check")
        'claude/PROJ-1-add-health-check'
    """
    slug = slugify(summary)
    name = f"{issue_key}-{slug}" if slug else issue_key
    return f"{prefix}/{name}" if prefix else name


class WorkspaceManager:
    """Creates and destroys task worktrees and serializes staging merges.

    Attributes:
        config: Workspace configuration.
        git: Runner used for every git command.
        staging_lock: Held for the whole of each merge into staging.
    """

    def __init__(self, config: WorkspaceConfig, git: Optional[GitRunner] = None):
        self.config = config
        self.git = git or GitRunner()
        self.staging_lock = asyncio.Lock()
        self._open: Dict[str, Workspace] = {}

    @property
    def open_workspaces(self) -> List[Workspace]:
        return list(self._open.values())

    def branch_name_for(self, issue_key: str, summary: str) -> str:
        return build_branch_name(self.config.branch_prefix, issue_key, summary)

    def workspace_path(self, branch_name: str) -> Path:
        return self.config.base_path / branch_name.replace("/", "-")

    async def _git(self, *args: str, cwd: Optional[Path] = None, retry: bool = False) -> str:
        return await self.git.run(*args, cwd=cwd or self.config.repo_path, retry=retry)

    # -------------------------------------------------------------------------
    # Worktree lifecycle
    # -------------------------------------------------------------------------
    async def create_workspace(self, issue_key: str, summary: str) -> Workspace:
        """Create a fresh worktree and branch for a task.

        The branch is cut from the remote production branch. Any stale
        worktree or local branch with the same name is removed first.

        Raises:
            GitCommandError: If fetching or creating the worktree fails.
        """
        branch_name = self.branch_name_for(issue_key, summary)
        path = self.workspace_path(branch_name)
        remote = self.config.remote

        self.config.base_path.mkdir(parents=True, exist_ok=True)
        await self._remove_worktree(path)
        await self._git("fetch", remote, self.config.production_branch, retry=True)
        await self._delete_local_branch(branch_name)
        await self._git(
            "worktree", "add", "-b", branch_name, str(path),
            f"{remote}/{self.config.production_branch}",
        )

        workspace = Workspace(issue_key=issue_key, branch_name=branch_name, path=path)
        self._open[issue_key] = workspace
        logger.info(
            "Workspace created",
            extra={"issue_key": issue_key, "branch": branch_name, "path": str(path)},
        )
        return workspace

    async def attach_workspace(self, issue_key: str, branch_name: str) -> Workspace:
        """Return a task's existing worktree, recreating it if it is gone.

        A missing worktree is rebuilt from the pushed feature branch, so
        rework survives a restart or an earlier cleanup.
        """
        path = self.workspace_path(branch_name)
        if (path / ".git").exists():
            workspace = Workspace(issue_key=issue_key, branch_name=branch_name, path=path)
            self._open[issue_key] = workspace
            return workspace

        remote = self.config.remote
        self.config.base_path.mkdir(parents=True, exist_ok=True)
        await self._remove_worktree(path)
        await self._git("fetch", remote, branch_name, retry=True)
        await self._delete_local_branch(branch_name)
        await self._git(
            "worktree", "add", "-b", branch_name, str(path), f"{remote}/{branch_name}",
        )

        workspace = Workspace(issue_key=issue_key, branch_name=branch_name, path=path)
        self._open[issue_key] = workspace
        logger.info(
            "Workspace recreated from remote branch",
            extra={"issue_key": issue_key, "branch": branch_name, "path": str(path)},
        )
        return workspace

    async def destroy_workspace(
        self, issue_key: str, workspace: Optional[Workspace] = None
    ) -> None:
        """Remove a task's worktree and local branch. Never raises."""
        workspace = self._open.pop(issue_key, None) or workspace
        if workspace is None:
            return
        try:
            await self._remove_worktree(workspace.path)
            await self._delete_local_branch(workspace.branch_name)
            logger.info(
                "Workspace destroyed",
                extra={"issue_key": issue_key, "path": str(workspace.path)},
            )
        except Exception:
            logger.exception(
                "Failed to destroy workspace",
                extra={"issue_key": issue_key, "path": str(workspace.path)},
            )

    async def destroy_all(self) -> None:
        """Destroy every workspace this process still has open."""
        for issue_key in list(self._open):
            await self.destroy_workspace(issue_key)

    async def prune(self) -> None:
        """Drop git's bookkeeping for worktrees whose directories are gone."""
        try:
            await self._git("worktree", "prune")
        except GitCommandError:
            logger.warning("git worktree prune failed", exc_info=True)

    async def _remove_worktree(self, path: Path) -> None:
        if path.exists():
            try:
                await self._git("worktree", "remove", "--force", str(path))
            except GitCommandError:
                logger.debug("worktree remove failed, deleting directory", extra={"path": str(path)})
            if path.exists():
                await asyncio.to_thread(shutil.rmtree, path, True)
        await self._git("worktree", "prune")

    async def _delete_local_branch(self, branch_name: str) -> None:
        try:
            await self._git("branch", "-D", branch_name)
        except GitCommandError:
            pass  # branch did not exist

    # -------------------------------------------------------------------------
    # Commits
    # -------------------------------------------------------------------------
    async def has_changes(self, workspace: Workspace) -> bool:
        status = await self._git("status", "--porcelain", cwd=workspace.path)
        return bool(status.strip())

    async def commit_and_push(
        self, workspace: Workspace, message: str, force: bool = False
    ) -> PushResult:
        """Commit pending changes and push the feature branch.

        Commits the agent already made itself count as changes. Nothing is
        pushed when the branch has no commits the remote lacks.

        Args:
            workspace: The task's workspace.
            message: Commit message.
            force: Overwrite the remote branch (used for freshly cut branches
                that replace an earlier attempt).

        Raises:
            GitCommandError: If committing or pushing fails.
        """
        path = workspace.path
        remote = self.config.remote

        if await self.has_changes(workspace):
            await self._git("add", "-A", cwd=path)
            await self._git("commit", "-m", message, cwd=path)

        unpushed = await self._git(
            "rev-list", "--count", "HEAD", "--not", f"--remotes={remote}", cwd=path,
        )
        if int(unpushed or "0") == 0:
            logger.info(
                "Nothing to push",
                extra={"issue_key": workspace.issue_key, "branch": workspace.branch_name},
            )
            return PushResult(pushed=False, reason="No changes to push")

        push_args = ["push", "-u", remote, workspace.branch_name]
        if force:
            push_args.insert(1, "--force")
        await self._git(*push_args, cwd=path, retry=True)
        sha = await self._git("rev-parse", "HEAD", cwd=path)
        logger.info(
            "Pushed feature branch",
            extra={
                "issue_key": workspace.issue_key,
                "branch": workspace.branch_name,
                "commit": sha,
            },
        )
        return PushResult(pushed=True, commit_sha=sha)

    # -------------------------------------------------------------------------
    # Staging
    # -------------------------------------------------------------------------
    async def merge_into_staging(self, branch_name: str) -> str:
        """Merge a pushed feature branch into staging and push staging.

        Only one merge runs at a time. Staging is created from production
        when it does not exist on the remote yet. On conflict the merge is
        aborted, the clone is restored and MergeConflictError is raised;
        the remote staging branch is untouched.

        Returns:
            The new staging tip commit.

        Raises:
            MergeConflictError: If the branch does not merge cleanly.
            GitCommandError: If any other git step fails.
        """
        staging = self.config.staging_branch
        remote = self.config.remote

        async with self.staging_lock:
            logger.info("Merging into staging", extra={"branch": branch_name})
            original = await self._current_checkout()
            try:
                await self._git("fetch", remote, branch_name, retry=True)
                staging_exists = await self._git(
                    "ls-remote", "--heads", remote, staging, retry=True
                )
                if staging_exists:
                    await self._git("fetch", remote, staging, retry=True)
                    base = f"{remote}/{staging}"
                else:
                    logger.info(
                        "Creating staging branch from production",
                        extra={"staging": staging, "production": self.config.production_branch},
                    )
                    await self._git("fetch", remote, self.config.production_branch, retry=True)
                    base = f"{remote}/{self.config.production_branch}"
                await self._git("checkout", "-B", staging, base)

                try:
                    await self._git(
                        "merge", "--no-ff", "--no-edit", f"{remote}/{branch_name}"
                    )
                except GitCommandError as exc:
                    await self._abort_merge()
                    logger.warning(
                        "Merge into staging conflicted",
                        extra={"branch": branch_name, "details": exc.stderr[:500]},
                    )
                    raise MergeConflictError(
                        branch_name, staging, _conflict_summary(exc.stderr)
                    ) from exc

                sha = await self._git("rev-parse", "HEAD")
                await self._git("push", "-u", remote, staging, retry=True)
                logger.info(
                    "Staging updated",
                    extra={"branch": branch_name, "staging_sha": sha},
                )
                return sha
            finally:
                await self._restore_checkout(original)

    async def _current_checkout(self) -> str:
        branch = await self._git("rev-parse", "--abbrev-ref", "HEAD")
        if branch == "HEAD":
            return await self._git("rev-parse", "HEAD")
        return branch

    async def _restore_checkout(self, ref: str) -> None:
        try:
            await self._git("checkout", "--force", ref)
        except GitCommandError:
            logger.exception("Failed to restore clone checkout", extra={"ref": ref})

    async def _abort_merge(self) -> None:
        try:
            await self._git("merge", "--abort")
        except GitCommandError:
            try:
                await self._git("reset", "--hard", "HEAD")
            except GitCommandError:
                # the checkout restore that follows still forces a clean tree
                logger.exception("Failed to clean up after conflicted merge")


def _conflict_summary(output: str) -> str:
    lines = [line for line in output.splitlines() if "CONFLICT" in line]
    return "; ".join(lines[:5]) if lines else output.strip()[:300]
