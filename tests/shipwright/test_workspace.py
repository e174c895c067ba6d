"""Tests for WorkspaceManager.

The integration tests run real git against a bare repository in tmp_path
and are skipped when git is not installed. Staging serialization is
checked with a fake GitRunner that records command order.
"""

import asyncio
import shutil
import subprocess
from pathlib import Path
from typing import List, Tuple

import pytest

from src.shipwright.errors import MergeConflictError, NoChangesError
from src.shipwright.workspace.git import GitCommandError, GitRunner
from src.shipwright.workspace.manager import (
    PushResult,
    Workspace,
    WorkspaceConfig,
    WorkspaceManager,
    build_branch_name,
    slugify,
)


requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


def run_async(coro):
    return asyncio.run(coro)


def git(cwd: Path, *args: str) -> str:
    result = subprocess.run(
        ["git", *args], cwd=str(cwd), check=True, capture_output=True, text=True
    )
    return result.stdout.strip()


def _configure_identity(repo: Path) -> None:
    git(repo, "config", "user.email", "bot@example.com")
    git(repo, "config", "user.name", "Shipwright Bot")
    git(repo, "config", "commit.gpgsign", "false")


@pytest.fixture
def repo(tmp_path) -> Tuple[Path, Path]:
    """A clone of a bare remote whose main branch holds app.txt."""
    seed = tmp_path / "seed"
    seed.mkdir()
    git(seed, "init")
    git(seed, "checkout", "-b", "main")
    _configure_identity(seed)
    (seed / "app.txt").write_text("line one\nline two\n")
    git(seed, "add", "-A")
    git(seed, "commit", "-m", "initial")

    remote = tmp_path / "remote.git"
    git(tmp_path, "clone", "--bare", str(seed), str(remote))
    clone = tmp_path / "clone"
    git(tmp_path, "clone", str(remote), str(clone))
    _configure_identity(clone)
    return clone, remote


def _manager(clone: Path) -> WorkspaceManager:
    config = WorkspaceConfig(
        repo_path=clone,
        base_path=clone.parent / "worktrees",
        production_branch="main",
        staging_branch="staging",
        branch_prefix="claude",
    )
    return WorkspaceManager(config, GitRunner(timeout=60))


class TestBranchNames:
    def test_slugify(self):
        assert slugify("Add health check!") == "add-health-check"
        assert slugify("  --Weird__Chars  ") == "weird-chars"

    def test_slug_truncated_without_trailing_dash(self):
        slug = slugify("word " * 20)

        assert len(slug) <= 40
        assert not slug.endswith("-")

    def test_build_branch_name(self):
        assert build_branch_name("claude", "PROJ-1", "Add health check") == (
            "claude/PROJ-1-add-health-check"
        )
        assert build_branch_name("", "PROJ-1", "!!!") == "PROJ-1"

    def test_push_result_require_pushed(self):
        assert PushResult(pushed=True, commit_sha="abc").require_pushed().commit_sha == "abc"
        with pytest.raises(NoChangesError, match="No changes"):
            PushResult(pushed=False).require_pushed()


@requires_git
class TestWorkspaceLifecycle:
    def test_create_commit_and_push(self, repo):
        clone, remote = repo
        manager = _manager(clone)

        async def scenario():
            ws = await manager.create_workspace("PROJ-1", "Add health check")
            nothing = await manager.commit_and_push(ws, "PROJ-1: nothing")
            (ws.path / "health.txt").write_text("ok\n")
            pushed = await manager.commit_and_push(ws, "PROJ-1: Add health check", force=True)
            return ws, nothing, pushed

        ws, nothing, pushed = run_async(scenario())

        assert ws.branch_name == "claude/PROJ-1-add-health-check"
        assert (ws.path / "app.txt").exists()
        assert nothing.pushed is False
        assert pushed.pushed is True
        assert git(remote, "rev-parse", ws.branch_name) == pushed.commit_sha

    def test_agent_commits_count_as_changes(self, repo):
        clone, remote = repo
        manager = _manager(clone)

        async def scenario():
            ws = await manager.create_workspace("PROJ-2", "Self committed")
            (ws.path / "new.txt").write_text("x\n")
            git(ws.path, "add", "-A")
            git(ws.path, "commit", "-m", "agent commit")
            return ws, await manager.commit_and_push(ws, "unused message")

        ws, result = run_async(scenario())

        assert result.pushed is True
        assert git(remote, "log", "-1", "--format=%s", ws.branch_name) == "agent commit"

    def test_create_is_idempotent(self, repo):
        clone, _ = repo
        manager = _manager(clone)

        async def scenario():
            first = await manager.create_workspace("PROJ-1", "Add thing")
            (first.path / "stale.txt").write_text("stale\n")
            second = await manager.create_workspace("PROJ-1", "Add thing")
            return first, second

        first, second = run_async(scenario())

        assert first.path == second.path
        assert not (second.path / "stale.txt").exists()

    def test_destroy_never_raises(self, repo):
        clone, _ = repo
        manager = _manager(clone)

        async def scenario():
            ws = await manager.create_workspace("PROJ-1", "Add thing")
            await manager.destroy_workspace("PROJ-1")
            await manager.destroy_workspace("PROJ-1")
            await manager.destroy_workspace("PROJ-404")
            return ws

        ws = run_async(scenario())

        assert not ws.path.exists()
        assert manager.open_workspaces == []

    def test_destroy_with_recorded_workspace(self, repo):
        clone, _ = repo
        manager = _manager(clone)

        async def scenario():
            ws = await manager.create_workspace("PROJ-1", "Add thing")
            fresh = _manager(clone)
            await fresh.destroy_workspace("PROJ-1", ws)
            return ws

        assert not run_async(scenario()).path.exists()

    def test_attach_recreates_from_remote_branch(self, repo):
        clone, _ = repo
        manager = _manager(clone)

        async def scenario():
            ws = await manager.create_workspace("PROJ-1", "Add thing")
            (ws.path / "feature.txt").write_text("feature\n")
            await manager.commit_and_push(ws, "PROJ-1: Add thing", force=True)
            await manager.destroy_workspace("PROJ-1")
            return await manager.attach_workspace("PROJ-1", ws.branch_name)

        attached = run_async(scenario())

        assert (attached.path / "feature.txt").read_text() == "feature\n"

    def test_attach_reuses_existing_worktree(self, repo):
        clone, _ = repo
        manager = _manager(clone)

        async def scenario():
            ws = await manager.create_workspace("PROJ-1", "Add thing")
            (ws.path / "draft.txt").write_text("draft\n")
            return await manager.attach_workspace("PROJ-1", ws.branch_name)

        attached = run_async(scenario())

        assert (attached.path / "draft.txt").exists()


@requires_git
class TestStagingMerge:
    def test_staging_created_from_production(self, repo):
        clone, remote = repo
        manager = _manager(clone)

        async def scenario():
            ws = await manager.create_workspace("PROJ-1", "Add thing")
            (ws.path / "feature.txt").write_text("feature\n")
            await manager.commit_and_push(ws, "PROJ-1: Add thing", force=True)
            return await manager.merge_into_staging(ws.branch_name)

        sha = run_async(scenario())

        assert git(remote, "rev-parse", "staging") == sha
        assert git(clone, "rev-parse", "--abbrev-ref", "HEAD") == "main"

    def test_conflict_leaves_staging_untouched(self, repo):
        clone, remote = repo
        manager = _manager(clone)

        async def scenario():
            first = await manager.create_workspace("PROJ-1", "First change")
            second = await manager.create_workspace("PROJ-2", "Second change")
            (first.path / "app.txt").write_text("line one\nfirst edit\n")
            (second.path / "app.txt").write_text("line one\nsecond edit\n")
            await manager.commit_and_push(first, "PROJ-1: first", force=True)
            pushed = await manager.commit_and_push(second, "PROJ-2: second", force=True)
            staging_sha = await manager.merge_into_staging(first.branch_name)
            with pytest.raises(MergeConflictError) as info:
                await manager.merge_into_staging(second.branch_name)
            return second, pushed.commit_sha, staging_sha, info.value

        second, second_sha, staging_sha, error = run_async(scenario())

        assert error.branch_name == "claude/PROJ-2-second-change"
        assert error.target_branch == "staging"
        assert git(remote, "rev-parse", "staging") == staging_sha
        assert not (clone / ".git" / "MERGE_HEAD").exists()
        assert git(clone, "status", "--porcelain") == ""
        assert second.path.exists()
        assert git(second.path, "rev-parse", "--abbrev-ref", "HEAD") == "claude/PROJ-2-second-change"
        assert git(second.path, "rev-parse", "HEAD") == second_sha
        assert git(second.path, "status", "--porcelain") == ""

    def test_sequential_merges_accumulate(self, repo):
        clone, remote = repo
        manager = _manager(clone)

        async def scenario():
            shas = []
            for key, name in (("PROJ-1", "a.txt"), ("PROJ-2", "b.txt")):
                ws = await manager.create_workspace(key, f"Add {name}")
                (ws.path / name).write_text(name)
                await manager.commit_and_push(ws, f"{key}: add {name}", force=True)
                shas.append(await manager.merge_into_staging(ws.branch_name))
            return shas

        first, second = run_async(scenario())

        assert first != second
        files = git(remote, "ls-tree", "--name-only", "staging").splitlines()
        assert {"a.txt", "b.txt", "app.txt"} <= set(files)


class RecordingGit:
    """GitRunner stand-in that yields to the loop on every command."""

    def __init__(self):
        self.commands: List[Tuple[str, ...]] = []

    async def run(self, *args, cwd, retry=False):
        self.commands.append(args)
        await asyncio.sleep(0)
        if args[:2] == ("rev-parse", "--abbrev-ref"):
            return "main"
        if args[0] == "ls-remote":
            return "abc123\trefs/heads/staging"
        if args[:2] == ("rev-parse", "HEAD"):
            return "f" * 40
        return ""


class FailingMergeGit(RecordingGit):
    async def run(self, *args, cwd, retry=False):
        if args[0] == "merge" and args[1] == "--no-ff":
            self.commands.append(args)
            raise GitCommandError(args, 1, "CONFLICT (content): Merge conflict in app.txt")
        return await super().run(*args, cwd=cwd, retry=retry)


class BrokenCleanupGit(FailingMergeGit):
    async def run(self, *args, cwd, retry=False):
        if args[:2] in (("merge", "--abort"), ("reset", "--hard")):
            self.commands.append(args)
            raise GitCommandError(args, 128, "fatal: index.lock exists")
        return await super().run(*args, cwd=cwd, retry=retry)


class TestStagingSerialization:
    def _manager(self, tmp_path, git_runner) -> WorkspaceManager:
        config = WorkspaceConfig(repo_path=tmp_path, base_path=tmp_path / "worktrees")
        return WorkspaceManager(config, git_runner)

    def test_concurrent_merges_do_not_interleave(self, tmp_path):
        runner = RecordingGit()
        manager = self._manager(tmp_path, runner)

        async def scenario():
            await asyncio.gather(
                manager.merge_into_staging("claude/PROJ-1-a"),
                manager.merge_into_staging("claude/PROJ-2-b"),
            )

        run_async(scenario())

        markers = [
            cmd[0]
            for cmd in runner.commands
            if cmd[0] == "merge" or (cmd[0] == "push" and "staging" in cmd)
        ]
        assert markers == ["merge", "push", "merge", "push"]

    def test_conflict_aborts_and_restores_checkout(self, tmp_path):
        runner = FailingMergeGit()
        manager = self._manager(tmp_path, runner)

        with pytest.raises(MergeConflictError, match="CONFLICT"):
            run_async(manager.merge_into_staging("claude/PROJ-1-a"))

        assert ("merge", "--abort") in runner.commands
        assert runner.commands[-1] == ("checkout", "--force", "main")
        assert not any(cmd[0] == "push" for cmd in runner.commands)

    def test_lock_released_after_conflict(self, tmp_path):
        runner = FailingMergeGit()
        manager = self._manager(tmp_path, runner)

        async def scenario():
            for _ in range(2):
                with pytest.raises(MergeConflictError):
                    await manager.merge_into_staging("claude/PROJ-1-a")
            return manager.staging_lock.locked()

        assert run_async(scenario()) is False

    def test_failed_cleanup_still_reports_conflict(self, tmp_path):
        runner = BrokenCleanupGit()
        manager = self._manager(tmp_path, runner)

        async def scenario():
            with pytest.raises(MergeConflictError, match="CONFLICT"):
                await manager.merge_into_staging("claude/PROJ-1-a")
            return manager.staging_lock.locked()

        assert run_async(scenario()) is False
        assert ("reset", "--hard", "HEAD") in runner.commands
        assert runner.commands[-1] == ("checkout", "--force", "main")
