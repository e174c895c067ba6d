"""Per-task git worktrees and the shared staging branch."""

from src.shipwright.workspace.git import GitCommandError, GitRunner
from src.shipwright.workspace.manager import (
    PushResult,
    Workspace,
    WorkspaceConfig,
    WorkspaceManager,
    build_branch_name,
    slugify,
)

__all__ = [
    "GitCommandError",
    "GitRunner",
    "PushResult",
    "Workspace",
    "WorkspaceConfig",
    "WorkspaceManager",
    "build_branch_name",
    "slugify",
]
