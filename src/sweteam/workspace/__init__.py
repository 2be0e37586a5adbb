"""Git operations and worktree workspaces."""

from sweteam.workspace.git_ops import GitOps, RepoSyncResult, get_or_create_repo, infer_repo_spec
from sweteam.workspace.worktree import Workspace

__all__ = ["GitOps", "RepoSyncResult", "Workspace", "get_or_create_repo", "infer_repo_spec"]
