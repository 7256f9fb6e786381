"""Git worktree workspaces."""
