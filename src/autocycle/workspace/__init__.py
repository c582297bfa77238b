"""Git worktree isolation for tasks."""
