"""Isolated branch, worktree and container runs for tasks."""

__version__ = "0.1.0"
