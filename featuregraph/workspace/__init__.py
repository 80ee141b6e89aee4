"""
Workspace Providers
===================

Concrete implementations of the workspace collaborator.
"""

from featuregraph.workspace.git_worktrees import GitCommandError, GitWorktreeProvider

__all__ = [
    'GitCommandError',
    'GitWorktreeProvider',
]
