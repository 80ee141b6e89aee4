"""
Git Worktree Provider
=====================

WorkspaceProvider backed by `git worktree`.

Key Features:
- The primary workspace is the project checkout itself
- One worktree per branch under <project>/.worktrees/
- Reuses an existing, valid worktree instead of recreating it
- Creates the branch from the primary branch when it does not exist
- Windows-safe worktree directory names
"""

from pathlib import Path
from typing import List, Optional
import asyncio
import hashlib
import logging
import re
import shutil

from featuregraph.models import WorkspaceHandle

logger = logging.getLogger(__name__)


class GitCommandError(Exception):
    """Raised when a git command fails."""
    pass


class GitWorktreeProvider:
    """
    Creates and removes git worktrees for feature branches.
    """

    def __init__(self, project_path: str, worktree_dir: str = ".worktrees"):
        """
        Initialize worktree provider.

        Args:
            project_path: Path to project repository
            worktree_dir: Directory for worktrees (relative to project root)
        """
        self.project_path = Path(project_path)
        self.worktree_dir = worktree_dir
        self.primary_branch: Optional[str] = None
        logger.info(f"GitWorktreeProvider initialized for {project_path}")

    async def initialize(self) -> None:
        """Create the worktree directory and record the primary branch."""
        (self.project_path / self.worktree_dir).mkdir(parents=True, exist_ok=True)
        try:
            self.primary_branch = await self._get_current_branch()
        except GitCommandError as e:
            logger.warning(f"Could not determine primary branch: {e}")
            self.primary_branch = None
        logger.info(f"Primary branch: {self.primary_branch}")

    def is_primary_workspace(self, project_path: str, branch_name: Optional[str]) -> bool:
        if Path(project_path).resolve() != self.project_path.resolve():
            return False
        return branch_name is None or branch_name == self.primary_branch

    async def acquire_workspace(self, branch_name: Optional[str]) -> WorkspaceHandle:
        """
        Return a workspace for branch_name, creating a worktree if needed.

        Raises:
            GitCommandError: If the worktree cannot be created
        """
        if branch_name is None or branch_name == self.primary_branch:
            return WorkspaceHandle(
                key="primary",
                path=str(self.project_path),
                branch_name=self.primary_branch,
                is_primary=True,
            )

        worktree_path = self.project_path / self.worktree_dir / self._sanitize_dir_name(branch_name)

        if worktree_path.is_dir():
            checked_out = None
            try:
                await self._run_git(['status'], cwd=worktree_path, timeout=10)
                checked_out = await self._run_git(['rev-parse', '--abbrev-ref', 'HEAD'], cwd=worktree_path, timeout=10)
            except GitCommandError:
                logger.warning(f"Existing worktree is invalid, will recreate: {worktree_path}")
                shutil.rmtree(worktree_path, ignore_errors=True)
                await self._run_git(['worktree', 'prune'], timeout=30)

            if checked_out is not None:
                if checked_out != branch_name:
                    # Never hand out a worktree that belongs to another branch
                    raise GitCommandError(
                        f"Worktree {worktree_path} is on branch {checked_out}, not {branch_name}"
                    )
                logger.info(f"Reusing existing worktree: {worktree_path}")
                return WorkspaceHandle(key=branch_name, path=str(worktree_path), branch_name=branch_name)

        try:
            await self._run_git(['rev-parse', '--verify', branch_name], timeout=10)
            logger.info(f"Branch {branch_name} already exists")
        except GitCommandError:
            base = self.primary_branch or 'HEAD'
            await self._run_git(['branch', branch_name, base], timeout=30)
            logger.info(f"Created branch {branch_name} from {base}")

        try:
            await self._run_git(['worktree', 'add', str(worktree_path), branch_name], timeout=60)
        except GitCommandError:
            shutil.rmtree(worktree_path, ignore_errors=True)
            raise

        logger.info(f"Created worktree at {worktree_path}")
        return WorkspaceHandle(key=branch_name, path=str(worktree_path), branch_name=branch_name)

    async def release_workspace(self, handle: WorkspaceHandle) -> None:
        """
        Remove a worktree. The branch and its commits are kept.

        A worktree with uncommitted changes is left on disk.
        """
        if handle.is_primary:
            return

        worktree_path = Path(handle.path)
        if not worktree_path.exists():
            logger.warning(f"Worktree directory already removed: {worktree_path}")
            await self._run_git(['worktree', 'prune'], timeout=30)
            return

        try:
            await self._run_git(['worktree', 'remove', str(worktree_path)], timeout=30)
            logger.info(f"Worktree removed: {worktree_path}")
        except GitCommandError as e:
            if 'modified or untracked files' in str(e) or 'uncommitted changes' in str(e):
                logger.warning(f"Worktree {worktree_path} has uncommitted changes, leaving it in place")
            else:
                raise

    async def _run_git(
        self,
        args: List[str],
        cwd: Optional[Path] = None,
        timeout: int = 60
    ) -> str:
        """
        Run a git command asynchronously.

        Returns:
            Command stdout output

        Raises:
            GitCommandError: If command fails or times out
        """
        if cwd is None:
            cwd = self.project_path

        cmd = ['git'] + args
        logger.debug(f"Running git command: {' '.join(cmd)} in {cwd}")

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(cwd),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE
            )
        except FileNotFoundError:
            raise GitCommandError("Git command not found. Is git installed?")

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise GitCommandError(f"Git command timed out after {timeout}s: {' '.join(cmd)}")

        if process.returncode != 0:
            stderr_str = stderr.decode('utf-8', errors='replace').strip()
            raise GitCommandError(
                f"Git command failed (exit {process.returncode}): {' '.join(cmd)}\n{stderr_str}"
            )

        return stdout.decode('utf-8', errors='replace').strip()

    async def _get_current_branch(self) -> str:
        output = await self._run_git(['rev-parse', '--abbrev-ref', 'HEAD'], timeout=10)
        if output == 'HEAD':
            raise GitCommandError("Not currently on a branch (detached HEAD)")
        return output

    def _sanitize_dir_name(self, name: str) -> str:
        """
        Turn a branch name into a safe directory name.
        Windows-safe: handles reserved names and special characters.

        A short hash of the exact branch name is appended, so branches that
        sanitize alike (feature/a, Feature_A) still get distinct directories.
        """
        suffix = hashlib.sha1(name.encode('utf-8')).hexdigest()[:8]
        directory = name.lower().replace('/', '-').replace(' ', '-').replace('_', '-')
        directory = re.sub(r'[^a-z0-9\-.]', '', directory)
        directory = re.sub(r'-+', '-', directory).strip('-.')

        reserved_names = ['con', 'prn', 'aux', 'nul']
        reserved_names += [f'com{i}' for i in range(1, 10)]
        reserved_names += [f'lpt{i}' for i in range(1, 10)]
        if directory in reserved_names:
            directory = f'branch-{directory}'

        if len(directory) > 90:
            directory = directory[:90].rstrip('-.')

        return f"{directory or 'branch'}-{suffix}"
