"""
Workspace Binding
=================

Maps a feature's branch (or the primary checkout) to a workspace handle from
the external workspace collaborator, keeping at most one live handle per
branch. Features that share a branch share the handle; the underlying
workspace is released when its last holder lets go.
"""

from typing import Any, Dict, Optional, Protocol, Set
import logging

from featuregraph.errors import WorkspaceUnavailableError
from featuregraph.models import WorkspaceHandle

logger = logging.getLogger(__name__)

PRIMARY_KEY = "primary"


class WorkspaceProvider(Protocol):
    """External collaborator that creates and removes isolated workspaces."""

    async def acquire_workspace(self, branch_name: Optional[str]) -> WorkspaceHandle:
        ...

    async def release_workspace(self, handle: WorkspaceHandle) -> None:
        ...

    def is_primary_workspace(self, project_path: str, branch_name: Optional[str]) -> bool:
        ...


class WorkspaceBinding:
    """
    Handle cache in front of a WorkspaceProvider.

    Single writer: only the scheduler's coordinator calls acquire/release.
    """

    def __init__(self, project_path: str, provider: WorkspaceProvider):
        self.project_path = project_path
        self.provider = provider
        self._handles: Dict[str, WorkspaceHandle] = {}
        self._holders: Dict[str, Set[str]] = {}

    def key_for(self, branch_name: Optional[str]) -> str:
        if not branch_name or self.provider.is_primary_workspace(self.project_path, branch_name):
            return PRIMARY_KEY
        return branch_name

    def get(self, branch_name: Optional[str]) -> Optional[WorkspaceHandle]:
        return self._handles.get(self.key_for(branch_name))

    def holds(self, branch_name: Optional[str], holder: str) -> bool:
        return holder in self._holders.get(self.key_for(branch_name), set())

    async def acquire(self, branch_name: Optional[str], holder: Optional[str] = None) -> WorkspaceHandle:
        """
        Return the handle for branch_name, creating the workspace on first use.

        Args:
            branch_name: Branch to run in (None = primary workspace)
            holder: Feature id taking a reference on the handle

        Raises:
            WorkspaceUnavailableError: If the collaborator cannot provide it
        """
        key = self.key_for(branch_name)
        handle = self._handles.get(key)

        if handle is None:
            try:
                handle = await self.provider.acquire_workspace(
                    None if key == PRIMARY_KEY else branch_name
                )
            except WorkspaceUnavailableError:
                raise
            except Exception as e:
                logger.warning(f"Workspace for '{key}' unavailable: {e}")
                raise WorkspaceUnavailableError(f"Workspace for '{key}' unavailable: {e}") from e
            self._handles[key] = handle
            logger.info(f"Acquired workspace '{key}' at {handle.path}")

        if holder is not None:
            self._holders.setdefault(key, set()).add(holder)
        return handle

    async def release(self, branch_name: Optional[str], holder: Optional[str] = None) -> bool:
        """
        Drop a reference; release the workspace when nobody holds it.

        Safe to call when nothing is held. Without a holder, the workspace is
        released regardless of remaining holders.

        Returns:
            True if the underlying workspace was released
        """
        key = self.key_for(branch_name)
        holders = self._holders.get(key, set())
        if holder is not None:
            holders.discard(holder)
            if holders:
                logger.debug(f"Workspace '{key}' still held by {sorted(holders)}")
                return False

        handle = self._handles.pop(key, None)
        self._holders.pop(key, None)
        if handle is None:
            return False

        await self.provider.release_workspace(handle)
        logger.info(f"Released workspace '{key}'")
        return True

    def get_status(self) -> Dict[str, Any]:
        return {
            'workspaces': [
                {
                    'key': key,
                    'path': handle.path,
                    'branch_name': handle.branch_name,
                    'holders': sorted(self._holders.get(key, set())),
                }
                for key, handle in self._handles.items()
            ]
        }
