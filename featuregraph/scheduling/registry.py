"""
Scheduler Registry
==================

Owns one ExecutionScheduler per open project. Callers get the coordinator
from here instead of reaching for module-level state; opening a project runs
reconciliation, closing it stops the coordinator.
"""

from typing import Awaitable, Callable, Dict, List, Optional
import asyncio
import logging

from featuregraph.config import Config
from featuregraph.errors import ProjectNotOpenError
from featuregraph.repository import FeatureRepository, InMemoryFeatureRepository
from featuregraph.scheduling.scheduler import AgentExecutor, EventCallback, ExecutionScheduler
from featuregraph.scheduling.workspace_binding import WorkspaceBinding, WorkspaceProvider
from featuregraph.workspace.git_worktrees import GitWorktreeProvider

logger = logging.getLogger(__name__)


ExecutorFactory = Callable[[str, str], AgentExecutor]
ProviderFactory = Callable[[str], Awaitable[WorkspaceProvider]]


class SchedulerRegistry:
    """
    One coordinator per project, created on open and dropped on close.
    """

    def __init__(
        self,
        config: Config,
        executor_factory: ExecutorFactory,
        repository: Optional[FeatureRepository] = None,
        provider_factory: Optional[ProviderFactory] = None,
        event_callback: Optional[EventCallback] = None,
    ):
        """
        Args:
            config: Scheduler configuration
            executor_factory: Builds the agent executor for (project_id, project_path)
            repository: Durable feature storage shared by all projects
            provider_factory: Builds the workspace provider for a project path
                (git worktrees by default)
            event_callback: Async callable receiving every project's events
        """
        self.config = config
        self.executor_factory = executor_factory
        self.repository = repository if repository is not None else InMemoryFeatureRepository()
        self.provider_factory = provider_factory or self._git_provider
        self.event_callback = event_callback
        self._schedulers: Dict[str, ExecutionScheduler] = {}
        self._lock = asyncio.Lock()

    async def _git_provider(self, project_path: str) -> WorkspaceProvider:
        provider = GitWorktreeProvider(project_path, worktree_dir=self.config.worktree_dir)
        await provider.initialize()
        return provider

    async def open(self, project_id: str, project_path: str) -> ExecutionScheduler:
        """Return the project's coordinator, opening it on first use."""
        async with self._lock:
            scheduler = self._schedulers.get(project_id)
            if scheduler is not None:
                return scheduler

            provider = await self.provider_factory(project_path)
            scheduler = ExecutionScheduler(
                project_id=project_id,
                project_path=project_path,
                executor=self.executor_factory(project_id, project_path),
                workspaces=WorkspaceBinding(project_path, provider),
                repository=self.repository,
                max_concurrency=self.config.budget_for(project_id),
                event_callback=self.event_callback,
                stop_ack_timeout=self.config.stop_ack_timeout,
                stop_retries=self.config.stop_retries,
                auto_resume_reconciled=self.config.auto_resume_reconciled,
            )
            await scheduler.open()
            self._schedulers[project_id] = scheduler
            logger.info(f"Opened project {project_id} at {project_path}")
            return scheduler

    def get(self, project_id: str) -> ExecutionScheduler:
        try:
            return self._schedulers[project_id]
        except KeyError:
            raise ProjectNotOpenError(project_id)

    def list_projects(self) -> List[str]:
        return sorted(self._schedulers)

    async def close(self, project_id: str) -> None:
        async with self._lock:
            scheduler = self._schedulers.pop(project_id, None)
        if scheduler is not None:
            await scheduler.close()
            logger.info(f"Closed project {project_id}")

    async def close_all(self) -> None:
        for project_id in self.list_projects():
            await self.close(project_id)
