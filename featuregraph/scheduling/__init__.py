"""
Scheduling Module
=================

Main Components:
- ExecutionScheduler: per-project coordinator and feature state machine
- WorkspaceBinding: branch -> workspace handle cache
- SchedulerRegistry: one coordinator per open project

Usage:
    from featuregraph.scheduling import SchedulerRegistry

    registry = SchedulerRegistry(config, executor_factory)
    scheduler = await registry.open(project_id, project_path)
    await scheduler.create_feature(title="Login page")
"""

from featuregraph.scheduling.scheduler import AgentExecutor, ExecutionScheduler
from featuregraph.scheduling.workspace_binding import WorkspaceBinding, WorkspaceProvider
from featuregraph.scheduling.registry import SchedulerRegistry

__all__ = [
    'AgentExecutor',
    'ExecutionScheduler',
    'SchedulerRegistry',
    'WorkspaceBinding',
    'WorkspaceProvider',
]
