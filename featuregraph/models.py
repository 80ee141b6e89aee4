"""
Feature Models
==============

Records shared by the graph store, the resolver and the scheduler.

- Feature: the unit of work, persisted
- ExecutionSlot: a running task, runtime only
- WorkspaceHandle: opaque handle for an isolated workspace
- TerminalReport: terminal status sent by the execution collaborator
- SchedulerEvent: outbound state-change event
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4


class FeatureStatus(str, Enum):
    """Lifecycle states of a feature."""
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"

    @property
    def is_resumable(self) -> bool:
        return self in (FeatureStatus.STOPPED, FeatureStatus.FAILED)


# Event types emitted to the UI / event bus
TASK_STARTED = "task-started"
TASK_STOPPED = "task-stopped"
TASK_COMPLETED = "task-completed"
TASK_FAILED = "task-failed"
TASK_QUEUED = "task-queued"
DEPENDENCY_CYCLE_REJECTED = "dependency-cycle-rejected"


def new_feature_id() -> str:
    return f"feature-{uuid4().hex[:12]}"


@dataclass
class Feature:
    """
    A unit of work in the dependency graph.

    Attributes:
        id: Opaque unique identifier, immutable
        title: Short title (free text)
        description: Longer description (free text)
        status: Current lifecycle state
        dependencies: Ids of features that must complete before this one starts
        branch_name: Workspace branch to run in (None = primary workspace)
        priority: Higher runs first among equally eligible features
        created_at: Creation time, second tie-breaker
        updated_at: Last mutation time
        error: Failure detail shown by the UI
        reconciled: Set when crash reconciliation stopped this feature
    """
    id: str
    title: str = ""
    description: str = ""
    status: FeatureStatus = FeatureStatus.QUEUED
    dependencies: List[str] = field(default_factory=list)
    branch_name: Optional[str] = None
    priority: int = 0
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: Optional[datetime] = None
    error: Optional[str] = None
    reconciled: bool = False

    def __post_init__(self):
        if not isinstance(self.status, FeatureStatus):
            self.status = FeatureStatus(self.status)
        self.dependencies = list(self.dependencies or [])

    def sort_key(self) -> Tuple[int, datetime, str]:
        """Admission tie-break: priority desc, created_at asc, id asc."""
        return (-self.priority, self.created_at, self.id)

    def copy(self, **changes: Any) -> "Feature":
        data = {
            'id': self.id,
            'title': self.title,
            'description': self.description,
            'status': self.status,
            'dependencies': list(self.dependencies),
            'branch_name': self.branch_name,
            'priority': self.priority,
            'created_at': self.created_at,
            'updated_at': self.updated_at,
            'error': self.error,
            'reconciled': self.reconciled,
        }
        data.update(changes)
        return Feature(**data)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'title': self.title,
            'description': self.description,
            'status': self.status.value,
            'dependencies': list(self.dependencies),
            'branch_name': self.branch_name,
            'priority': self.priority,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
            'error': self.error,
            'reconciled': self.reconciled,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Feature":
        created_at = data.get('created_at')
        if isinstance(created_at, str):
            created_at = datetime.fromisoformat(created_at)
        updated_at = data.get('updated_at')
        if isinstance(updated_at, str):
            updated_at = datetime.fromisoformat(updated_at)

        return cls(
            id=data['id'],
            title=data.get('title') or "",
            description=data.get('description') or "",
            status=FeatureStatus(data.get('status', FeatureStatus.QUEUED.value)),
            dependencies=list(data.get('dependencies') or []),
            branch_name=data.get('branch_name'),
            priority=int(data.get('priority') or 0),
            created_at=created_at or datetime.now(),
            updated_at=updated_at,
            error=data.get('error'),
            reconciled=bool(data.get('reconciled', False)),
        )


@dataclass(frozen=True)
class WorkspaceHandle:
    """
    Handle for an isolated workspace returned by the workspace collaborator.

    Attributes:
        key: Cache key ("primary" or the branch name)
        path: Filesystem path of the workspace
        branch_name: Branch checked out in it (None for primary)
        is_primary: Whether this is the project's primary checkout
    """
    key: str
    path: str
    branch_name: Optional[str] = None
    is_primary: bool = False


@dataclass(frozen=True)
class TerminalReport:
    """Terminal status for one feature, sent by the execution collaborator."""
    feature_id: str
    success: bool
    error: Optional[str] = None


@dataclass
class ExecutionSlot:
    """
    A running task. Owned by the scheduler, never persisted.

    Attributes:
        feature_id: Feature occupying the slot
        workspace: Workspace the task runs in
        started_at: Monotonic start time
        subscription: Whatever the execution collaborator returned from launch
        stopping: True while a stop request awaits acknowledgment
        pending_failure: Failure reported while the stop was pending
    """
    feature_id: str
    workspace: WorkspaceHandle
    started_at: float
    subscription: Any = None
    stopping: bool = False
    pending_failure: Optional[TerminalReport] = None


@dataclass
class SchedulerEvent:
    """Outbound state-change event."""
    type: str
    feature_id: str
    status: str
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())
    detail: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
