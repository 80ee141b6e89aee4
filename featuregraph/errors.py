"""
Error Taxonomy
==============

Exceptions raised by the graph store, the resolver and the scheduler.

Graph-integrity errors (ValidationError, CycleError, ConflictError) are raised
synchronously by the mutation call and nothing is applied. Scheduling errors
either leave the feature queued for the next pass (WorkspaceUnavailableError)
or end up recorded on the feature as a failure (ExecutionError).
"""

from typing import List, Optional, Sequence


class FeatureGraphError(Exception):
    """Base class for all featuregraph errors."""
    pass


class ValidationError(FeatureGraphError):
    """Raised when a feature or dependency set is malformed, self-referencing or dangling."""
    pass


class FeatureNotFoundError(ValidationError):
    """Raised when an operation names a feature id the project does not have."""

    def __init__(self, feature_id: str):
        self.feature_id = feature_id
        super().__init__(f"Feature not found: {feature_id}")


class CycleError(FeatureGraphError):
    """Raised when a mutation would make the dependency graph cyclic."""

    def __init__(self, message: str, cycles: Optional[Sequence[Sequence[str]]] = None):
        self.cycles: List[List[str]] = [list(c) for c in (cycles or [])]
        super().__init__(message)


class ConflictError(FeatureGraphError):
    """Raised when a removal is blocked by features that still depend on the target."""

    def __init__(self, message: str, dependents: Optional[Sequence[str]] = None):
        self.dependents: List[str] = list(dependents or [])
        super().__init__(message)


class NotEligibleError(FeatureGraphError):
    """Raised when start/stop/resume is requested but its preconditions are unmet."""
    pass


class WorkspaceUnavailableError(FeatureGraphError):
    """Raised when the workspace collaborator cannot provide a workspace. Transient."""
    pass


class ExecutionError(FeatureGraphError):
    """Raised when the execution collaborator fails to launch or stop a task."""
    pass


class ProjectNotOpenError(FeatureGraphError):
    """Raised when a project has no open coordinator."""

    def __init__(self, project_id: str):
        self.project_id = project_id
        super().__init__(f"Project not open: {project_id}")
