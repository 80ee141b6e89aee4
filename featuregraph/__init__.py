"""
featuregraph
============

Dependency graph engine and autonomous execution scheduler for features that
run in isolated workspaces.
"""

from featuregraph.errors import (
    ConflictError,
    CycleError,
    ExecutionError,
    FeatureGraphError,
    FeatureNotFoundError,
    NotEligibleError,
    ProjectNotOpenError,
    ValidationError,
    WorkspaceUnavailableError,
)
from featuregraph.models import Feature, FeatureStatus, TerminalReport, WorkspaceHandle

__version__ = "0.1.0"

__all__ = [
    'ConflictError',
    'CycleError',
    'ExecutionError',
    'Feature',
    'FeatureGraphError',
    'FeatureNotFoundError',
    'FeatureStatus',
    'NotEligibleError',
    'ProjectNotOpenError',
    'TerminalReport',
    'ValidationError',
    'WorkspaceHandle',
    'WorkspaceUnavailableError',
]
