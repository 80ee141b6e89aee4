"""
Dependency Graph Module
=======================

- GraphStore: features plus the acyclicity invariant
- dependency_resolver: pure graph algorithms over a snapshot
"""

from featuregraph.graph.dependency_resolver import (
    ExecutionOrder,
    critical_path,
    dependency_exists,
    filter_for_workspace,
    find_cycles,
    resolve_execution_order,
    to_ascii,
    to_mermaid,
    would_create_cycle,
)
from featuregraph.graph.store import GraphStore

__all__ = [
    'ExecutionOrder',
    'GraphStore',
    'critical_path',
    'dependency_exists',
    'filter_for_workspace',
    'find_cycles',
    'resolve_execution_order',
    'to_ascii',
    'to_mermaid',
    'would_create_cycle',
]
