"""
Dependency Resolver
===================

Pure algorithms over a snapshot of the feature graph.

A snapshot is a mapping of feature id -> Feature. Edges run from a dependency
to its dependent: "B depends on A" is the edge A -> B. Nothing here mutates the
snapshot or keeps state between calls, so every function is safe to call
concurrently.

Key Features:
- Direct edge lookup and would-create-cycle checks
- Kahn's algorithm layering with a deterministic tie-break
- Cycle listing for error reporting
- Critical path (longest dependency chain)
- ASCII / Mermaid renderings
- Workspace filtering for board and graph views
"""

from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Mapping, Optional
import logging

from featuregraph.errors import CycleError, ValidationError
from featuregraph.models import Feature, FeatureStatus

logger = logging.getLogger(__name__)


GraphSnapshot = Mapping[str, Feature]


@dataclass
class ExecutionOrder:
    """
    Result of topological layering.

    Attributes:
        batches: Groups of feature ids; each group only depends on earlier groups
        task_order: Flattened list of all ids in execution order
    """
    batches: List[List[str]]
    task_order: List[str]


def dependency_exists(graph: GraphSnapshot, source_id: str, target_id: str) -> bool:
    """True iff target_id directly depends on source_id."""
    target = graph.get(target_id)
    if target is None:
        return False
    return source_id in target.dependencies


def would_create_cycle(graph: GraphSnapshot, source_id: str, target_id: str) -> bool:
    """
    Check whether making target_id depend on source_id closes a cycle.

    The new edge closes a cycle iff target_id is already reachable from
    source_id by following dependency edges, i.e. source_id transitively
    depends on target_id.

    Args:
        graph: Snapshot of the feature graph
        source_id: The prerequisite
        target_id: The feature that would depend on source_id

    Returns:
        True if adding the edge would create a cycle
    """
    if source_id == target_id:
        return True

    seen = set()
    stack = [source_id]
    while stack:
        current = stack.pop()
        if current == target_id:
            return True
        if current in seen:
            continue
        seen.add(current)
        node = graph.get(current)
        if node is None:
            continue
        stack.extend(dep for dep in node.dependencies if dep not in seen)

    return False


def find_cycles(graph: GraphSnapshot, nodes: Optional[Iterable[str]] = None) -> List[List[str]]:
    """
    List dependency cycles using DFS.

    Args:
        graph: Snapshot of the feature graph
        nodes: Optional start nodes (defaults to every node)

    Returns:
        Cycles as id paths, first id repeated at the end
    """
    cycles: List[List[str]] = []
    visited = set()
    rec_stack = set()

    def dfs(feature_id: str, path: List[str]) -> None:
        visited.add(feature_id)
        rec_stack.add(feature_id)
        path.append(feature_id)

        for dep_id in graph[feature_id].dependencies:
            if dep_id not in graph:
                continue
            if dep_id not in visited:
                dfs(dep_id, path)
            elif dep_id in rec_stack:
                cycle = path[path.index(dep_id):] + [dep_id]
                if cycle not in cycles:
                    cycles.append(cycle)

        path.pop()
        rec_stack.remove(feature_id)

    for feature_id in sorted(nodes if nodes is not None else graph.keys()):
        if feature_id in graph and feature_id not in visited:
            dfs(feature_id, [])

    return cycles


def _sort_ids(graph: GraphSnapshot, ids: Iterable[str]) -> List[str]:
    return sorted(ids, key=lambda fid: graph[fid].sort_key())


def resolve_execution_order(graph: GraphSnapshot) -> ExecutionOrder:
    """
    Layer the graph with Kahn's algorithm.

    Each batch holds the features whose dependencies all sit in earlier
    batches. Within a batch, features are ordered by priority (desc),
    created_at (asc), id (asc).

    Raises:
        ValidationError: If a feature references an unknown dependency
        CycleError: If the graph cannot be fully layered
    """
    if not graph:
        return ExecutionOrder(batches=[], task_order=[])

    # adjacency[dep_id] = features that depend on dep_id
    adjacency: Dict[str, List[str]] = {fid: [] for fid in graph}
    in_degree: Dict[str, int] = {fid: 0 for fid in graph}

    for feature_id, feature in graph.items():
        for dep_id in feature.dependencies:
            if dep_id not in graph:
                raise ValidationError(
                    f"Feature {feature_id} depends on unknown feature {dep_id}"
                )
            adjacency[dep_id].append(feature_id)
            in_degree[feature_id] += 1

    batches: List[List[str]] = []
    task_order: List[str] = []
    queue = _sort_ids(graph, (fid for fid, degree in in_degree.items() if degree == 0))

    while queue:
        batches.append(queue)
        task_order.extend(queue)

        next_queue = []
        for feature_id in queue:
            for dependent_id in adjacency[feature_id]:
                in_degree[dependent_id] -= 1
                if in_degree[dependent_id] == 0:
                    next_queue.append(dependent_id)
        queue = _sort_ids(graph, next_queue)

    if len(task_order) != len(graph):
        remaining = [fid for fid, degree in in_degree.items() if degree > 0]
        cycles = find_cycles(graph, remaining)
        logger.warning(f"Circular dependencies detected: {cycles}")
        raise CycleError(
            f"Dependency graph contains {len(cycles)} cycle(s)", cycles=cycles
        )

    logger.debug(f"Resolved {len(graph)} features into {len(batches)} batches")
    return ExecutionOrder(batches=batches, task_order=task_order)


def critical_path(graph: GraphSnapshot) -> List[str]:
    """
    Identify the longest dependency chain.

    Uses dynamic programming over the topological order.

    Returns:
        Feature ids from the first prerequisite to the last dependent
    """
    order = resolve_execution_order(graph)
    if not order.task_order:
        return []

    dependents: Dict[str, List[str]] = {fid: [] for fid in graph}
    for feature_id, feature in graph.items():
        for dep_id in feature.dependencies:
            dependents[dep_id].append(feature_id)

    # dp[feature_id] = (length of chain starting here, next feature on it)
    dp: Dict[str, tuple] = {}
    for feature_id in reversed(order.task_order):
        best_length, best_next = 0, None
        for dependent_id in _sort_ids(graph, dependents[feature_id]):
            if dp[dependent_id][0] + 1 > best_length:
                best_length, best_next = dp[dependent_id][0] + 1, dependent_id
        dp[feature_id] = (best_length, best_next)

    start = max(order.task_order, key=lambda fid: dp[fid][0])
    path = []
    current: Optional[str] = start
    while current is not None:
        path.append(current)
        current = dp[current][1]
    return path


def _label(feature: Feature, limit: int = 40) -> str:
    name = feature.title or feature.description or feature.id
    if len(name) > limit:
        name = name[:limit - 3] + "..."
    return name


def to_mermaid(graph: GraphSnapshot) -> str:
    """Render the graph as a Mermaid flowchart."""
    if not graph:
        return "graph TD\n  Empty[No features]"

    order = resolve_execution_order(graph)
    node_names = {fid: f"F{index}" for index, fid in enumerate(order.task_order)}

    lines = ["graph TD"]
    for batch_num, batch in enumerate(order.batches):
        for feature_id in batch:
            feature = graph[feature_id]
            # Sanitize for Mermaid
            name = _label(feature).replace('"', "'").replace('[', '(').replace(']', ')')
            lines.append(
                f'  {node_names[feature_id]}["{name}<br/>{feature.status.value} / batch {batch_num}"]'
            )

    for feature_id in order.task_order:
        for dep_id in graph[feature_id].dependencies:
            lines.append(f'  {node_names[dep_id]} --> {node_names[feature_id]}')

    return '\n'.join(lines)


def to_ascii(graph: GraphSnapshot) -> str:
    """Render the layered graph as plain text."""
    if not graph:
        return "No features"

    order = resolve_execution_order(graph)
    lines = ["=" * 70, "DEPENDENCY GRAPH", "=" * 70]

    for batch_num, batch in enumerate(order.batches):
        lines.append(f"\nBATCH {batch_num} (can run in parallel):")
        lines.append("-" * 70)
        for feature_id in batch:
            feature = graph[feature_id]
            lines.append(f"  [{feature_id}] {_label(feature, 60)}")
            lines.append(f"      Status: {feature.status.value}  Priority: {feature.priority}")
            if feature.dependencies:
                lines.append(f"      Depends on: {', '.join(feature.dependencies)}")
            else:
                lines.append("      Depends on: None")

    lines.append("\n" + "=" * 70)
    lines.append(f"Total: {len(graph)} features in {len(order.batches)} batches")
    lines.append("=" * 70)
    return '\n'.join(lines)


def filter_for_workspace(
    features: Iterable[Feature],
    current_branch: Optional[str],
    viewing_primary: bool,
    is_primary_branch: Callable[[str], bool],
) -> List[Feature]:
    """
    Select the features shown for one workspace.

    Completed features are hidden. Features without a branch only show on the
    primary workspace. When the current branch is unknown (primary workspace
    not initialised), branch-bound features show if their branch is the
    primary branch. Otherwise a feature shows when its branch matches.
    """
    visible = []
    for feature in features:
        if feature.status == FeatureStatus.COMPLETED:
            continue
        if not feature.branch_name:
            if viewing_primary:
                visible.append(feature)
        elif current_branch is None:
            if is_primary_branch(feature.branch_name):
                visible.append(feature)
        elif feature.branch_name == current_branch:
            visible.append(feature)
    return visible
