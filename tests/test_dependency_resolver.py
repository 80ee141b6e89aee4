"""
Test dependency resolver algorithms
"""

import random
import sys
from datetime import datetime, timedelta
sys.path.insert(0, '.')

import pytest

from featuregraph.errors import CycleError, ValidationError
from featuregraph.graph.dependency_resolver import (
    critical_path,
    dependency_exists,
    filter_for_workspace,
    find_cycles,
    resolve_execution_order,
    to_ascii,
    to_mermaid,
    would_create_cycle,
)
from featuregraph.models import Feature, FeatureStatus

BASE_TIME = datetime(2024, 1, 1, 12, 0, 0)


def make_graph(specs):
    """Build a snapshot from (id, deps, priority) tuples; created_at follows list order."""
    graph = {}
    for index, (feature_id, deps, priority) in enumerate(specs):
        graph[feature_id] = Feature(
            id=feature_id,
            title=f"Feature {feature_id}",
            dependencies=list(deps),
            priority=priority,
            created_at=BASE_TIME + timedelta(seconds=index),
        )
    return graph


def test_simple_batching():
    """Test basic parallel batching without dependencies"""
    print("\n=== Test 1: Simple Batching (no dependencies) ===")

    graph = make_graph([
        ('a', [], 1),
        ('b', [], 2),
        ('c', [], 3),
    ])

    order = resolve_execution_order(graph)

    print(f"Batches: {order.batches}")
    print(f"Task order: {order.task_order}")

    # All features in first batch, highest priority first
    assert len(order.batches) == 1, f"Expected 1 batch, got {len(order.batches)}"
    assert order.batches[0] == ['c', 'b', 'a'], f"Expected [c,b,a], got {order.batches[0]}"

    print("[PASS]")


def test_linear_dependencies():
    """Test linear dependency chain: a -> b -> c"""
    print("\n=== Test 2: Linear Dependencies (a -> b -> c) ===")

    graph = make_graph([
        ('a', [], 0),
        ('b', ['a'], 0),
        ('c', ['b'], 0),
    ])

    order = resolve_execution_order(graph)

    print(f"Batches: {order.batches}")

    assert order.batches == [['a'], ['b'], ['c']], f"Got {order.batches}"
    assert order.task_order == ['a', 'b', 'c'], f"Got {order.task_order}"

    print("[PASS]")


def test_parallel_batching():
    """Test parallel batching with diamond dependency"""
    print("\n=== Test 3: Parallel Batching (Diamond: a -> {b,c} -> d) ===")

    graph = make_graph([
        ('a', [], 0),
        ('b', ['a'], 0),
        ('c', ['a'], 0),
        ('d', ['b', 'c'], 0),
    ])

    order = resolve_execution_order(graph)

    print(f"Batches: {order.batches}")

    assert len(order.batches) == 3, f"Expected 3 batches, got {len(order.batches)}"
    assert order.batches[0] == ['a']
    # Equal priority: earlier created_at first
    assert order.batches[1] == ['b', 'c']
    assert order.batches[2] == ['d']

    print("[PASS]")


def test_tie_break_created_at_then_id():
    """Test tie-break falls back to created_at, then id"""
    print("\n=== Test 4: Tie-break order ===")

    same_time = BASE_TIME
    graph = {
        'z': Feature(id='z', created_at=same_time),
        'y': Feature(id='y', created_at=same_time),
        'old': Feature(id='old', created_at=same_time - timedelta(hours=1)),
        'urgent': Feature(id='urgent', priority=5, created_at=same_time + timedelta(hours=1)),
    }

    order = resolve_execution_order(graph)

    assert order.batches == [['urgent', 'old', 'y', 'z']], f"Got {order.batches}"

    print("[PASS]")


def test_empty_graph():
    order = resolve_execution_order({})
    assert order.batches == []
    assert order.task_order == []
    assert critical_path({}) == []


def test_circular_dependency_detection():
    """Test circular dependency detection: a -> b -> c -> a"""
    print("\n=== Test 5: Circular Dependencies ===")

    graph = make_graph([
        ('a', ['c'], 0),
        ('b', ['a'], 0),
        ('c', ['b'], 0),
        ('free', [], 0),
    ])

    with pytest.raises(CycleError) as exc_info:
        resolve_execution_order(graph)

    print(f"Cycles: {exc_info.value.cycles}")

    assert len(exc_info.value.cycles) == 1
    cycle = exc_info.value.cycles[0]
    assert cycle[0] == cycle[-1]
    assert set(cycle) == {'a', 'b', 'c'}

    print("[PASS]")


def test_dangling_dependency_rejected():
    """Test a reference to an unknown feature is a validation error"""
    graph = make_graph([
        ('a', ['ghost'], 0),
    ])

    with pytest.raises(ValidationError, match="ghost"):
        resolve_execution_order(graph)


def test_find_cycles_on_acyclic_graph():
    graph = make_graph([
        ('a', [], 0),
        ('b', ['a'], 0),
    ])
    assert find_cycles(graph) == []


def test_dependency_exists():
    graph = make_graph([
        ('a', [], 0),
        ('b', ['a'], 0),
    ])

    assert dependency_exists(graph, 'a', 'b')
    assert not dependency_exists(graph, 'b', 'a')
    assert not dependency_exists(graph, 'a', 'missing')


def test_would_create_cycle():
    """Test cycle prediction on a chain a -> b -> c"""
    print("\n=== Test 6: Would Create Cycle ===")

    graph = make_graph([
        ('a', [], 0),
        ('b', ['a'], 0),
        ('c', ['b'], 0),
    ])

    # Making a depend on c closes a -> b -> c -> a
    assert would_create_cycle(graph, 'c', 'a')
    assert would_create_cycle(graph, 'b', 'a')
    # Self edge
    assert would_create_cycle(graph, 'a', 'a')
    # Forward shortcut is fine
    assert not would_create_cycle(graph, 'a', 'c')

    print("[PASS]")


def test_critical_path():
    """Test critical path follows the longest chain"""
    print("\n=== Test 7: Critical Path ===")

    graph = make_graph([
        ('a', [], 0),
        ('b', ['a'], 0),
        ('c', ['b'], 0),
        ('d', ['c'], 0),
        ('side', ['a'], 0),
    ])

    path = critical_path(graph)
    print(f"Critical path: {path}")

    assert path == ['a', 'b', 'c', 'd'], f"Got {path}"

    print("[PASS]")


def test_visualization():
    """Test ASCII and Mermaid renderings"""
    print("\n=== Test 8: Visualization ===")

    graph = make_graph([
        ('a', [], 0),
        ('b', ['a'], 0),
    ])

    ascii_output = to_ascii(graph)
    print(ascii_output)
    assert "BATCH 0" in ascii_output
    assert "BATCH 1" in ascii_output
    assert "Depends on: a" in ascii_output
    assert "Total: 2 features in 2 batches" in ascii_output

    mermaid = to_mermaid(graph)
    print(mermaid)
    assert mermaid.startswith("graph TD")
    assert "F0 --> F1" in mermaid

    assert to_ascii({}) == "No features"
    assert "Empty" in to_mermaid({})

    print("[PASS]")


def test_random_graphs_layer_consistently():
    """Randomized: every acyclic graph layers with deps in earlier batches"""
    rng = random.Random(1234)

    for _ in range(50):
        count = rng.randint(1, 15)
        ids = [f"f{i}" for i in range(count)]
        specs = []
        for index, feature_id in enumerate(ids):
            # Only depend on earlier ids, so the graph is acyclic
            deps = rng.sample(ids[:index], rng.randint(0, min(index, 3)))
            specs.append((feature_id, deps, rng.randint(0, 3)))
        graph = make_graph(specs)

        order = resolve_execution_order(graph)

        assert sorted(order.task_order) == sorted(ids)
        batch_of = {fid: n for n, batch in enumerate(order.batches) for fid in batch}
        for feature_id, feature in graph.items():
            for dep_id in feature.dependencies:
                assert batch_of[dep_id] < batch_of[feature_id]
        for batch in order.batches:
            keys = [graph[fid].sort_key() for fid in batch]
            assert keys == sorted(keys)


def test_random_would_create_cycle_matches_layering():
    """Randomized: would_create_cycle is True iff adding the edge breaks layering"""
    rng = random.Random(99)

    for _ in range(50):
        count = rng.randint(2, 10)
        ids = [f"f{i}" for i in range(count)]
        specs = []
        for index, feature_id in enumerate(ids):
            deps = rng.sample(ids[:index], rng.randint(0, min(index, 2)))
            specs.append((feature_id, deps, 0))
        graph = make_graph(specs)

        source, target = rng.sample(ids, 2)
        if dependency_exists(graph, source, target):
            continue

        candidate = dict(graph)
        candidate[target] = graph[target].copy(dependencies=graph[target].dependencies + [source])

        try:
            resolve_execution_order(candidate)
            cyclic = False
        except CycleError:
            cyclic = True

        assert would_create_cycle(graph, source, target) == cyclic


class TestFilterForWorkspace:
    """Test which features a workspace view shows."""

    def _features(self):
        return [
            Feature(id='no-branch'),
            Feature(id='on-main', branch_name='main'),
            Feature(id='on-feature', branch_name='feature/login'),
            Feature(id='done', branch_name='feature/login', status=FeatureStatus.COMPLETED),
        ]

    def _ids(self, features):
        return [f.id for f in features]

    def test_primary_with_known_branch(self):
        visible = filter_for_workspace(
            self._features(), current_branch='main', viewing_primary=True,
            is_primary_branch=lambda b: b == 'main',
        )
        assert self._ids(visible) == ['no-branch', 'on-main']

    def test_primary_branch_unknown(self):
        visible = filter_for_workspace(
            self._features(), current_branch=None, viewing_primary=True,
            is_primary_branch=lambda b: b == 'main',
        )
        assert self._ids(visible) == ['no-branch', 'on-main']

    def test_worktree_view(self):
        visible = filter_for_workspace(
            self._features(), current_branch='feature/login', viewing_primary=False,
            is_primary_branch=lambda b: b == 'main',
        )
        # Completed features are hidden; features without a branch stay on primary
        assert self._ids(visible) == ['on-feature']


if __name__ == "__main__":
    print("\n" + "=" * 60)
    print("DEPENDENCY RESOLVER TEST SUITE")
    print("=" * 60)

    test_simple_batching()
    test_linear_dependencies()
    test_parallel_batching()
    test_tie_break_created_at_then_id()
    test_circular_dependency_detection()
    test_would_create_cycle()
    test_critical_path()
    test_visualization()

    print("\n" + "=" * 60)
    print("ALL TESTS PASSED!")
    print("=" * 60)
