"""
Graph Store
===========

In-memory store of one project's features and their dependency edges.

Every mutation validates against a simulated copy of the graph and only
commits when the result is valid and acyclic, so the store is never
observably cyclic. The store has no concurrency control of its own; the
scheduler is its single writer.
"""

from datetime import datetime
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional
import logging

from featuregraph.errors import ConflictError, CycleError, FeatureNotFoundError, ValidationError
from featuregraph.graph.dependency_resolver import (
    dependency_exists,
    find_cycles,
    would_create_cycle,
)
from featuregraph.models import Feature

logger = logging.getLogger(__name__)

# Fields update_feature() may change directly
UPDATABLE_FIELDS = frozenset({
    'title', 'description', 'branch_name', 'priority', 'dependencies', 'error',
})


class GraphStore:
    """
    Holds every Feature of a project and guards the graph invariants.

    Invariants:
    - a feature never depends on itself
    - every dependency id references an existing feature
    - the dependency graph is acyclic
    """

    def __init__(self, features: Optional[Iterable[Feature]] = None):
        self._features: Dict[str, Feature] = {}
        if features:
            self.load(features)

    def __contains__(self, feature_id: str) -> bool:
        return feature_id in self._features

    def __len__(self) -> int:
        return len(self._features)

    def get(self, feature_id: str) -> Feature:
        try:
            return self._features[feature_id]
        except KeyError:
            raise FeatureNotFoundError(feature_id)

    def features(self) -> List[Feature]:
        return list(self._features.values())

    def snapshot(self) -> Mapping[str, Feature]:
        """Read-only view handed to the resolver."""
        return MappingProxyType(dict(self._features))

    def dependents_of(self, feature_id: str) -> List[str]:
        return sorted(
            fid for fid, feature in self._features.items()
            if feature_id in feature.dependencies
        )

    # =========================================================================
    # Validation
    # =========================================================================

    def _validate_dependencies(
        self,
        feature_id: str,
        dep_ids: Iterable[str],
        graph: Mapping[str, Feature],
    ) -> List[str]:
        deps = list(dep_ids)
        if feature_id in deps:
            raise ValidationError(f"Feature {feature_id} cannot depend on itself")
        if len(set(deps)) != len(deps):
            raise ValidationError(f"Feature {feature_id} lists a dependency more than once")
        unknown = [dep_id for dep_id in deps if dep_id not in graph]
        if unknown:
            raise ValidationError(
                f"Feature {feature_id} depends on unknown feature(s): {', '.join(unknown)}"
            )
        return deps

    def _check_acyclic(self, candidate: Dict[str, Feature], feature_id: str) -> None:
        """Reject the candidate graph if feature_id now lies on a cycle."""
        for dep_id in candidate[feature_id].dependencies:
            # cyclic iff dep_id (transitively) depends on feature_id
            if would_create_cycle(candidate, dep_id, feature_id):
                cycles = find_cycles(candidate, [feature_id])
                raise CycleError(
                    f"Making {feature_id} depend on {dep_id} would create a dependency cycle",
                    cycles=cycles,
                )

    # =========================================================================
    # Mutations
    # =========================================================================

    def upsert_feature(self, feature: Feature) -> Feature:
        """
        Insert or replace a feature.

        Raises:
            ValidationError: On self, duplicate or unknown dependency ids
            CycleError: If the replacement's dependencies close a cycle
        """
        candidate = dict(self._features)
        candidate[feature.id] = feature
        feature.dependencies = self._validate_dependencies(
            feature.id, feature.dependencies, candidate
        )
        if feature.id in self._features:
            self._check_acyclic(candidate, feature.id)

        self._features = candidate
        logger.debug(f"Upserted feature {feature.id} ({len(feature.dependencies)} deps)")
        return feature

    def set_dependencies(self, feature_id: str, dep_ids: Iterable[str]) -> Feature:
        """
        Replace a feature's dependency set, all or nothing.

        Raises:
            FeatureNotFoundError: If feature_id is unknown
            ValidationError: On self, duplicate or unknown dependency ids
            CycleError: If the new set closes a cycle
        """
        current = self.get(feature_id)
        deps = self._validate_dependencies(feature_id, dep_ids, self._features)

        candidate = dict(self._features)
        candidate[feature_id] = current.copy(dependencies=deps, updated_at=datetime.now())
        self._check_acyclic(candidate, feature_id)

        self._features = candidate
        logger.info(f"Set dependencies of {feature_id}: {deps}")
        return candidate[feature_id]

    def add_dependency(self, source_id: str, target_id: str) -> Feature:
        """
        Make target_id depend on source_id.

        Raises:
            ValidationError: Self edge, unknown id, or the edge already exists
            CycleError: If source_id already depends on target_id
        """
        if source_id == target_id:
            raise ValidationError("A feature cannot depend on itself")
        self.get(source_id)
        target = self.get(target_id)

        if dependency_exists(self._features, source_id, target_id):
            raise ValidationError(f"Dependency already exists: {target_id} depends on {source_id}")

        # set_dependencies runs the cycle check before committing
        return self.set_dependencies(target_id, target.dependencies + [source_id])

    def remove_dependency(self, source_id: str, target_id: str) -> bool:
        """Drop the edge "target_id depends on source_id". Returns False if absent."""
        target = self.get(target_id)
        if source_id not in target.dependencies:
            return False
        self.set_dependencies(target_id, [d for d in target.dependencies if d != source_id])
        return True

    def update_feature(self, feature_id: str, **fields: Any) -> Feature:
        """
        Apply a partial update.

        Only UPDATABLE_FIELDS may change; a dependencies change goes through
        set_dependencies so it is cycle-checked.
        """
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Cannot update field(s): {', '.join(sorted(unknown))}")

        current = self.get(feature_id)
        if 'dependencies' in fields:
            current = self.set_dependencies(feature_id, fields.pop('dependencies') or [])

        if fields:
            if 'priority' in fields:
                fields['priority'] = int(fields['priority'])
            updated = current.copy(updated_at=datetime.now(), **fields)
            self._features = {**self._features, feature_id: updated}
            current = updated
        return current

    def replace_state(self, feature: Feature) -> None:
        """
        Store a status/error change made by the scheduler.

        Dependencies must be unchanged; use the mutation methods for those.
        """
        existing = self.get(feature.id)
        if existing.dependencies != feature.dependencies:
            raise ValidationError(f"replace_state cannot change dependencies of {feature.id}")
        self._features = {**self._features, feature.id: feature}

    def remove_feature(self, feature_id: str, cascade: bool = False) -> Feature:
        """
        Remove a feature.

        Args:
            feature_id: Feature to remove
            cascade: Remove the edges from dependents instead of failing

        Raises:
            ConflictError: If other features depend on it and cascade is False
        """
        removed = self.get(feature_id)
        dependents = self.dependents_of(feature_id)
        if dependents and not cascade:
            raise ConflictError(
                f"Feature {feature_id} is a dependency of: {', '.join(dependents)}",
                dependents=dependents,
            )

        candidate = dict(self._features)
        del candidate[feature_id]
        for dependent_id in dependents:
            dependent = candidate[dependent_id]
            candidate[dependent_id] = dependent.copy(
                dependencies=[d for d in dependent.dependencies if d != feature_id],
                updated_at=datetime.now(),
            )
        self._features = candidate

        if dependents:
            logger.info(f"Removed feature {feature_id}, detached from {dependents}")
        else:
            logger.info(f"Removed feature {feature_id}")
        return removed

    def load(self, features: Iterable[Feature]) -> None:
        """
        Batch import (e.g. restoring a project).

        Features are inserted without edges first, then every edge is added
        one at a time in input order through the same checks as
        add_dependency. Any invalid edge aborts the import and the store is
        left as it was.
        """
        records = list(features)
        ids = [feature.id for feature in records]
        if len(set(ids)) != len(ids):
            raise ValidationError("Duplicate feature ids in import")

        saved = self._features
        try:
            staged: Dict[str, Feature] = dict(saved)
            for feature in records:
                staged[feature.id] = feature.copy(dependencies=[])
            self._features = staged

            for feature in records:
                for dep_id in feature.dependencies:
                    if dep_id not in self._features:
                        raise ValidationError(
                            f"Feature {feature.id} depends on unknown feature {dep_id}"
                        )
                    self.add_dependency(dep_id, feature.id)

            # Restore the imported records' own fields over the staged copies
            for feature in records:
                current = self._features[feature.id]
                self._features[feature.id] = feature.copy(dependencies=current.dependencies)
        except Exception:
            self._features = saved
            raise

        logger.info(f"Loaded {len(records)} features into graph store")
