"""
Feature Repository
==================

Durable storage interface for feature records. Execution slots are never
stored; they are rebuilt by reconciliation on startup.
"""

from copy import deepcopy
from typing import Dict, List, Protocol

from featuregraph.models import Feature


class FeatureRepository(Protocol):
    """Persistence collaborator used by the scheduler."""

    async def load_features(self, project_id: str) -> List[Feature]:
        ...

    async def save_feature(self, project_id: str, feature: Feature) -> None:
        ...

    async def delete_feature(self, project_id: str, feature_id: str) -> None:
        ...


class InMemoryFeatureRepository:
    """Dict-backed repository for tests and database-less runs."""

    def __init__(self):
        self._projects: Dict[str, Dict[str, Feature]] = {}

    async def load_features(self, project_id: str) -> List[Feature]:
        records = self._projects.get(project_id, {})
        return [deepcopy(feature) for feature in records.values()]

    async def save_feature(self, project_id: str, feature: Feature) -> None:
        self._projects.setdefault(project_id, {})[feature.id] = deepcopy(feature)

    async def delete_feature(self, project_id: str, feature_id: str) -> None:
        self._projects.get(project_id, {}).pop(feature_id, None)
