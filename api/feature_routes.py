"""
Feature API Routes
==================

REST API endpoints for a project's feature graph and its scheduler.
Provides operations for creating, updating and deleting features, editing
dependency edges, and starting, stopping and resuming tasks.

Graph-integrity errors are returned synchronously on the same request:
- ValidationError -> 400 (404 for unknown feature ids)
- CycleError, ConflictError, NotEligibleError -> 409
- WorkspaceUnavailableError -> 503
"""

from typing import Any, Dict, List, Optional
import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

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
from featuregraph.graph.dependency_resolver import (
    critical_path,
    filter_for_workspace,
    resolve_execution_order,
    to_ascii,
    to_mermaid,
)
from featuregraph.models import Feature
from featuregraph.scheduling.registry import SchedulerRegistry
from featuregraph.scheduling.scheduler import ExecutionScheduler
from featuregraph.scheduling.workspace_binding import PRIMARY_KEY

logger = logging.getLogger(__name__)

router = APIRouter(tags=["features"])

_registry: Optional[SchedulerRegistry] = None


def configure_registry(registry: Optional[SchedulerRegistry]) -> None:
    """Install the registry the routes use (called by the app factory)."""
    global _registry
    _registry = registry


def get_registry() -> SchedulerRegistry:
    if _registry is None:
        raise HTTPException(status_code=503, detail="Scheduler registry not configured")
    return _registry


# =============================================================================
# Request/Response Models
# =============================================================================

class FeatureResponse(BaseModel):
    """Response model for a feature."""
    id: str
    title: str
    description: str
    status: str
    dependencies: List[str]
    branch_name: Optional[str] = None
    priority: int
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    error: Optional[str] = None
    reconciled: bool = False


class OpenProjectRequest(BaseModel):
    """Request model for opening a project."""
    project_path: str = Field(..., description="Path to the project checkout")


class FeatureCreateRequest(BaseModel):
    """Request model for creating a feature."""
    id: Optional[str] = Field(None, description="Feature id (generated when omitted)")
    title: str = ""
    description: str = ""
    dependencies: List[str] = Field(default_factory=list)
    branch_name: Optional[str] = Field(None, description="Workspace branch (primary when omitted)")
    priority: int = 0


class FeatureUpdateRequest(BaseModel):
    """Request model for a partial feature update."""
    title: Optional[str] = None
    description: Optional[str] = None
    dependencies: Optional[List[str]] = None
    branch_name: Optional[str] = None
    priority: Optional[int] = None


class SpawnRequest(BaseModel):
    """Request model for spawning a dependent feature."""
    title: str = ""
    description: str = ""
    priority: Optional[int] = None
    branch_name: Optional[str] = None


class DependencyRequest(BaseModel):
    """Request model for a dependency edge: target depends on source."""
    source_id: str = Field(..., description="Prerequisite feature")
    target_id: str = Field(..., description="Feature that depends on the source")


class GraphResponse(BaseModel):
    """Response model for the layered graph."""
    batches: List[List[str]]
    critical_path: List[str]
    rendering: Optional[str] = None


# =============================================================================
# Helper Functions
# =============================================================================

def _feature_response(feature: Feature) -> FeatureResponse:
    return FeatureResponse(**feature.to_dict())


def _http_error(e: FeatureGraphError) -> HTTPException:
    if isinstance(e, (FeatureNotFoundError, ProjectNotOpenError)):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, CycleError):
        return HTTPException(status_code=409, detail={'message': str(e), 'cycles': e.cycles})
    if isinstance(e, ConflictError):
        return HTTPException(status_code=409, detail={'message': str(e), 'dependents': e.dependents})
    if isinstance(e, NotEligibleError):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, ValidationError):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, WorkspaceUnavailableError):
        return HTTPException(status_code=503, detail=str(e))
    if isinstance(e, ExecutionError):
        return HTTPException(status_code=502, detail=str(e))
    return HTTPException(status_code=500, detail=str(e))


def get_scheduler(project_id: str, registry: SchedulerRegistry = Depends(get_registry)) -> ExecutionScheduler:
    try:
        return registry.get(project_id)
    except ProjectNotOpenError as e:
        raise _http_error(e)


# =============================================================================
# Project Endpoints
# =============================================================================

@router.post("/api/projects/{project_id}/open")
async def open_project(
    project_id: str,
    request: OpenProjectRequest,
    registry: SchedulerRegistry = Depends(get_registry)
) -> Dict[str, Any]:
    """
    Open a project: load its features, reconcile, start scheduling.
    """
    try:
        scheduler = await registry.open(project_id, request.project_path)
        return scheduler.get_status()
    except FeatureGraphError as e:
        raise _http_error(e)
    except Exception as e:
        logger.error(f"Failed to open project {project_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/api/projects/{project_id}/close")
async def close_project(project_id: str, registry: SchedulerRegistry = Depends(get_registry)):
    await registry.close(project_id)
    return {"message": f"Project {project_id} closed"}


@router.get("/api/projects/{project_id}/status")
async def get_status(scheduler: ExecutionScheduler = Depends(get_scheduler)) -> Dict[str, Any]:
    return scheduler.get_status()


@router.get("/api/projects/{project_id}/graph", response_model=GraphResponse)
async def get_graph(
    render: Optional[str] = Query(None, alias="format", pattern="^(ascii|mermaid)$"),
    scheduler: ExecutionScheduler = Depends(get_scheduler)
):
    """
    Get the layered execution order and critical path.

    Optionally includes an ASCII or Mermaid rendering.
    """
    snapshot = scheduler.store.snapshot()
    try:
        order = resolve_execution_order(snapshot)
        rendering = None
        if render == "ascii":
            rendering = to_ascii(snapshot)
        elif render == "mermaid":
            rendering = to_mermaid(snapshot)
        return GraphResponse(
            batches=order.batches,
            critical_path=critical_path(snapshot),
            rendering=rendering,
        )
    except FeatureGraphError as e:
        raise _http_error(e)


# =============================================================================
# Feature Endpoints
# =============================================================================

@router.get("/api/projects/{project_id}/features", response_model=List[FeatureResponse])
async def list_features(
    workspace: Optional[str] = Query(None, description="Only features shown for this workspace: 'primary' or a branch name"),
    scheduler: ExecutionScheduler = Depends(get_scheduler)
):
    """
    List features in admission order, optionally filtered to one workspace.
    """
    features = scheduler.store.features()
    if workspace is not None:
        viewing_primary = workspace == "primary"
        features = filter_for_workspace(
            features,
            current_branch=None if viewing_primary else workspace,
            viewing_primary=viewing_primary,
            is_primary_branch=lambda branch: scheduler.workspaces.key_for(branch) == PRIMARY_KEY,
        )
    features = sorted(features, key=lambda f: f.sort_key())
    return [_feature_response(f) for f in features]


@router.post("/api/projects/{project_id}/features", response_model=FeatureResponse, status_code=201)
async def create_feature(
    request: FeatureCreateRequest,
    scheduler: ExecutionScheduler = Depends(get_scheduler)
):
    """
    Create a feature. It is queued and admitted as soon as it is eligible.
    """
    try:
        feature = await scheduler.create_feature(
            title=request.title,
            description=request.description,
            dependencies=request.dependencies,
            branch_name=request.branch_name,
            priority=request.priority,
            feature_id=request.id,
        )
        return _feature_response(feature)
    except FeatureGraphError as e:
        raise _http_error(e)


@router.patch("/api/projects/{project_id}/features/{feature_id}", response_model=FeatureResponse)
async def update_feature(
    feature_id: str,
    request: FeatureUpdateRequest,
    scheduler: ExecutionScheduler = Depends(get_scheduler)
):
    """
    Partially update a feature. Dependency changes are cycle-checked.
    """
    fields = {
        key: value for key, value in request.model_dump(exclude_unset=True).items()
        if value is not None or key == "branch_name"
    }
    try:
        feature = await scheduler.update_feature(feature_id, **fields)
        return _feature_response(feature)
    except FeatureGraphError as e:
        raise _http_error(e)


@router.delete("/api/projects/{project_id}/features/{feature_id}")
async def delete_feature(
    feature_id: str,
    cascade: bool = Query(False, description="Detach dependents instead of failing"),
    scheduler: ExecutionScheduler = Depends(get_scheduler)
):
    try:
        await scheduler.delete_feature(feature_id, cascade=cascade)
        return {"message": f"Feature {feature_id} deleted"}
    except FeatureGraphError as e:
        raise _http_error(e)


@router.post("/api/projects/{project_id}/features/{feature_id}/start", response_model=FeatureResponse)
async def start_feature(feature_id: str, scheduler: ExecutionScheduler = Depends(get_scheduler)):
    try:
        return _feature_response(await scheduler.start(feature_id))
    except FeatureGraphError as e:
        raise _http_error(e)


@router.post("/api/projects/{project_id}/features/{feature_id}/stop", response_model=FeatureResponse)
async def stop_feature(feature_id: str, scheduler: ExecutionScheduler = Depends(get_scheduler)):
    """
    Stop a running feature. Returns once the agent acknowledged termination.
    """
    try:
        return _feature_response(await scheduler.stop(feature_id))
    except FeatureGraphError as e:
        raise _http_error(e)


@router.post("/api/projects/{project_id}/features/{feature_id}/resume", response_model=FeatureResponse)
async def resume_feature(feature_id: str, scheduler: ExecutionScheduler = Depends(get_scheduler)):
    try:
        return _feature_response(await scheduler.resume(feature_id))
    except FeatureGraphError as e:
        raise _http_error(e)


@router.post("/api/projects/{project_id}/features/{feature_id}/spawn", response_model=FeatureResponse, status_code=201)
async def spawn_feature(
    feature_id: str,
    request: SpawnRequest,
    scheduler: ExecutionScheduler = Depends(get_scheduler)
):
    """
    Create a new feature that depends on this one.
    """
    try:
        feature = await scheduler.spawn_task(
            feature_id,
            title=request.title,
            description=request.description,
            priority=request.priority,
            branch_name=request.branch_name,
        )
        return _feature_response(feature)
    except FeatureGraphError as e:
        raise _http_error(e)


@router.post("/api/projects/{project_id}/features/{feature_id}/clone", response_model=FeatureResponse, status_code=201)
async def clone_feature(feature_id: str, scheduler: ExecutionScheduler = Depends(get_scheduler)):
    try:
        return _feature_response(await scheduler.clone_feature(feature_id))
    except FeatureGraphError as e:
        raise _http_error(e)


# =============================================================================
# Dependency Endpoints
# =============================================================================

@router.post("/api/projects/{project_id}/dependencies", response_model=FeatureResponse)
async def add_dependency(
    request: DependencyRequest,
    scheduler: ExecutionScheduler = Depends(get_scheduler)
):
    """
    Add an edge: target depends on source. Rejected with 409 on a cycle.
    """
    try:
        feature = await scheduler.add_dependency(request.source_id, request.target_id)
        return _feature_response(feature)
    except FeatureGraphError as e:
        raise _http_error(e)


@router.delete("/api/projects/{project_id}/dependencies", response_model=FeatureResponse)
async def remove_dependency(
    source_id: str,
    target_id: str,
    scheduler: ExecutionScheduler = Depends(get_scheduler)
):
    try:
        feature = await scheduler.remove_dependency(source_id, target_id)
        return _feature_response(feature)
    except FeatureGraphError as e:
        raise _http_error(e)
