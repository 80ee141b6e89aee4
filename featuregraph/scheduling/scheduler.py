"""
Execution Scheduler
===================

Per-project coordinator that decides which queued features may run.

Key Features:
- Single writer: every status change, slot change and eligibility check runs
  under one asyncio lock per project
- Bounded concurrency: never more running slots than the budget
- Deterministic admission order (priority desc, created_at asc, id asc)
- Terminal reports from the execution collaborator arrive through an inbox
  queue consumed by one coordinator task
- Cooperative stop: a feature stays running until the collaborator
  acknowledges termination
- One-shot crash reconciliation on open: persisted `running` features become
  `stopped`

State machine per feature:
    queued -> running -> completed | failed | stopped
    stopped | failed -> queued   (explicit resume only)
"""

from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol
import asyncio
import logging
import time

from featuregraph.errors import (
    ConflictError,
    CycleError,
    ExecutionError,
    FeatureGraphError,
    NotEligibleError,
    ValidationError,
    WorkspaceUnavailableError,
)
from featuregraph.graph.dependency_resolver import resolve_execution_order
from featuregraph.graph.store import GraphStore
from featuregraph.models import (
    DEPENDENCY_CYCLE_REJECTED,
    TASK_COMPLETED,
    TASK_FAILED,
    TASK_QUEUED,
    TASK_STARTED,
    TASK_STOPPED,
    ExecutionSlot,
    Feature,
    FeatureStatus,
    SchedulerEvent,
    TerminalReport,
    WorkspaceHandle,
    new_feature_id,
)
from featuregraph.repository import FeatureRepository
from featuregraph.scheduling.workspace_binding import WorkspaceBinding

logger = logging.getLogger(__name__)


_ALLOWED_TRANSITIONS: Dict[FeatureStatus, set] = {
    FeatureStatus.QUEUED: {FeatureStatus.RUNNING},
    FeatureStatus.RUNNING: {FeatureStatus.COMPLETED, FeatureStatus.FAILED, FeatureStatus.STOPPED},
    FeatureStatus.STOPPED: {FeatureStatus.QUEUED},
    FeatureStatus.FAILED: {FeatureStatus.QUEUED},
    FeatureStatus.COMPLETED: set(),
}

RECONCILED_DETAIL = "reconciled after restart"


class AgentExecutor(Protocol):
    """External collaborator that runs a feature's agent in a workspace."""

    async def launch(
        self,
        feature: Feature,
        workspace: WorkspaceHandle,
        report: Callable[[TerminalReport], None],
    ) -> Any:
        """Start the task and return immediately; call report() when it ends."""
        ...

    async def terminate(self, feature_id: str) -> bool:
        """Request termination; return True once it is acknowledged."""
        ...


EventCallback = Callable[[Dict[str, Any]], Awaitable[None]]


class ExecutionScheduler:
    """
    Coordinator for one project's features.

    Event callbacks run while the coordinator lock is held and must not call
    back into the scheduler.
    """

    def __init__(
        self,
        project_id: str,
        project_path: str,
        executor: AgentExecutor,
        workspaces: WorkspaceBinding,
        store: Optional[GraphStore] = None,
        repository: Optional[FeatureRepository] = None,
        max_concurrency: int = 3,
        event_callback: Optional[EventCallback] = None,
        stop_ack_timeout: float = 30.0,
        stop_retries: int = 2,
        auto_resume_reconciled: bool = False,
    ):
        """
        Initialize the scheduler.

        Args:
            project_id: Project identifier (persistence key)
            project_path: Path to the project checkout
            executor: Agent-execution collaborator
            workspaces: Workspace binding for the project
            store: Graph store (a new empty one by default)
            repository: Durable feature storage (optional)
            max_concurrency: Concurrency budget
            event_callback: Async callable receiving event dicts
            stop_ack_timeout: Seconds to wait for each terminate acknowledgment
            stop_retries: Extra terminate attempts before giving up
            auto_resume_reconciled: Resume features stopped by reconciliation
        """
        if max_concurrency < 1:
            raise ValidationError(f"max_concurrency must be at least 1, got {max_concurrency}")

        self.project_id = project_id
        self.project_path = project_path
        self.executor = executor
        self.workspaces = workspaces
        self.store = store if store is not None else GraphStore()
        self.repository = repository
        self.max_concurrency = max_concurrency
        self.event_callback = event_callback
        self.stop_ack_timeout = stop_ack_timeout
        self.stop_retries = stop_retries
        self.auto_resume_reconciled = auto_resume_reconciled

        self.slots: Dict[str, ExecutionSlot] = {}
        self._lock = asyncio.Lock()
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._consumer: Optional[asyncio.Task] = None
        self._recovered = False

        logger.info(f"ExecutionScheduler initialized for project {project_id} (max_concurrency={max_concurrency})")

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def open(self) -> List[str]:
        """
        Open the project: reconcile, start the inbox consumer, run a pass.

        Returns:
            Feature ids admitted by the initial scheduling pass
        """
        await self.recover()
        if self._consumer is None or self._consumer.done():
            self._consumer = asyncio.create_task(self._consume_inbox())
        return await self.schedule()

    async def close(self) -> None:
        """Stop consuming reports. Running tasks are reconciled on next open."""
        if self._consumer:
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
            self._consumer = None
        if self.slots:
            logger.warning(f"Closing project {self.project_id} with {len(self.slots)} running task(s)")
        logger.info(f"ExecutionScheduler closed for project {self.project_id}")

    async def recover(self) -> List[str]:
        """
        One-shot startup reconciliation.

        Loads persisted features, then moves every feature persisted as
        `running` to `stopped` with the reconciled marker: no process survives
        a restart, so no slot can exist for it.

        Returns:
            Ids of reconciled features
        """
        reconciled: List[str] = []
        async with self._lock:
            if self._recovered:
                return reconciled

            if self.repository is not None:
                features = await self.repository.load_features(self.project_id)
                self.store.load(features)
                logger.info(f"Loaded {len(features)} persisted features for project {self.project_id}")

            for feature in self.store.features():
                if feature.status == FeatureStatus.RUNNING and feature.id not in self.slots:
                    stopped = await self._set_status(feature.id, FeatureStatus.STOPPED, reconciled=True)
                    reconciled.append(feature.id)
                    await self._emit(TASK_STOPPED, stopped, detail=RECONCILED_DETAIL)

            self._recovered = True

        if reconciled:
            logger.warning(f"Reconciled {len(reconciled)} feature(s) left running: {reconciled}")

        if self.auto_resume_reconciled:
            for feature_id in reconciled:
                try:
                    await self.resume(feature_id)
                except FeatureGraphError as e:
                    logger.warning(f"Auto-resume of {feature_id} failed: {e}")

        return reconciled

    async def set_max_concurrency(self, max_concurrency: int) -> List[str]:
        """Change the budget. Running tasks above a lowered budget keep running."""
        if max_concurrency < 1:
            raise ValidationError(f"max_concurrency must be at least 1, got {max_concurrency}")
        async with self._lock:
            self.max_concurrency = max_concurrency
            logger.info(f"Concurrency budget for {self.project_id} set to {max_concurrency}")
            return await self._schedule_locked()

    # =========================================================================
    # Internal helpers (call with the lock held)
    # =========================================================================

    async def _persist(self, feature: Feature) -> None:
        if self.repository is not None:
            await self.repository.save_feature(self.project_id, feature)

    async def _emit(self, event_type: str, feature: Feature, detail: Optional[str] = None) -> None:
        event = SchedulerEvent(
            type=event_type,
            feature_id=feature.id,
            status=feature.status.value,
            detail=detail,
        )
        logger.info(
            f"{event_type}: {feature.id} ({feature.status.value})",
            extra={'project_id': self.project_id, 'feature_id': feature.id, 'event': event_type},
        )
        if self.event_callback:
            try:
                await self.event_callback(event.to_dict())
            except Exception as e:
                logger.error(f"Event callback failed for {event_type}: {e}", exc_info=True)

    async def _set_status(self, feature_id: str, status: FeatureStatus, **changes: Any) -> Feature:
        current = self.store.get(feature_id)
        if status not in _ALLOWED_TRANSITIONS[current.status]:
            raise NotEligibleError(
                f"Invalid transition for {feature_id}: {current.status.value} -> {status.value}"
            )
        updated = current.copy(status=status, updated_at=datetime.now(), **changes)
        # Durable first: a failed save leaves the store on the old status
        await self._persist(updated)
        self.store.replace_state(updated)
        return updated

    def _unmet_dependencies(self, feature: Feature) -> List[str]:
        return [
            dep_id for dep_id in feature.dependencies
            if self.store.get(dep_id).status != FeatureStatus.COMPLETED
        ]

    def _budget_available(self) -> bool:
        return len(self.slots) < self.max_concurrency

    async def _admit(self, feature: Feature) -> bool:
        """
        Move an eligible feature into a running slot.

        Returns:
            False if the launch failed and the feature was marked failed

        Raises:
            WorkspaceUnavailableError: Feature stays queued
            Exception: Persisting the running state failed; feature stays queued
        """
        handle = await self.workspaces.acquire(feature.branch_name, holder=feature.id)

        try:
            running = await self._set_status(feature.id, FeatureStatus.RUNNING, error=None, reconciled=False)
        except Exception:
            await self._release_workspace(feature)
            raise
        slot = ExecutionSlot(feature_id=feature.id, workspace=handle, started_at=time.monotonic())
        self.slots[feature.id] = slot

        try:
            slot.subscription = await self.executor.launch(running, handle, self.report)
        except Exception as e:
            logger.error(f"Launch of {feature.id} failed: {e}", exc_info=True)
            try:
                failed = await self._set_status(
                    feature.id, FeatureStatus.FAILED, error=f"Launch failed: {e}"
                )
            except Exception:
                # Nothing was launched: put the feature back in the queue
                del self.slots[feature.id]
                self.store.replace_state(feature)
                await self._release_workspace(feature)
                raise
            del self.slots[feature.id]
            await self._emit(TASK_FAILED, failed, detail=failed.error)
            return False

        await self._emit(TASK_STARTED, running)
        return True

    async def _schedule_locked(self) -> List[str]:
        if not self._budget_available():
            return []

        candidates = sorted(
            (
                feature for feature in self.store.features()
                if feature.status == FeatureStatus.QUEUED
                and feature.id not in self.slots
                and not self._unmet_dependencies(feature)
            ),
            key=lambda f: f.sort_key(),
        )

        admitted: List[str] = []
        for feature in candidates:
            if not self._budget_available():
                break
            try:
                if await self._admit(feature):
                    admitted.append(feature.id)
            except WorkspaceUnavailableError as e:
                logger.warning(f"Feature {feature.id} stays queued: {e}")
            except Exception as e:
                logger.error(f"Admission of {feature.id} failed, stays queued: {e}", exc_info=True)

        if admitted:
            logger.info(f"Scheduling pass admitted {admitted} ({len(self.slots)}/{self.max_concurrency} running)")
        return admitted

    async def _release_workspace(self, feature: Feature) -> None:
        if not self.workspaces.holds(feature.branch_name, feature.id):
            return
        try:
            await self.workspaces.release(feature.branch_name, holder=feature.id)
        except Exception as e:
            logger.error(f"Failed to release workspace for {feature.id}: {e}", exc_info=True)

    async def _reject_cycle(self, feature_id: str, error: CycleError) -> None:
        if feature_id in self.store:
            await self._emit(DEPENDENCY_CYCLE_REJECTED, self.store.get(feature_id), detail=str(error))

    # =========================================================================
    # Scheduling actions
    # =========================================================================

    async def schedule(self) -> List[str]:
        """
        Run one scheduling pass.

        Admits eligible features in tie-break order until the budget is full.
        Idempotent: a second pass with no state change admits nothing.

        Returns:
            Ids of admitted features
        """
        async with self._lock:
            return await self._schedule_locked()

    async def start(self, feature_id: str) -> Feature:
        """
        Explicitly start a queued feature.

        Raises:
            NotEligibleError: Not queued, dependencies unmet, or budget full
            WorkspaceUnavailableError: Workspace could not be acquired; stays queued
            ExecutionError: The collaborator failed to launch it; now failed
        """
        async with self._lock:
            feature = self.store.get(feature_id)
            if feature.status != FeatureStatus.QUEUED:
                raise NotEligibleError(f"Feature {feature_id} is {feature.status.value}, not queued")
            unmet = self._unmet_dependencies(feature)
            if unmet:
                raise NotEligibleError(f"Feature {feature_id} is waiting on: {', '.join(unmet)}")
            if not self._budget_available():
                raise NotEligibleError(
                    f"Concurrency budget full ({len(self.slots)}/{self.max_concurrency})"
                )

            if not await self._admit(feature):
                raise ExecutionError(self.store.get(feature_id).error or f"Launch of {feature_id} failed")

            await self._schedule_locked()
            return self.store.get(feature_id)

    async def stop(self, feature_id: str) -> Feature:
        """
        Stop a running feature cooperatively.

        The feature stays `running` until the collaborator acknowledges
        termination; only then is the slot freed. The workspace handle is kept
        for a later resume.

        Raises:
            NotEligibleError: Not running, or a stop is already pending
            ExecutionError: Termination was never acknowledged; still running
                unless the task reported a failure meanwhile
        """
        async with self._lock:
            feature = self.store.get(feature_id)
            slot = self.slots.get(feature_id)
            if feature.status != FeatureStatus.RUNNING or slot is None:
                raise NotEligibleError(f"Feature {feature_id} is {feature.status.value}, not running")
            if slot.stopping:
                raise NotEligibleError(f"Stop already pending for {feature_id}")
            slot.stopping = True

        acknowledged = False
        last_error = None
        try:
            for attempt in range(1, self.stop_retries + 2):
                try:
                    acknowledged = bool(await asyncio.wait_for(
                        self.executor.terminate(feature_id),
                        timeout=self.stop_ack_timeout,
                    ))
                    if not acknowledged:
                        last_error = "terminate was not acknowledged"
                except asyncio.TimeoutError:
                    last_error = f"no acknowledgment within {self.stop_ack_timeout}s"
                except Exception as e:
                    last_error = str(e)
                if acknowledged:
                    break
                logger.warning(f"Stop attempt {attempt} for {feature_id} failed: {last_error}")
        finally:
            if not acknowledged:
                slot.stopping = False

        if not acknowledged:
            async with self._lock:
                held = slot.pending_failure
                slot.pending_failure = None
                if held is not None and self.slots.get(feature_id) is slot:
                    # The task died on its own while the stop went unanswered
                    await self._finish_locked(slot, held)
            raise ExecutionError(f"Stop of {feature_id} was not acknowledged: {last_error}")

        async with self._lock:
            if self.slots.get(feature_id) is not slot:
                # Reached a terminal state while the stop was pending
                logger.info(f"Feature {feature_id} finished before stop took effect")
                return self.store.get(feature_id)

            stopped = await self._set_status(feature_id, FeatureStatus.STOPPED)
            del self.slots[feature_id]
            await self._emit(TASK_STOPPED, stopped)
            await self._schedule_locked()
            return self.store.get(feature_id)

    async def resume(self, feature_id: str) -> Feature:
        """
        Re-queue a stopped or failed feature and try to admit it at once.

        Dependencies are re-validated against the current graph first; if
        they are no longer all completed the feature waits in the queue.

        Raises:
            NotEligibleError: Feature is not stopped or failed
            CycleError / ValidationError: Current graph is invalid
        """
        async with self._lock:
            feature = self.store.get(feature_id)
            if not feature.status.is_resumable:
                raise NotEligibleError(
                    f"Feature {feature_id} is {feature.status.value}; only stopped or failed features resume"
                )

            resolve_execution_order(self.store.snapshot())

            queued = await self._set_status(feature_id, FeatureStatus.QUEUED, error=None, reconciled=False)
            await self._emit(TASK_QUEUED, queued)

            unmet = self._unmet_dependencies(queued)
            if unmet:
                logger.info(f"Resumed {feature_id} is waiting on: {', '.join(unmet)}")

            await self._schedule_locked()
            return self.store.get(feature_id)

    # =========================================================================
    # Terminal reports
    # =========================================================================

    def report(self, report: TerminalReport) -> None:
        """Callback handed to the collaborator. Never touches state directly."""
        self._inbox.put_nowait(report)

    async def _consume_inbox(self) -> None:
        while True:
            report = await self._inbox.get()
            try:
                await self.handle_report(report)
            except Exception as e:
                logger.error(f"Failed to handle report for {report.feature_id}: {e}", exc_info=True)
            finally:
                self._inbox.task_done()

    async def process_pending(self) -> int:
        """Handle every queued report inline. Returns how many were handled."""
        handled = 0
        while not self._inbox.empty():
            report = self._inbox.get_nowait()
            try:
                await self.handle_report(report)
            finally:
                self._inbox.task_done()
            handled += 1
        return handled

    async def wait_idle(self) -> None:
        """Wait until every delivered report has been handled."""
        if self._consumer is not None and not self._consumer.done():
            await self._inbox.join()
        else:
            await self.process_pending()

    async def handle_report(self, report: TerminalReport) -> Optional[Feature]:
        """
        Apply a terminal report.

        Completed features release their workspace; failed ones keep it for a
        resume. Reports for features without a slot are ignored, so a slot is
        never freed twice. A failure reported while a stop is pending is held
        on the slot: an acknowledged stop supersedes it, an unacknowledged one
        applies it.
        """
        async with self._lock:
            slot = self.slots.get(report.feature_id)
            if slot is None:
                logger.info(f"Ignoring report for {report.feature_id}: no running slot")
                return None
            if slot.stopping and not report.success:
                logger.info(f"Holding failure report for {report.feature_id}: stop pending")
                slot.pending_failure = report
                return None

            return await self._finish_locked(slot, report)

    async def _finish_locked(self, slot: ExecutionSlot, report: TerminalReport) -> Feature:
        duration = time.monotonic() - slot.started_at

        if report.success:
            completed = await self._set_status(report.feature_id, FeatureStatus.COMPLETED, error=None)
            del self.slots[report.feature_id]
            await self._release_workspace(completed)
            await self._emit(TASK_COMPLETED, completed)
            logger.info(f"Feature {report.feature_id} completed in {duration:.1f}s")
        else:
            failed = await self._set_status(
                report.feature_id, FeatureStatus.FAILED, error=report.error or "Task failed"
            )
            del self.slots[report.feature_id]
            await self._emit(TASK_FAILED, failed, detail=failed.error)
            logger.warning(f"Feature {report.feature_id} failed after {duration:.1f}s: {failed.error}")

        await self._schedule_locked()
        return self.store.get(report.feature_id)

    # =========================================================================
    # Graph mutations (each followed by a scheduling pass)
    # =========================================================================

    async def _create_locked(self, feature: Feature) -> Feature:
        if feature.id in self.store:
            raise ValidationError(f"Feature already exists: {feature.id}")
        created = self.store.upsert_feature(feature)
        await self._persist(created)
        logger.info(f"Created feature {created.id} (deps={created.dependencies}, branch={created.branch_name})")
        await self._schedule_locked()
        return self.store.get(created.id)

    async def create_feature(
        self,
        title: str = "",
        description: str = "",
        dependencies: Optional[List[str]] = None,
        branch_name: Optional[str] = None,
        priority: int = 0,
        feature_id: Optional[str] = None,
    ) -> Feature:
        """
        Create a queued feature.

        Raises:
            ValidationError: Duplicate id, self or unknown dependencies
        """
        feature = Feature(
            id=feature_id or new_feature_id(),
            title=title,
            description=description,
            dependencies=list(dependencies or []),
            branch_name=branch_name,
            priority=priority,
        )
        async with self._lock:
            return await self._create_locked(feature)

    async def spawn_task(
        self,
        parent_id: str,
        title: str = "",
        description: str = "",
        priority: Optional[int] = None,
        branch_name: Optional[str] = None,
    ) -> Feature:
        """Create a feature that depends on parent_id, on the parent's branch by default."""
        async with self._lock:
            parent = self.store.get(parent_id)
            feature = Feature(
                id=new_feature_id(),
                title=title,
                description=description,
                dependencies=[parent_id],
                branch_name=branch_name if branch_name is not None else parent.branch_name,
                priority=parent.priority if priority is None else priority,
            )
            return await self._create_locked(feature)

    async def clone_feature(self, feature_id: str) -> Feature:
        """Copy a feature into a new queued one. The way to re-run completed work."""
        async with self._lock:
            source = self.store.get(feature_id)
            feature = Feature(
                id=new_feature_id(),
                title=source.title,
                description=source.description,
                dependencies=list(source.dependencies),
                branch_name=source.branch_name,
                priority=source.priority,
            )
            return await self._create_locked(feature)

    async def update_feature(self, feature_id: str, **fields: Any) -> Feature:
        """
        Apply a partial update.

        Raises:
            ValidationError: Unknown fields or invalid dependencies
            CycleError: Dependency change would close a cycle (event emitted)
            ConflictError: Changing the branch of a running feature
        """
        async with self._lock:
            if 'branch_name' in fields and feature_id in self.slots:
                raise ConflictError(f"Cannot change the branch of running feature {feature_id}")
            try:
                updated = self.store.update_feature(feature_id, **fields)
            except CycleError as e:
                await self._reject_cycle(feature_id, e)
                raise
            await self._persist(updated)
            await self._schedule_locked()
            return self.store.get(feature_id)

    async def delete_feature(self, feature_id: str, cascade: bool = False) -> Feature:
        """
        Delete a feature.

        Args:
            feature_id: Feature to delete
            cascade: Detach dependents instead of failing

        Raises:
            ConflictError: Feature is running, or has dependents and cascade is False
        """
        async with self._lock:
            feature = self.store.get(feature_id)
            if feature_id in self.slots:
                raise ConflictError(f"Feature {feature_id} is running; stop it before deleting")

            dependents = self.store.dependents_of(feature_id)
            removed = self.store.remove_feature(feature_id, cascade=cascade)
            await self._release_workspace(feature)

            if self.repository is not None:
                await self.repository.delete_feature(self.project_id, feature_id)
                for dependent_id in dependents:
                    await self._persist(self.store.get(dependent_id))

            await self._schedule_locked()
            return removed

    async def add_dependency(self, source_id: str, target_id: str) -> Feature:
        """
        Make target_id depend on source_id.

        Raises:
            ValidationError: Self edge, unknown id or existing edge
            CycleError: The edge would close a cycle (event emitted)
        """
        async with self._lock:
            try:
                updated = self.store.add_dependency(source_id, target_id)
            except CycleError as e:
                logger.warning(f"Rejected dependency {source_id} -> {target_id}: {e}")
                await self._reject_cycle(target_id, e)
                raise
            await self._persist(updated)
            await self._schedule_locked()
            return updated

    async def remove_dependency(self, source_id: str, target_id: str) -> Feature:
        async with self._lock:
            if self.store.remove_dependency(source_id, target_id):
                await self._persist(self.store.get(target_id))
                await self._schedule_locked()
            return self.store.get(target_id)

    # =========================================================================
    # Status
    # =========================================================================

    def get_status(self) -> Dict[str, Any]:
        """
        Get current scheduler status.

        Returns:
            Dict with budget, running slots (with durations) and per-status counts
        """
        counts = {status.value: 0 for status in FeatureStatus}
        for feature in self.store.features():
            counts[feature.status.value] += 1

        now = time.monotonic()
        return {
            'project_id': self.project_id,
            'max_concurrency': self.max_concurrency,
            'running': [
                {
                    'feature_id': slot.feature_id,
                    'workspace': slot.workspace.path,
                    'branch_name': slot.workspace.branch_name,
                    'duration': now - slot.started_at,
                    'stopping': slot.stopping,
                }
                for slot in self.slots.values()
            ],
            'active_count': len(self.slots),
            'counts': counts,
        }
