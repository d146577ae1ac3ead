from datetime import datetime, timezone
from typing import List, Optional, Any

from fastapi.encoders import jsonable_encoder
from sqlalchemy import case, desc, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from knowflow.core.exceptions import ConfigurationError, ExecutionNotFound, SnapshotNotFound
from knowflow.core.logging import get_logger
from knowflow.engine.control import ensure_transition
from knowflow.engine.executor import WorkflowExecutor
from knowflow.models.execution import NodeExecution, WorkflowExecution
from knowflow.schemas.execution import (
    ExecutionProgress,
    ExecutionRecord,
    ExecutionStatus,
    ExecutionSummary,
    NodeSnapshot,
    TERMINAL_STATUSES,
    WorkflowStats,
)
from knowflow.services.cancel_registry import CancelRegistry, RegistryExecutionControl
from knowflow.services.notification_service import Notifier, get_notifier
from knowflow.services.workflow_service import WorkflowService

logger = get_logger("services.execution")

_TERMINAL_VALUES = {s.value for s in TERMINAL_STATUSES}


def _to_record(row: WorkflowExecution) -> ExecutionRecord:
    return ExecutionRecord(
        id=row.id,
        workflow_id=row.workflow_id,
        user_id=row.user_id,
        status=row.status,
        input=row.input,
        progress=ExecutionProgress.model_validate(row.progress or {}),
        node_snapshots=[NodeSnapshot.model_validate(s) for s in row.node_snapshots],
        error=row.error,
        cancellation_reason=row.cancellation_reason,
        trigger_source=row.trigger_source,
        started_at=row.started_at,
        completed_at=row.completed_at,
        duration_ms=row.duration_ms,
    )


class ExecutionStore:
    """
    Persists execution records and their node snapshots. A terminal status
    already in the database is never replaced by a different one.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, execution_id: str) -> Optional[ExecutionRecord]:
        row = await self.db.get(WorkflowExecution, execution_id, populate_existing=True)
        return _to_record(row) if row else None

    async def get_or_404(self, execution_id: str) -> ExecutionRecord:
        record = await self.get(execution_id)
        if record is None:
            raise ExecutionNotFound(execution_id)
        return record

    async def put(self, record: ExecutionRecord) -> bool:
        row = await self.db.get(WorkflowExecution, record.id, populate_existing=True)
        if row is None:
            row = WorkflowExecution(id=record.id, workflow_id=record.workflow_id)
            self.db.add(row)
        elif row.status in _TERMINAL_VALUES and row.status != record.status.value:
            logger.warning(
                f"Ignoring update of execution {record.id}: already {row.status}, got {record.status.value}"
            )
            return False

        row.user_id = record.user_id
        row.status = record.status.value
        row.input = jsonable_encoder(record.input)
        row.progress = record.progress.model_dump(mode="json")
        row.error = record.error
        row.cancellation_reason = record.cancellation_reason
        row.trigger_source = record.trigger_source
        row.started_at = record.started_at
        row.completed_at = record.completed_at
        row.duration_ms = record.duration_ms
        row.node_snapshots = [
            NodeExecution(
                position=position,
                node_id=s.node_id,
                node_name=s.node_name,
                node_type=s.node_type,
                status=s.status.value,
                output=jsonable_encoder(s.output),
                metrics=jsonable_encoder(s.metrics),
                error=s.error,
                warnings=list(s.warnings),
                attempts=s.attempts,
                skip_reason=s.skip_reason,
                started_at=s.started_at,
                completed_at=s.completed_at,
                duration_ms=s.duration_ms,
                rollback_status=s.rollback_status.value if s.rollback_status else None,
                rollback_error=s.rollback_error,
            )
            for position, s in enumerate(record.node_snapshots)
        ]
        await self.db.commit()
        return True

    async def list_for_workflow(self, workflow_id: str, skip: int = 0, limit: int = 20) -> List[ExecutionSummary]:
        query = (
            select(WorkflowExecution)
            .where(WorkflowExecution.workflow_id == workflow_id)
            .order_by(desc(WorkflowExecution.created_at))
            .offset(skip)
            .limit(limit)
        )
        result = await self.db.execute(query)
        return [ExecutionSummary.model_validate(row) for row in result.scalars().all()]

    async def get_snapshot(self, execution_id: str, node_id: str) -> NodeSnapshot:
        record = await self.get_or_404(execution_id)
        snapshot = record.snapshot_for(node_id)
        if snapshot is None:
            raise SnapshotNotFound(execution_id, node_id)
        return snapshot

    async def stats_for_workflow(self, workflow_id: str) -> WorkflowStats:
        query = select(
            func.count(WorkflowExecution.id),
            func.count(case((WorkflowExecution.status == ExecutionStatus.COMPLETED.value, 1))),
            func.count(case((WorkflowExecution.status == ExecutionStatus.FAILED.value, 1))),
            # Unfinished executions have no duration and are left out of the average
            func.avg(WorkflowExecution.duration_ms),
            func.max(WorkflowExecution.started_at),
        ).where(WorkflowExecution.workflow_id == workflow_id)
        total, completed, failed, average, last_started = (await self.db.execute(query)).one()
        return WorkflowStats(
            total_executions=total,
            successful_executions=completed,
            failed_executions=failed,
            average_duration_ms=float(average or 0),
            last_execution_at=last_started,
        )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


async def request_cancel(
    db: AsyncSession, registry: CancelRegistry, execution_id: str, reason: Optional[str] = None
) -> ExecutionRecord:
    """
    Mark the execution cancelled right away and raise the flag the worker
    polls; the worker fills in per-node snapshots when it notices.
    """
    store = ExecutionStore(db)
    record = await store.get_or_404(execution_id)
    ensure_transition(record.status, ExecutionStatus.CANCELLED)

    await registry.request_cancel(execution_id, reason)
    record.status = ExecutionStatus.CANCELLED
    record.cancellation_reason = reason
    record.progress.message = "Execution cancelled"
    record.completed_at = _utcnow()
    if record.started_at:
        started_at = record.started_at
        if started_at.tzinfo is None:
            started_at = started_at.replace(tzinfo=timezone.utc)
        record.duration_ms = int((record.completed_at - started_at).total_seconds() * 1000)
    await store.put(record)
    logger.info(f"Cancellation requested for execution {execution_id}", extra={"reason": reason})
    return record


async def request_pause(db: AsyncSession, registry: CancelRegistry, execution_id: str) -> ExecutionRecord:
    store = ExecutionStore(db)
    record = await store.get_or_404(execution_id)
    ensure_transition(record.status, ExecutionStatus.PAUSED)

    await registry.set_paused(execution_id, True)
    record.status = ExecutionStatus.PAUSED
    record.progress.message = "Pause requested"
    await store.put(record)
    return record


async def request_resume(db: AsyncSession, registry: CancelRegistry, execution_id: str) -> ExecutionRecord:
    store = ExecutionStore(db)
    record = await store.get_or_404(execution_id)
    ensure_transition(record.status, ExecutionStatus.RUNNING)

    await registry.set_paused(execution_id, False)
    record.status = ExecutionStatus.RUNNING
    record.progress.message = "Resume requested"
    await store.put(record)
    return record


async def run_execution(
    db: AsyncSession,
    registry: CancelRegistry,
    execution_id: str,
    *,
    input_data: Any = None,
    document_id: Optional[str] = None,
    dataset_id: Optional[str] = None,
    notifier: Optional[Notifier] = None,
) -> ExecutionRecord:
    """Run a queued execution to completion, persisting every update."""
    store = ExecutionStore(db)
    record = await store.get_or_404(execution_id)
    if record.is_terminal:
        logger.info(f"Execution {execution_id} is already {record.status.value}, nothing to run")
        return record

    workflow = await WorkflowService.get_definition(db, record.workflow_id)

    async def persist(updated: ExecutionRecord) -> None:
        await store.put(updated)

    executor = WorkflowExecutor(
        workflow,
        notifier=notifier or get_notifier(),
        control=RegistryExecutionControl(registry, execution_id),
        on_update=persist,
    )

    try:
        try:
            executor.prepare()
        except ConfigurationError as e:
            # The workflow changed after it was queued
            logger.error(f"Execution {execution_id} cannot start: {e}")
            ensure_transition(record.status, ExecutionStatus.FAILED)
            record.status = ExecutionStatus.FAILED
            record.error = str(e)
            record.completed_at = _utcnow()
            await store.put(record)
            return record

        try:
            await executor.run(
                input_data if input_data is not None else record.input,
                execution=record,
                document_id=document_id,
                dataset_id=dataset_id,
            )
            # The record is already stored; only the worker waits on the webhook
            await executor.wait_for_notifications()
            return record
        except Exception as e:
            logger.error(f"Workflow execution failed: {execution_id} error={e}", exc_info=True)
            if not record.is_terminal:
                record.status = ExecutionStatus.FAILED
                record.error = f"{type(e).__name__}: {e}"
                record.completed_at = _utcnow()
                await store.put(record)
            return record
    finally:
        await registry.clear(execution_id)
