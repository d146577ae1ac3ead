from fastapi import APIRouter, Depends, Header, status
from sqlalchemy.ext.asyncio import AsyncSession
from knowflow.database import get_db
from knowflow.schemas.execution import (
    CancelExecutionRequest,
    ExecutionRecord,
    ExecutionSummary,
    WorkflowExecuteRequest,
    WorkflowExecuteResponse,
    NodeSnapshot,
    WorkflowStats,
)
from knowflow.services import execution_service
from knowflow.services.cancel_registry import CancelRegistry, get_cancel_registry
from knowflow.services.execution_service import ExecutionStore
from knowflow.services.validation_service import ValidationService
from knowflow.services.workflow_service import WorkflowService
from celery_app.tasks import execute_workflow_task
from typing import List, Optional
import uuid

router = APIRouter()

@router.post(
    "/workflows/{workflow_id}/execute",
    response_model=WorkflowExecuteResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def execute_workflow(
    workflow_id: str,
    request: WorkflowExecuteRequest,
    x_user_id: Optional[str] = Header(None),
    db: AsyncSession = Depends(get_db)
):
    workflow = await WorkflowService.get_definition(db, workflow_id)
    # Configuration errors surface here, before any execution record exists
    ValidationService.ensure_executable(workflow)

    record = ExecutionRecord(
        id=str(uuid.uuid4()),
        workflow_id=workflow_id,
        user_id=x_user_id or workflow.user_id,
        input=request.input_data,
        trigger_source=request.trigger_source,
    )
    await ExecutionStore(db).put(record)

    # Trigger Celery task
    execute_workflow_task.delay(
        record.id,
        workflow_id,
        request.input_data,
        record.user_id,
        request.document_id,
        request.dataset_id,
    )

    return WorkflowExecuteResponse(execution_id=record.id, status=record.status, message="Execution queued")

@router.post("/workflows/{workflow_id}/execute/sync", response_model=ExecutionRecord)
async def execute_workflow_sync(
    workflow_id: str,
    request: WorkflowExecuteRequest,
    x_user_id: Optional[str] = Header(None),
    db: AsyncSession = Depends(get_db),
    registry: CancelRegistry = Depends(get_cancel_registry),
):
    """Run the workflow inside the request and return the finished record."""
    workflow = await WorkflowService.get_definition(db, workflow_id)
    ValidationService.ensure_executable(workflow)

    record = ExecutionRecord(
        id=str(uuid.uuid4()),
        workflow_id=workflow_id,
        user_id=x_user_id or workflow.user_id,
        input=request.input_data,
        trigger_source=request.trigger_source,
    )
    await ExecutionStore(db).put(record)
    return await execution_service.run_execution(
        db,
        registry,
        record.id,
        document_id=request.document_id,
        dataset_id=request.dataset_id,
    )

@router.get("/workflows/{workflow_id}/executions", response_model=List[ExecutionSummary])
async def get_workflow_executions(
    workflow_id: str,
    skip: int = 0,
    limit: int = 20,
    db: AsyncSession = Depends(get_db)
):
    await WorkflowService.get_or_404(db, workflow_id)
    return await ExecutionStore(db).list_for_workflow(workflow_id, skip=skip, limit=limit)

@router.get("/workflows/{workflow_id}/stats", response_model=WorkflowStats)
async def get_workflow_stats(
    workflow_id: str,
    db: AsyncSession = Depends(get_db)
):
    await WorkflowService.get_or_404(db, workflow_id)
    return await ExecutionStore(db).stats_for_workflow(workflow_id)

@router.get("/executions/{execution_id}", response_model=ExecutionRecord)
async def get_execution_status(
    execution_id: str,
    db: AsyncSession = Depends(get_db)
):
    return await ExecutionStore(db).get_or_404(execution_id)

@router.get("/executions/{execution_id}/snapshots", response_model=List[NodeSnapshot])
async def get_execution_snapshots(
    execution_id: str,
    db: AsyncSession = Depends(get_db)
):
    return (await ExecutionStore(db).get_or_404(execution_id)).node_snapshots

@router.get("/executions/{execution_id}/snapshots/{node_id}", response_model=NodeSnapshot)
async def get_node_snapshot(
    execution_id: str,
    node_id: str,
    db: AsyncSession = Depends(get_db)
):
    return await ExecutionStore(db).get_snapshot(execution_id, node_id)

@router.post("/executions/{execution_id}/cancel", response_model=ExecutionRecord)
async def cancel_execution(
    execution_id: str,
    request: Optional[CancelExecutionRequest] = None,
    db: AsyncSession = Depends(get_db),
    registry: CancelRegistry = Depends(get_cancel_registry),
):
    reason = request.reason if request else None
    return await execution_service.request_cancel(db, registry, execution_id, reason)

@router.post("/executions/{execution_id}/pause", response_model=ExecutionRecord)
async def pause_execution(
    execution_id: str,
    db: AsyncSession = Depends(get_db),
    registry: CancelRegistry = Depends(get_cancel_registry),
):
    return await execution_service.request_pause(db, registry, execution_id)

@router.post("/executions/{execution_id}/resume", response_model=ExecutionRecord)
async def resume_execution(
    execution_id: str,
    db: AsyncSession = Depends(get_db),
    registry: CancelRegistry = Depends(get_cancel_registry),
):
    return await execution_service.request_resume(db, registry, execution_id)
