from fastapi import APIRouter, Depends, Header, status
from sqlalchemy.ext.asyncio import AsyncSession
from knowflow.database import get_db
from knowflow.services.workflow_service import WorkflowService
from knowflow.services.validation_service import ValidationService
from knowflow.schemas.workflow import WorkflowCreate, WorkflowUpdate, WorkflowInDB, WorkflowSummary
from typing import List, Optional

router = APIRouter()

@router.get("", response_model=List[WorkflowSummary])
async def get_workflows(
    skip: int = 0,
    limit: int = 100,
    is_active: Optional[bool] = None,
    x_user_id: Optional[str] = Header(None),
    db: AsyncSession = Depends(get_db)
):
    return await WorkflowService.get_all(db, skip=skip, limit=limit, is_active=is_active, user_id=x_user_id)

@router.post("", response_model=WorkflowInDB, status_code=status.HTTP_201_CREATED)
async def create_workflow(
    workflow_in: WorkflowCreate,
    x_user_id: Optional[str] = Header(None),
    db: AsyncSession = Depends(get_db)
):
    return await WorkflowService.create(db, workflow_in, user_id=x_user_id)

@router.get("/{workflow_id}", response_model=WorkflowInDB)
async def get_workflow(
    workflow_id: str,
    db: AsyncSession = Depends(get_db)
):
    return await WorkflowService.get_or_404(db, workflow_id)

@router.put("/{workflow_id}", response_model=WorkflowInDB)
async def update_workflow(
    workflow_id: str,
    workflow_in: WorkflowUpdate,
    db: AsyncSession = Depends(get_db)
):
    return await WorkflowService.update(db, workflow_id, workflow_in)

@router.delete("/{workflow_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_workflow(
    workflow_id: str,
    db: AsyncSession = Depends(get_db)
):
    await WorkflowService.delete(db, workflow_id)

@router.post("/{workflow_id}/duplicate", response_model=WorkflowInDB, status_code=status.HTTP_201_CREATED)
async def duplicate_workflow(
    workflow_id: str,
    x_user_id: Optional[str] = Header(None),
    db: AsyncSession = Depends(get_db)
):
    return await WorkflowService.duplicate(db, workflow_id, user_id=x_user_id)

@router.delete("/{workflow_id}/nodes/{node_id}", response_model=WorkflowInDB)
async def delete_workflow_node(
    workflow_id: str,
    node_id: str,
    db: AsyncSession = Depends(get_db)
):
    return await WorkflowService.delete_node(db, workflow_id, node_id)

@router.post("/{workflow_id}/validate")
async def validate_workflow(
    workflow_id: str,
    db: AsyncSession = Depends(get_db)
):
    workflow = await WorkflowService.get_definition(db, workflow_id)
    errors = ValidationService.validate_workflow(workflow)
    return {"valid": len(errors) == 0, "errors": errors}
