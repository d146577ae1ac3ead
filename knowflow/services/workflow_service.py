from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, delete, desc
from knowflow.core.exceptions import WorkflowNotFound, WorkflowValidationError
from knowflow.engine.graph import WorkflowGraph
from knowflow.models.execution import NodeExecution, WorkflowExecution
from knowflow.models.workflow import Workflow, utcnow
from knowflow.schemas.workflow import WorkflowCreate, WorkflowDefinition, WorkflowEdge, WorkflowNode, WorkflowUpdate
from typing import Iterable, List, Optional
import uuid

def check_graph(nodes: Iterable[WorkflowNode], edges: Iterable[WorkflowEdge]) -> None:
    """Reject structurally broken graphs on save; step configs are checked at execute time."""
    errors = WorkflowGraph(nodes, edges).collect_errors()
    if errors:
        raise WorkflowValidationError("Workflow graph is invalid", errors)

class WorkflowService:
    @staticmethod
    async def get_all(
        db: AsyncSession,
        skip: int = 0,
        limit: int = 100,
        is_active: Optional[bool] = None,
        user_id: Optional[str] = None,
    ) -> List[Workflow]:
        query = select(Workflow)
        if is_active is not None:
            query = query.where(Workflow.is_active == is_active)
        if user_id:
            query = query.where(Workflow.user_id == user_id)
        query = query.order_by(desc(Workflow.updated_at)).offset(skip).limit(limit)
        result = await db.execute(query)
        return list(result.scalars().all())

    @staticmethod
    async def get_by_id(db: AsyncSession, workflow_id: str) -> Optional[Workflow]:
        query = select(Workflow).where(Workflow.id == workflow_id)
        result = await db.execute(query)
        return result.scalar_one_or_none()

    @staticmethod
    async def get_or_404(db: AsyncSession, workflow_id: str) -> Workflow:
        workflow = await WorkflowService.get_by_id(db, workflow_id)
        if not workflow:
            raise WorkflowNotFound(workflow_id)
        return workflow

    @staticmethod
    async def get_definition(db: AsyncSession, workflow_id: str) -> WorkflowDefinition:
        workflow = await WorkflowService.get_or_404(db, workflow_id)
        return WorkflowDefinition.model_validate(workflow)

    @staticmethod
    async def create(db: AsyncSession, workflow_in: WorkflowCreate, user_id: Optional[str] = None) -> Workflow:
        check_graph(workflow_in.nodes, workflow_in.edges)
        db_workflow = Workflow(
            id=str(uuid.uuid4()),
            name=workflow_in.name,
            description=workflow_in.description,
            nodes=[node.model_dump(mode="json") for node in workflow_in.nodes],
            edges=[edge.model_dump(mode="json") for edge in workflow_in.edges],
            settings=workflow_in.settings.model_dump(mode="json"),
            tags=workflow_in.tags,
            meta=workflow_in.metadata,
            is_active=workflow_in.is_active,
            is_template=workflow_in.is_template,
            user_id=user_id,
            version=1
        )
        db.add(db_workflow)
        await db.flush()
        return db_workflow

    @staticmethod
    async def update(db: AsyncSession, workflow_id: str, workflow_in: WorkflowUpdate) -> Workflow:
        workflow = await WorkflowService.get_or_404(db, workflow_id)

        update_data = workflow_in.model_dump(exclude_unset=True, mode="json")

        # Graph changes bump the version
        if "nodes" in update_data or "edges" in update_data:
            nodes = workflow_in.nodes if workflow_in.nodes is not None else workflow.nodes
            edges = workflow_in.edges if workflow_in.edges is not None else workflow.edges
            check_graph(
                [WorkflowNode.model_validate(n) for n in nodes],
                [WorkflowEdge.model_validate(e) for e in edges],
            )
            workflow.version += 1

        for key, value in update_data.items():
            setattr(workflow, key, value)
        workflow.updated_at = utcnow()

        await db.flush()
        return workflow

    @staticmethod
    async def delete(db: AsyncSession, workflow_id: str) -> None:
        await WorkflowService.get_or_404(db, workflow_id)
        execution_ids = select(WorkflowExecution.id).where(WorkflowExecution.workflow_id == workflow_id)
        await db.execute(delete(NodeExecution).where(NodeExecution.execution_id.in_(execution_ids)))
        await db.execute(delete(WorkflowExecution).where(WorkflowExecution.workflow_id == workflow_id))
        await db.execute(delete(Workflow).where(Workflow.id == workflow_id))

    @staticmethod
    async def duplicate(db: AsyncSession, workflow_id: str, user_id: Optional[str] = None) -> Workflow:
        original = await WorkflowService.get_or_404(db, workflow_id)

        new_workflow = Workflow(
            id=str(uuid.uuid4()),
            name=f"{original.name} (Copy)",
            description=original.description,
            nodes=list(original.nodes),
            edges=list(original.edges),
            settings=dict(original.settings),
            tags=list(original.tags or []),
            meta=dict(original.meta or {}),
            is_active=original.is_active,
            is_template=False,
            user_id=user_id or original.user_id,
            version=1
        )
        db.add(new_workflow)
        await db.flush()
        return new_workflow

    @staticmethod
    async def delete_node(db: AsyncSession, workflow_id: str, node_id: str) -> Workflow:
        """Remove a node together with every edge and input source that refers to it."""
        workflow = await WorkflowService.get_or_404(db, workflow_id)
        definition = WorkflowDefinition.model_validate(workflow)
        if definition.get_node(node_id) is None:
            raise WorkflowValidationError(f"Node not found in workflow: {node_id}")

        nodes, edges = WorkflowGraph(definition.nodes, definition.edges).remove_node(node_id)
        check_graph(nodes, edges)
        workflow.nodes = [n.model_dump(mode="json") for n in nodes]
        workflow.edges = [e.model_dump(mode="json") for e in edges]
        workflow.version += 1
        workflow.updated_at = utcnow()
        await db.flush()
        return workflow
