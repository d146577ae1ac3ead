import asyncio
from typing import Any, Optional
from celery_app.celery import celery_app
from knowflow.database import AsyncSessionLocal, engine
from knowflow.integrations.http_client import HttpClient
from knowflow.services.cancel_registry import create_cancel_registry
from knowflow.services.execution_service import run_execution
from knowflow.core.logging import logger

@celery_app.task(
    name="execute_workflow_task",
    bind=True,
    max_retries=3,
    default_retry_delay=60,
    acks_late=True
)
def execute_workflow_task(
    self,
    execution_id: str,
    workflow_id: str,
    input_data: Any = None,
    user_id: Optional[str] = None,
    document_id: Optional[str] = None,
    dataset_id: Optional[str] = None,
):
    try:
        return asyncio.run(
            async_execute_workflow(execution_id, workflow_id, input_data, user_id, document_id, dataset_id)
        )
    except Exception as exc:
        logger.error(f"Task failed, retrying: {exc}")
        raise self.retry(exc=exc)

async def async_execute_workflow(
    execution_id: str,
    workflow_id: str,
    input_data: Any = None,
    user_id: Optional[str] = None,
    document_id: Optional[str] = None,
    dataset_id: Optional[str] = None,
) -> str:
    # Connections are bound to the event loop asyncio.run creates for this task
    registry = create_cancel_registry()
    try:
        async with AsyncSessionLocal() as db:
            logger.info(
                f"Starting workflow execution: {execution_id} for workflow: {workflow_id}",
                extra={"user_id": user_id},
            )
            record = await run_execution(
                db,
                registry,
                execution_id,
                input_data=input_data,
                document_id=document_id,
                dataset_id=dataset_id,
            )
            logger.info(f"Workflow execution {execution_id} ended as {record.status.value}")
            return record.status.value
    finally:
        await registry.close()
        await HttpClient.close_client()
        await engine.dispose()
