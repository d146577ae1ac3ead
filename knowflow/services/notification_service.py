from typing import Any, Dict, Optional, Protocol, runtime_checkable

from knowflow.config import settings
from knowflow.core.logging import get_logger
from knowflow.integrations.http_client import get_http_client
from knowflow.schemas.execution import ExecutionRecord
from knowflow.schemas.workflow import WorkflowDefinition

logger = get_logger("services.notification")

EXECUTION_COMPLETED = "execution.completed"
EXECUTION_FAILED = "execution.failed"


@runtime_checkable
class Notifier(Protocol):
    async def notify(self, event: str, workflow: WorkflowDefinition, execution: ExecutionRecord) -> None:
        ...


def build_payload(event: str, workflow: WorkflowDefinition, execution: ExecutionRecord) -> Dict[str, Any]:
    return {
        "event": event,
        "workflowId": workflow.id,
        "workflowName": workflow.name,
        "executionId": execution.id,
        "userId": execution.user_id,
        "status": execution.status.value,
        "error": execution.error,
        "durationMs": execution.duration_ms,
        "progress": execution.progress.model_dump(by_alias=True),
        "failedNodes": [s.node_id for s in execution.failed_snapshots()],
    }


class LoggingNotifier:
    async def notify(self, event: str, workflow: WorkflowDefinition, execution: ExecutionRecord) -> None:
        logger.info(
            f"Workflow '{workflow.name}' {event}",
            extra=build_payload(event, workflow, execution),
        )


class WebhookNotifier:
    """POSTs a JSON payload describing the finished execution."""

    def __init__(self, url: str, api_key: Optional[str] = None):
        self.url = url
        self.headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}

    async def notify(self, event: str, workflow: WorkflowDefinition, execution: ExecutionRecord) -> None:
        client = await get_http_client()
        response = await client.post(
            self.url,
            json=build_payload(event, workflow, execution),
            headers=self.headers,
        )
        response.raise_for_status()
        logger.info(f"Sent {event} notification for execution {execution.id}")


def get_notifier() -> Notifier:
    if settings.NOTIFICATION_WEBHOOK_URL:
        return WebhookNotifier(settings.NOTIFICATION_WEBHOOK_URL, settings.NOTIFICATION_API_KEY)
    return LoggingNotifier()
