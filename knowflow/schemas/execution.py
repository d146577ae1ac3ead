from pydantic import Field
from typing import List, Optional, Dict, Any
from datetime import datetime
from enum import Enum

from knowflow.schemas.common import CamelModel

class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    PAUSED = "paused"

TERMINAL_STATUSES = frozenset(
    {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED}
)

class NodeStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

class RollbackStatus(str, Enum):
    ROLLED_BACK = "rolled_back"
    ROLLBACK_FAILED = "rollback_failed"

class ExecutionProgress(CamelModel):
    current_node_name: Optional[str] = None
    completed_nodes: int = 0
    total_nodes: int = 0
    overall_progress: int = 0
    message: Optional[str] = None

class NodeSnapshot(CamelModel):
    node_id: str
    node_name: str
    node_type: str
    status: NodeStatus
    output: Any = None
    metrics: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    warnings: List[str] = Field(default_factory=list)
    attempts: int = 0
    skip_reason: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    rollback_status: Optional[RollbackStatus] = None
    rollback_error: Optional[str] = None

class ExecutionRecord(CamelModel):
    """A single run of a workflow, mutated by the engine until terminal."""
    id: str
    workflow_id: str
    user_id: Optional[str] = None
    status: ExecutionStatus = ExecutionStatus.PENDING
    input: Any = None
    progress: ExecutionProgress = Field(default_factory=ExecutionProgress)
    node_snapshots: List[NodeSnapshot] = Field(default_factory=list)
    error: Optional[str] = None
    cancellation_reason: Optional[str] = None
    trigger_source: str = "manual"
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def snapshot_for(self, node_id: str) -> Optional[NodeSnapshot]:
        return next((s for s in self.node_snapshots if s.node_id == node_id), None)

    def failed_snapshots(self) -> List[NodeSnapshot]:
        return [s for s in self.node_snapshots if s.status == NodeStatus.FAILED]

class ExecutionSummary(CamelModel):
    id: str
    workflow_id: str
    status: ExecutionStatus
    progress: ExecutionProgress = Field(default_factory=ExecutionProgress)
    error: Optional[str] = None
    trigger_source: str = "manual"
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None

class WorkflowExecuteRequest(CamelModel):
    input_data: Any = None
    document_id: Optional[str] = None
    dataset_id: Optional[str] = None
    trigger_source: str = "manual"

class WorkflowExecuteResponse(CamelModel):
    execution_id: str
    status: ExecutionStatus
    message: str

class CancelExecutionRequest(CamelModel):
    reason: Optional[str] = None

class WorkflowStats(CamelModel):
    total_executions: int = 0
    successful_executions: int = 0
    failed_executions: int = 0
    average_duration_ms: float = 0.0
    last_execution_at: Optional[datetime] = None

class StepTestRequest(CamelModel):
    step_type: str
    config: Dict[str, Any] = Field(default_factory=dict)
    input_segments: Any = None

class StepTestResponse(CamelModel):
    success: bool
    step_type: str
    step_name: str
    output: Any = None
    error: Optional[str] = None
    warnings: List[str] = Field(default_factory=list)
    metrics: Dict[str, Any] = Field(default_factory=dict)
