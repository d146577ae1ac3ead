from pydantic import Field, AliasChoices
from typing import List, Optional, Dict, Any, Literal
from datetime import datetime
from enum import Enum

from knowflow.schemas.common import CamelModel

class ErrorHandling(str, Enum):
    STOP = "stop"
    CONTINUE = "continue"
    RETRY = "retry"

class InputSourceType(str, Enum):
    PREVIOUS_NODE = "previous_node"
    STATIC = "static"
    EXTERNAL = "external"

class InputFilter(CamelModel):
    field: str
    operator: Literal[
        "equals", "notEquals", "contains", "greaterThan", "lessThan", "exists", "in"
    ] = "equals"
    value: Any = None

class InputSource(CamelModel):
    type: InputSourceType
    node_id: Optional[str] = None
    # static payload
    data: Any = None
    # external data connector
    connector: Optional[str] = None
    params: Dict[str, Any] = Field(default_factory=dict)
    filters: List[InputFilter] = Field(default_factory=list)

class WorkflowNode(CamelModel):
    id: str
    type: str
    name: Optional[str] = None
    # Layout only, never used for ordering
    position: Dict[str, float] = Field(default_factory=dict)
    config: Dict[str, Any] = Field(default_factory=dict)
    enabled: bool = True
    input_sources: List[InputSource] = Field(default_factory=list)
    timeout: Optional[float] = Field(None, gt=0)

    @property
    def display_name(self) -> str:
        return self.name or self.id

class WorkflowEdge(CamelModel):
    id: Optional[str] = None
    source: str
    target: str

class WorkflowSettings(CamelModel):
    error_handling: ErrorHandling = ErrorHandling.STOP
    max_retries: int = Field(3, ge=0)
    parallel_execution: bool = False
    notify_on_completion: bool = False
    notify_on_failure: bool = False
    max_concurrency: Optional[int] = Field(None, ge=1)
    rollback_on_failure: bool = True

class WorkflowBase(CamelModel):
    name: str
    description: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    is_active: bool = True
    is_template: bool = False
    # ORM rows expose the JSON column as `meta`
    metadata: Dict[str, Any] = Field(
        default_factory=dict, validation_alias=AliasChoices("meta", "metadata")
    )

class WorkflowCreate(WorkflowBase):
    nodes: List[WorkflowNode] = Field(default_factory=list)
    edges: List[WorkflowEdge] = Field(default_factory=list)
    settings: WorkflowSettings = Field(default_factory=WorkflowSettings)

class WorkflowUpdate(CamelModel):
    name: Optional[str] = None
    description: Optional[str] = None
    nodes: Optional[List[WorkflowNode]] = None
    edges: Optional[List[WorkflowEdge]] = None
    settings: Optional[WorkflowSettings] = None
    tags: Optional[List[str]] = None
    is_active: Optional[bool] = None
    is_template: Optional[bool] = None

class WorkflowDefinition(WorkflowCreate):
    """Everything the execution engine needs to run a workflow."""
    id: str
    user_id: Optional[str] = None

    def get_node(self, node_id: str) -> Optional[WorkflowNode]:
        return next((n for n in self.nodes if n.id == node_id), None)

class WorkflowInDB(WorkflowDefinition):
    version: int
    created_at: datetime
    updated_at: datetime

class WorkflowSummary(CamelModel):
    id: str
    name: str
    description: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    is_active: bool
    is_template: bool
    version: int
    updated_at: datetime
