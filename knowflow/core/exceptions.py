from typing import Iterable, List, Optional


class KnowflowError(Exception):
    """Base class for every error raised by the workflow engine."""


class ConfigurationError(KnowflowError):
    """
    Raised before any execution record exists: bad graph structure,
    unknown step type or invalid step configuration. Never retried.
    """

    def __init__(self, message: str, errors: Optional[Iterable[str]] = None):
        super().__init__(message)
        self.errors: List[str] = list(errors) if errors else [message]


class UnknownStepType(ConfigurationError):
    def __init__(self, step_type: str):
        super().__init__(f"Unknown step type: {step_type}")
        self.step_type = step_type


class InvalidConfig(ConfigurationError):
    def __init__(self, step_type: str, errors: Iterable[str]):
        errors = list(errors)
        super().__init__(
            f"Invalid configuration for {step_type}: {', '.join(errors)}", errors
        )
        self.step_type = step_type


class WorkflowValidationError(ConfigurationError):
    """Structural problem in a workflow graph."""


class CyclicGraphError(WorkflowValidationError):
    def __init__(self, node_ids: Iterable[str]):
        self.node_ids = sorted(node_ids)
        super().__init__(
            f"Workflow contains circular dependencies between nodes: {', '.join(self.node_ids)}"
        )


class DanglingInputSourceError(WorkflowValidationError):
    def __init__(self, node_id: str, source_node_id: Optional[str]):
        self.node_id = node_id
        self.source_node_id = source_node_id
        super().__init__(
            f"Node '{node_id}' reads from '{source_node_id}', which is not one of its predecessors"
        )


class InvalidEdgeError(WorkflowValidationError):
    def __init__(self, source: str, target: str):
        self.source = source
        self.target = target
        super().__init__(f"Edge references non-existent node: {source} -> {target}")


class DuplicateNodeError(WorkflowValidationError):
    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__(f"Duplicate node id: {node_id}")


class InvalidStateTransition(KnowflowError):
    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Cannot move execution from '{current}' to '{target}'")


class RollbackFailed(KnowflowError):
    """A step's compensating rollback failed; needs manual intervention."""

    def __init__(self, node_id: str, reason: str):
        self.node_id = node_id
        self.reason = reason
        super().__init__(f"Rollback failed for node '{node_id}': {reason}")


class WorkflowNotFound(KnowflowError):
    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"Workflow not found: {workflow_id}")


class ExecutionNotFound(KnowflowError):
    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"Execution not found: {execution_id}")


class SnapshotNotFound(KnowflowError):
    def __init__(self, execution_id: str, node_id: str):
        self.execution_id = execution_id
        self.node_id = node_id
        super().__init__(f"No snapshot for node {node_id} in execution {execution_id}")
