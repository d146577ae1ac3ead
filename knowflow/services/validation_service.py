from typing import List, Optional

from knowflow.core.exceptions import ConfigurationError, UnknownStepType
from knowflow.engine.graph import WorkflowGraph
from knowflow.engine.inputs import data_connectors
import knowflow.integrations.connectors  # Import to trigger registration
from knowflow.engine.steps import StepRegistry, step_registry
from knowflow.engine.steps.base import ConfigurableStep
from knowflow.schemas.workflow import InputSourceType, WorkflowDefinition

class ValidationService:
    @staticmethod
    def validate_workflow(workflow: WorkflowDefinition, registry: Optional[StepRegistry] = None) -> List[str]:
        """
        Every problem that would stop the workflow from executing:
        graph structure, unknown step types, step configuration of enabled
        nodes and unknown data connectors.
        """
        registry = registry or step_registry
        errors = WorkflowGraph(workflow.nodes, workflow.edges).collect_errors()

        for node in workflow.nodes:
            if not registry.has_step_type(node.type):
                errors.append(f"Node '{node.display_name}': {UnknownStepType(node.type)}")
                continue
            if not node.enabled:
                continue

            step = registry.create(node.type)
            if isinstance(step, ConfigurableStep):
                result = step.validate(node.config)
                errors.extend(f"Node '{node.display_name}': {e}" for e in result.errors)

            for source in node.input_sources:
                if source.type == InputSourceType.EXTERNAL and source.connector not in data_connectors:
                    errors.append(
                        f"Node '{node.display_name}': unknown data connector '{source.connector}'"
                    )

        return errors

    @staticmethod
    def ensure_executable(workflow: WorkflowDefinition, registry: Optional[StepRegistry] = None) -> None:
        errors = ValidationService.validate_workflow(workflow, registry)
        if errors:
            raise ConfigurationError(f"Workflow '{workflow.name}' cannot be executed", errors)
