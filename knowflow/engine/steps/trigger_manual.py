from datetime import datetime, timezone
from typing import Any, Dict, Optional
import time

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from knowflow.engine.context import StepExecutionContext, StepExecutionResult, ValidationResult
from knowflow.engine.steps.base import BaseStep
from knowflow.engine.steps.registry import register_step


class TriggerManualConfig(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    trigger_name: Optional[str] = Field(None, max_length=100)
    description: Optional[str] = None


@register_step
class TriggerManualStep(BaseStep):
    type = "trigger_manual"
    name = "Manual Trigger"
    description = "Manually triggered workflow execution"
    input_types = ()
    output_types = ("trigger_data",)
    categories = ("trigger",)
    config_model = TriggerManualConfig

    async def execute(
        self, input: Any, config: Dict[str, Any], context: StepExecutionContext
    ) -> StepExecutionResult:
        started = time.perf_counter()
        segments = self.unwrap_input(input)
        parsed, errors = self.parse_config(config)
        if errors:
            return self.error_result(segments, started, "; ".join(errors))

        trigger_name = parsed.trigger_name or "Manual Trigger"
        context.logger.info(f"Executing manual trigger: {trigger_name}")

        # Triggers hand the workflow input straight to the next node
        metrics = self.calculate_metrics(segments, segments, started)
        metrics.extra.update({
            "triggerType": "manual",
            "triggerName": trigger_name,
            "triggeredAt": datetime.now(timezone.utc).isoformat(),
        })
        return StepExecutionResult(
            success=True,
            output_segments=segments,
            metrics=metrics,
            count=len(segments),
        )

    def validate(self, config: Dict[str, Any]) -> ValidationResult:
        _, errors = self.parse_config(config)
        return ValidationResult.from_errors(errors)
