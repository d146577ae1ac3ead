import logging
import uuid
from typing import Any, Dict, Optional

from knowflow.config import settings
from knowflow.core.logging import get_logger
from knowflow.engine.context import StepExecutionContext
from knowflow.engine.steps import StepRegistry, step_registry
from knowflow.schemas.execution import StepTestResponse

logger = get_logger("services.step")


async def dry_run_step(
    step_type: str,
    config: Dict[str, Any],
    input_segments: Any = None,
    user_id: Optional[str] = None,
    registry: StepRegistry = step_registry,
) -> StepTestResponse:
    """
    Dry run of a single step against sample input, outside any workflow.
    Unknown types and invalid configs raise ConfigurationError like at
    execute time; failures inside the step come back in the response.
    """
    step = registry.create_and_validate(step_type, config)
    execution_id = f"test_{uuid.uuid4().hex[:12]}"
    context = StepExecutionContext(
        execution_id=execution_id,
        pipeline_config_id="test",
        user_id=user_id,
        logger=logging.LoggerAdapter(get_logger(f"steps.{step_type}"), {"execution_id": execution_id}),
        metadata={"node_id": step_type, "node_name": step.name, "attempt": 1},
    )
    segments = input_segments if input_segments is not None else []
    logger.info(f"Testing step {step_type} with {len(step.unwrap_input(segments))} input segment(s)")

    try:
        result = await step.execute_with_timeout(segments, config, context, timeout=settings.NODE_TIMEOUT_SECONDS)
    except Exception as e:
        logger.warning(f"Step test of {step_type} raised {type(e).__name__}: {e}", exc_info=True)
        return StepTestResponse(
            success=False, step_type=step_type, step_name=step.name, error=f"{type(e).__name__}: {e}"
        )

    return StepTestResponse(
        success=result.success,
        step_type=step_type,
        step_name=step.name,
        output=step.format_output(result, segments) if result.success else None,
        error=result.error,
        warnings=list(result.warnings),
        metrics=result.metrics.to_dict(),
    )
