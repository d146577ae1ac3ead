from fastapi import APIRouter, Header, HTTPException
from typing import Any, Dict, List, Optional

from knowflow.engine.steps import step_registry
from knowflow.engine.steps.base import ConfigurableStep
from knowflow.schemas.execution import StepTestRequest, StepTestResponse
from knowflow.services.step_service import dry_run_step

router = APIRouter()

def _get_step(step_type: str):
    if not step_registry.has_step_type(step_type):
        raise HTTPException(status_code=404, detail=f"Unknown step type: {step_type}")
    return step_registry.create(step_type)

@router.get("")
async def list_steps() -> List[Dict[str, Any]]:
    return [metadata.to_dict() for metadata in step_registry.list_metadata()]

@router.get("/{step_type}")
async def get_step(step_type: str) -> Dict[str, Any]:
    return _get_step(step_type).get_metadata().to_dict()

@router.post("/{step_type}/validate")
async def validate_step_config(step_type: str, config: Dict[str, Any]) -> Dict[str, Any]:
    step = _get_step(step_type)
    if not isinstance(step, ConfigurableStep):
        return {"isValid": True, "errors": [], "warnings": []}
    result = step.validate(config)
    return {"isValid": result.is_valid, "errors": result.errors, "warnings": result.warnings}

@router.post("/test", response_model=StepTestResponse)
async def test_step_config(
    request: StepTestRequest,
    x_user_id: Optional[str] = Header(None),
) -> StepTestResponse:
    return await dry_run_step(request.step_type, request.config, request.input_segments, user_id=x_user_id)
