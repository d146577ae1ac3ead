from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Protocol, Tuple, Type, runtime_checkable
import asyncio
import resource
import time

from pydantic import BaseModel, ValidationError

from knowflow.core.logging import get_logger
from knowflow.engine.context import (
    ExecutionMetrics,
    RollbackResult,
    StepExecutionContext,
    StepExecutionResult,
    StepMetadata,
    ValidationResult,
)


@runtime_checkable
class ConfigurableStep(Protocol):
    def validate(self, config: Dict[str, Any]) -> ValidationResult:
        ...

    def get_config_schema(self) -> Dict[str, Any]:
        ...


@runtime_checkable
class RollbackableStep(Protocol):
    async def rollback(self, rollback_data: Any, context: StepExecutionContext) -> RollbackResult:
        ...

    def create_rollback_data(self, input_segments: List[Any], config: Dict[str, Any]) -> Any:
        ...


def format_validation_errors(exc: ValidationError) -> List[str]:
    errors = []
    for err in exc.errors():
        location = ".".join(str(part) for part in err["loc"])
        errors.append(f"{location}: {err['msg']}" if location else err["msg"])
    return errors


def segment_content(segment: Any, field: Optional[str] = None) -> str:
    """
    Text of a content unit. Segments may be plain strings, dicts with a
    `content` key (or the dotted `field` path), objects with a
    `content` attribute, or bare numbers.
    """
    if segment is None:
        return ""
    if isinstance(segment, str):
        return segment
    if isinstance(segment, (int, float)):
        return str(segment)
    if isinstance(segment, dict):
        value: Any = segment
        for part in (field or "content").split("."):
            if not isinstance(value, dict):
                value = None
                break
            value = value.get(part)
        return "" if value is None else str(value)
    value = getattr(segment, field or "content", None)
    return "" if value is None else str(value)


class BaseStep(ABC):
    type: str = ""
    name: str = ""
    version: str = "1.0.0"
    description: str = ""
    input_types: Tuple[str, ...] = ("document_segment",)
    output_types: Tuple[str, ...] = ("document_segment",)
    categories: Tuple[str, ...] = ()
    # Pydantic model describing the step's config, when it has one
    config_model: Optional[Type[BaseModel]] = None

    DEFAULT_TIMEOUT = 300

    def __init__(self):
        self.logger = get_logger(f"steps.{self.type}")

    @abstractmethod
    async def execute(
        self, input: Any, config: Dict[str, Any], context: StepExecutionContext
    ) -> StepExecutionResult:
        """
        Run the step. Expected failures come back as `success=False`;
        only unexpected faults are raised.
        """
        pass

    async def execute_with_timeout(
        self,
        input: Any,
        config: Dict[str, Any],
        context: StepExecutionContext,
        timeout: Optional[float] = None,
    ) -> StepExecutionResult:
        timeout = timeout or self.DEFAULT_TIMEOUT
        try:
            return await asyncio.wait_for(self.execute(input, config, context), timeout=float(timeout))
        except asyncio.TimeoutError:
            raise TimeoutError(f"Step {self.type} execution timed out after {timeout}s")

    def get_metadata(self) -> StepMetadata:
        return StepMetadata(
            type=self.type,
            name=self.name,
            description=self.description,
            version=self.version,
            input_types=list(self.input_types),
            output_types=list(self.output_types),
            config_schema=self.get_config_schema(),
            categories=list(self.categories),
        )

    def get_config_schema(self) -> Dict[str, Any]:
        if self.config_model is None:
            return {"type": "object", "properties": {}, "required": []}
        return self.config_model.model_json_schema(by_alias=True)

    def parse_config(self, config: Dict[str, Any]) -> Tuple[Optional[BaseModel], List[str]]:
        if self.config_model is None:
            return None, []
        try:
            return self.config_model.model_validate(config or {}), []
        except ValidationError as e:
            return None, format_validation_errors(e)

    def format_output(self, result: StepExecutionResult, original_input: Any = None) -> Any:
        if result.duplicates:
            return {"data": result.output_segments, "duplicates": result.duplicates}
        return result.output_segments

    def unwrap_input(self, input: Any) -> List[Any]:
        """
        Turn whatever the previous node produced into a list of segments:
        lists pass through (a single wrapper dict around a list is opened),
        dicts are searched for their first list value, scalars become a
        one-item list.
        """
        if input is None:
            return []
        if isinstance(input, list):
            if len(input) == 1 and isinstance(input[0], dict):
                inner = self._first_list_value(input[0])
                if inner is not None and all(isinstance(item, dict) for item in inner):
                    return inner
            return input
        if isinstance(input, tuple):
            return list(input)
        if isinstance(input, dict):
            inner = self._first_list_value(input)
            if inner is not None:
                return inner
            return [input]
        return [input]

    @staticmethod
    def _first_list_value(data: Dict[str, Any]) -> Optional[List[Any]]:
        for value in data.values():
            if isinstance(value, list) and value:
                return value
        return None

    def calculate_metrics(
        self, input_segments: List[Any], output_segments: List[Any], started: float
    ) -> ExecutionMetrics:
        duration_ms = int((time.perf_counter() - started) * 1000)
        input_count = len(input_segments)
        output_count = len(output_segments)
        return ExecutionMetrics(
            input_count=input_count,
            output_count=output_count,
            filtered_count=input_count - output_count,
            duration=duration_ms,
            throughput=input_count / (duration_ms / 1000) if duration_ms > 0 else 0.0,
            memory_usage=resource.getrusage(resource.RUSAGE_SELF).ru_maxrss,
            step_type=self.type,
            step_name=self.name,
        )

    def error_result(self, input_segments: List[Any], started: float, error: str) -> StepExecutionResult:
        self.logger.error(f"Step execution failed: {error}")
        return StepExecutionResult(
            success=False,
            output_segments=[],
            metrics=self.calculate_metrics(input_segments, [], started),
            error=error,
        )
