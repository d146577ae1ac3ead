from typing import Any, Dict, List, Optional, Type

from knowflow.core.exceptions import InvalidConfig, UnknownStepType
from knowflow.core.logging import get_logger
from knowflow.engine.context import StepMetadata
from knowflow.engine.steps.base import BaseStep, ConfigurableStep

logger = get_logger("steps.registry")


class StepRegistry:
    """Maps step-type strings to step classes and builds fresh instances."""

    def __init__(self):
        self._steps: Dict[str, Type[BaseStep]] = {}

    def register(self, step_cls: Type[BaseStep]) -> Type[BaseStep]:
        if not step_cls.type:
            raise ValueError(f"{step_cls.__name__} does not declare a step type")
        self._steps[step_cls.type] = step_cls
        logger.debug(f"Registered pipeline step: {step_cls.type} -> {step_cls.__name__}")
        return step_cls

    def create(self, step_type: str) -> BaseStep:
        step_cls = self._steps.get(step_type)
        if step_cls is None:
            raise UnknownStepType(step_type)
        return step_cls()

    def create_multiple(self, step_types: List[str]) -> List[BaseStep]:
        return [self.create(step_type) for step_type in step_types]

    def create_and_validate(self, step_type: str, config: Optional[Dict[str, Any]]) -> BaseStep:
        step = self.create(step_type)

        if isinstance(step, ConfigurableStep):
            validation = step.validate(config or {})
            if not validation.is_valid:
                raise InvalidConfig(step_type, validation.errors)
            if validation.warnings:
                logger.warning(
                    f"Configuration warnings for {step_type}: {', '.join(validation.warnings)}"
                )

        return step

    def has_step_type(self, step_type: str) -> bool:
        return step_type in self._steps

    def available_types(self) -> List[str]:
        return list(self._steps.keys())

    def get_metadata(self, step_type: str) -> StepMetadata:
        return self.create(step_type).get_metadata()

    def list_metadata(self) -> List[StepMetadata]:
        return [self.create(step_type).get_metadata() for step_type in self._steps]


step_registry = StepRegistry()


def register_step(step_cls: Type[BaseStep]) -> Type[BaseStep]:
    """Decorator to register a step class in the default registry"""
    return step_registry.register(step_cls)
