import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class StepExecutionContext:
    """
    Ephemeral, one per node invocation. Never persisted on its own.
    """
    execution_id: str
    pipeline_config_id: str
    user_id: Optional[str]
    logger: logging.LoggerAdapter
    document_id: Optional[str] = None
    dataset_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ExecutionMetrics:
    input_count: int = 0
    output_count: int = 0
    filtered_count: int = 0
    duration: int = 0  # milliseconds
    throughput: float = 0.0  # items per second
    memory_usage: int = 0
    step_type: Optional[str] = None
    step_name: Optional[str] = None
    # Step-specific figures (ruleMatches, filteringRate, ...)
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "inputCount": self.input_count,
            "outputCount": self.output_count,
            "filteredCount": self.filtered_count,
            "duration": self.duration,
            "throughput": self.throughput,
            "memoryUsage": self.memory_usage,
            "stepType": self.step_type,
            "stepName": self.step_name,
        }
        data.update(self.extra)
        return data


@dataclass
class StepExecutionResult:
    success: bool
    output_segments: List[Any] = field(default_factory=list)
    metrics: ExecutionMetrics = field(default_factory=ExecutionMetrics)
    error: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    rollback_data: Any = None
    duplicates: Optional[List[Any]] = None
    filtered_segments: Optional[List[Any]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    # Count information for display
    count: Optional[int] = None
    total_count: Optional[int] = None
    duplicate_count: Optional[int] = None


@dataclass
class ValidationResult:
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @classmethod
    def from_errors(cls, errors: List[str], warnings: Optional[List[str]] = None) -> "ValidationResult":
        return cls(is_valid=not errors, errors=list(errors), warnings=list(warnings or []))


@dataclass
class RollbackResult:
    success: bool
    error: Optional[str] = None


@dataclass(frozen=True)
class StepMetadata:
    type: str
    name: str
    description: str
    version: str
    input_types: List[str]
    output_types: List[str]
    config_schema: Optional[Dict[str, Any]] = None
    categories: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "name": self.name,
            "description": self.description,
            "version": self.version,
            "inputTypes": list(self.input_types),
            "outputTypes": list(self.output_types),
            "configSchema": self.config_schema,
            "categories": list(self.categories),
        }
