from .registry import StepRegistry, register_step, step_registry
from .trigger_manual import TriggerManualStep
from .api_datasource import ApiDataSourceStep
from .rule_based_filter import RuleBasedFilterStep
from .duplicate_segment import DuplicateSegmentStep
from .ai_summarization import AiSummarizationStep

__all__ = [
    "StepRegistry",
    "register_step",
    "step_registry",
    "TriggerManualStep",
    "ApiDataSourceStep",
    "RuleBasedFilterStep",
    "DuplicateSegmentStep",
    "AiSummarizationStep",
]
