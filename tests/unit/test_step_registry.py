import pytest
from knowflow.core.exceptions import InvalidConfig, UnknownStepType
from knowflow.engine.context import StepExecutionResult
from knowflow.engine.steps import StepRegistry, step_registry
from knowflow.engine.steps.base import BaseStep, ConfigurableStep, RollbackableStep
from knowflow.engine.steps.rule_based_filter import RuleBasedFilterStep
from knowflow.engine.steps.trigger_manual import TriggerManualStep

class PlainStep(BaseStep):
    type = "plain"
    name = "Plain"

    async def execute(self, input, config, context):
        return StepExecutionResult(success=True, output_segments=self.unwrap_input(input))

def test_builtin_steps_registered():
    assert set(step_registry.available_types()) >= {
        "trigger_manual",
        "api_datasource",
        "rule_based_filter",
        "duplicate_segment",
        "ai_summarization",
    }

def test_create_returns_fresh_instances_with_same_metadata():
    first = step_registry.create("rule_based_filter")
    second = step_registry.create("rule_based_filter")
    assert first is not second
    assert first.get_metadata() == second.get_metadata()
    assert first.get_metadata().type == "rule_based_filter"

def test_unknown_step_type():
    with pytest.raises(UnknownStepType) as exc_info:
        step_registry.create("nonexistent_step")
    assert exc_info.value.step_type == "nonexistent_step"
    assert not step_registry.has_step_type("nonexistent_step")

def test_create_multiple():
    steps = step_registry.create_multiple(["trigger_manual", "rule_based_filter"])
    assert isinstance(steps[0], TriggerManualStep)
    assert isinstance(steps[1], RuleBasedFilterStep)

def test_create_and_validate_collects_errors():
    with pytest.raises(InvalidConfig) as exc_info:
        step_registry.create_and_validate(
            "rule_based_filter",
            {"rules": [{"id": "r", "name": "empty", "pattern": "", "action": "remove"}], "defaultAction": "keep"},
        )
    assert exc_info.value.step_type == "rule_based_filter"
    assert any("Pattern is required" in e for e in exc_info.value.errors)

def test_create_and_validate_skips_non_configurable_steps():
    registry = StepRegistry()
    registry.register(PlainStep)
    step = registry.create_and_validate("plain", {"anything": True})
    assert isinstance(step, PlainStep)
    assert not isinstance(step, ConfigurableStep)

def test_register_requires_type():
    class Nameless(PlainStep):
        type = ""

    with pytest.raises(ValueError):
        StepRegistry().register(Nameless)

def test_capability_protocols():
    assert isinstance(RuleBasedFilterStep(), RollbackableStep)
    assert isinstance(RuleBasedFilterStep(), ConfigurableStep)
    assert not isinstance(TriggerManualStep(), RollbackableStep)

def test_metadata_listing_and_schema():
    listed = {m.type: m for m in step_registry.list_metadata()}
    metadata = listed["rule_based_filter"].to_dict()
    assert metadata["name"] == "Rule-Based Content Filtering"
    assert metadata["version"] == "1.0.0"
    assert "filter" in metadata["categories"]
    assert "rules" in metadata["configSchema"]["properties"]
    assert "defaultAction" in metadata["configSchema"]["properties"]
    assert step_registry.get_metadata("trigger_manual").type == "trigger_manual"
