"""
Rule-based content filtering.

Every segment first goes through a length gate; segments that survive it are
checked against the configured regex rules in declaration order. The first
enabled rule that matches decides what happens to the segment (remove, keep
or flag); when nothing matches the configured default action applies.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional
import asyncio
import copy
import re
import time

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from knowflow.config import settings
from knowflow.engine.context import (
    RollbackResult,
    StepExecutionContext,
    StepExecutionResult,
    ValidationResult,
)
from knowflow.engine.steps.base import BaseStep, segment_content
from knowflow.engine.steps.registry import register_step

# JavaScript-style flag letters saved by the visual builder
REGEX_FLAGS: Dict[str, int] = {
    "g": 0,  # search already scans the whole string
    "i": re.IGNORECASE,
    "m": re.MULTILINE,
    "s": re.DOTALL,
    "u": 0,
    "d": 0,
    "y": 0,  # sticky, handled as an anchored match
}

PREVIEW_SIZE = 5


class FilterRule(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    name: str
    pattern: str
    flags: str = ""
    action: Literal["remove", "keep", "flag"]
    description: Optional[str] = None
    enabled: bool = True


class RuleBasedFilterConfig(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    rules: List[FilterRule]
    default_action: Literal["keep", "remove"]
    case_sensitive: bool = False
    whole_word: bool = False
    min_content_length: Optional[int] = Field(None, ge=0)
    max_content_length: Optional[int] = Field(None, ge=0)
    preserve_empty_segments: bool = False
    # Dotted path to the text inside dict segments
    content_field: Optional[str] = None


@dataclass
class CompiledRule:
    rule: FilterRule
    regex: re.Pattern
    anchored: bool

    def matches(self, content: str) -> bool:
        if self.anchored:
            return self.regex.match(content) is not None
        return self.regex.search(content) is not None


@dataclass
class FilterDecision:
    action: Literal["keep", "remove", "flag"]
    reason: Literal["length", "rule", "default"]
    rule_id: Optional[str] = None
    rule_name: Optional[str] = None


def compile_rule(rule: FilterRule, case_sensitive: bool = False, whole_word: bool = False) -> CompiledRule:
    """Raises ValueError for unknown flags and re.error for bad patterns."""
    flags = 0
    for letter in rule.flags or "":
        if letter not in REGEX_FLAGS:
            raise ValueError(f"Unsupported regex flag '{letter}'")
        flags |= REGEX_FLAGS[letter]

    # The global casing setting wins over the rule's own `i` flag
    flags &= ~re.IGNORECASE
    if not case_sensitive:
        flags |= re.IGNORECASE

    pattern = rf"\b(?:{rule.pattern})\b" if whole_word else rule.pattern
    return CompiledRule(rule=rule, regex=re.compile(pattern, flags), anchored="y" in (rule.flags or ""))


def filter_by_length(content: str, config: RuleBasedFilterConfig) -> bool:
    length = len(content)
    if config.min_content_length is not None and length < config.min_content_length:
        return True
    if config.max_content_length is not None and length > config.max_content_length:
        return True
    if length == 0 and not config.preserve_empty_segments:
        return True
    return False


def evaluate_segment(
    segment: Any,
    config: RuleBasedFilterConfig,
    compiled_rules: List[CompiledRule],
    rule_matches: Dict[str, int],
) -> FilterDecision:
    content = segment_content(segment, config.content_field)

    if filter_by_length(content, config):
        return FilterDecision(action="remove", reason="length")

    if not config.case_sensitive:
        content = content.lower()

    for compiled in compiled_rules:
        if not compiled.rule.enabled:
            continue
        if compiled.matches(content):
            rule_matches[compiled.rule.id] = rule_matches.get(compiled.rule.id, 0) + 1
            return FilterDecision(
                action=compiled.rule.action,
                reason="rule",
                rule_id=compiled.rule.id,
                rule_name=compiled.rule.name,
            )

    return FilterDecision(action=config.default_action, reason="default")


def flag_segment(segment: Any, reason: str, content_field: Optional[str] = None) -> Any:
    flag = {"flagged": True, "flagReason": reason}
    if isinstance(segment, str):
        return {"content": segment, "metadata": flag}
    if isinstance(segment, dict):
        return {**segment, "metadata": {**(segment.get("metadata") or {}), **flag}}
    try:
        flagged = copy.copy(segment)
        flagged.metadata = {**(getattr(segment, "metadata", None) or {}), **flag}
        return flagged
    except (AttributeError, TypeError, ValueError):
        # Immutable or slotted objects (namedtuples, frozen models) cannot take a metadata attribute
        return {"content": segment_content(segment, content_field), "metadata": flag}


@register_step
class RuleBasedFilterStep(BaseStep):
    type = "rule_based_filter"
    name = "Rule-Based Content Filtering"
    description = "Filter segments using configurable regex rules and patterns"
    categories = ("transform", "filter")
    config_model = RuleBasedFilterConfig

    async def execute(
        self, input: Any, config: Dict[str, Any], context: StepExecutionContext
    ) -> StepExecutionResult:
        started = time.perf_counter()
        segments = self.unwrap_input(input)
        parsed, errors = self.parse_config(config)
        if errors:
            return self.error_result(segments, started, "; ".join(errors))

        context.logger.info(f"Starting rule-based filtering for {len(segments)} segments")

        compiled_rules = self._compile_rules(parsed, context)
        rule_matches = {rule.id: 0 for rule in parsed.rules}
        kept: List[Any] = []
        filtered: List[Any] = []
        flagged = 0

        batch_size = max(settings.FILTER_BATCH_SIZE, 1)
        for start in range(0, len(segments), batch_size):
            for segment in segments[start:start + batch_size]:
                decision = evaluate_segment(segment, parsed, compiled_rules, rule_matches)
                if decision.action == "remove":
                    filtered.append(segment)
                elif decision.action == "flag":
                    flagged += 1
                    kept.append(flag_segment(segment, decision.rule_name, parsed.content_field))
                else:
                    kept.append(segment)

            if start + batch_size < len(segments):
                # Let other coroutines run between batches
                await asyncio.sleep(0)

        total = len(segments)
        metrics = self.calculate_metrics(segments, kept, started)
        metrics.extra.update({
            "totalProcessed": total,
            "kept": len(kept),
            "flagged": flagged,
            "filtered": len(filtered),
            "filteringRate": len(filtered) / total if total > 0 else 0,
            "ruleMatches": rule_matches,
        })

        context.logger.info(
            f"Rule-based filtering completed: {len(filtered)} filtered, {len(kept)} kept"
        )

        return StepExecutionResult(
            success=True,
            output_segments=kept,
            filtered_segments=filtered,
            metrics=metrics,
            rollback_data=self.create_rollback_data(segments, config),
            count=len(kept),
            total_count=total,
        )

    def _compile_rules(self, config: RuleBasedFilterConfig, context: StepExecutionContext) -> List[CompiledRule]:
        compiled_rules = []
        for rule in config.rules:
            if not rule.enabled:
                continue
            try:
                compiled_rules.append(compile_rule(rule, config.case_sensitive, config.whole_word))
            except (re.error, ValueError) as e:
                context.logger.warning(f"Skipping rule {rule.name}: {e}")
        return compiled_rules

    def validate(self, config: Dict[str, Any]) -> ValidationResult:
        parsed, errors = self.parse_config(config)
        if parsed is None:
            return ValidationResult.from_errors(errors)

        warnings = []
        seen_ids = set()
        for index, rule in enumerate(parsed.rules):
            if not rule.id:
                errors.append(f"Rule {index}: ID is required")
            elif rule.id in seen_ids:
                warnings.append(f"Rule {index}: duplicate ID '{rule.id}'")
            seen_ids.add(rule.id)
            if not rule.name:
                errors.append(f"Rule {index}: Name is required")
            if not rule.pattern:
                errors.append(f"Rule {index}: Pattern is required (an empty pattern matches every segment)")
                continue
            try:
                compile_rule(rule, parsed.case_sensitive, parsed.whole_word)
            except re.error as e:
                errors.append(f"Rule {index}: Invalid regex pattern - {e}")
            except ValueError as e:
                errors.append(f"Rule {index}: {e}")

        if (
            parsed.min_content_length is not None
            and parsed.max_content_length is not None
            and parsed.min_content_length > parsed.max_content_length
        ):
            errors.append("Minimum content length cannot be greater than maximum content length")

        return ValidationResult.from_errors(errors, warnings)

    def create_rollback_data(self, input_segments: List[Any], config: Dict[str, Any]) -> Any:
        return {
            "inputSegments": [
                {
                    "id": segment.get("id") if isinstance(segment, dict) else None,
                    "content": segment_content(segment),
                }
                for segment in input_segments
            ],
            "config": config,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    async def rollback(self, rollback_data: Any, context: StepExecutionContext) -> RollbackResult:
        # Filtering writes nothing, the original segments live in rollback_data
        context.logger.info("Rolling back rule-based filtering step")
        return RollbackResult(success=True)

    def format_output(self, result: StepExecutionResult, original_input: Any = None) -> Any:
        filtered = result.filtered_segments or []
        return {
            "data": result.output_segments[:PREVIEW_SIZE],
            "filtered": filtered[:PREVIEW_SIZE],
            "count": len(result.output_segments),
            "filteredCount": len(filtered),
            "totalCount": result.total_count,
            "ruleMatches": result.metrics.extra.get("ruleMatches", {}),
        }
