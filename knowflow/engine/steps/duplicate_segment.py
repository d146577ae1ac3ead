from typing import Any, Dict, List, Literal, Optional, Set
import hashlib
import re
import time

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from knowflow.engine.context import StepExecutionContext, StepExecutionResult, ValidationResult
from knowflow.engine.steps.base import BaseStep, segment_content
from knowflow.engine.steps.registry import register_step

WORD_RE = re.compile(r"\w+")
# Upper bound on pairwise comparisons per segment for the similarity method
MAX_COMPARISONS = 100


class DuplicateSegmentConfig(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    method: Literal["hash", "similarity"] = "hash"
    similarity_threshold: float = Field(0.8, ge=0, le=1)
    content_field: Optional[str] = None
    case_sensitive: bool = False
    ignore_whitespace: bool = True
    normalize_text: bool = True


def normalize_content(content: str, config: DuplicateSegmentConfig) -> str:
    if config.ignore_whitespace:
        content = " ".join(content.split())
    if config.normalize_text:
        content = re.sub(r"[^\w\s]", "", content)
    if not config.case_sensitive:
        content = content.lower()
    return content


def jaccard_similarity(left: Set[str], right: Set[str]) -> float:
    if not left and not right:
        return 1.0
    union = left | right
    return len(left & right) / len(union)


@register_step
class DuplicateSegmentStep(BaseStep):
    type = "duplicate_segment"
    name = "Duplicate Segment Detection"
    description = "Detect duplicate segments using hash or similarity"
    categories = ("transform", "deduplication")
    config_model = DuplicateSegmentConfig

    async def execute(
        self, input: Any, config: Dict[str, Any], context: StepExecutionContext
    ) -> StepExecutionResult:
        started = time.perf_counter()
        segments = self.unwrap_input(input)
        parsed, errors = self.parse_config(config)
        if errors:
            return self.error_result(segments, started, "; ".join(errors))

        context.logger.info(
            f"Detecting duplicates in {len(segments)} segments using {parsed.method}"
        )

        unique: List[Any] = []
        duplicates: List[Any] = []
        seen_hashes: Set[str] = set()
        seen_word_sets: List[Set[str]] = []

        for segment in segments:
            normalized = normalize_content(segment_content(segment, parsed.content_field), parsed)

            if parsed.method == "hash":
                digest = hashlib.sha256(normalized.encode("utf-8")).hexdigest()
                is_duplicate = digest in seen_hashes
                seen_hashes.add(digest)
            else:
                words = set(WORD_RE.findall(normalized))
                is_duplicate = self._is_similar(words, seen_word_sets, parsed.similarity_threshold)
                if not is_duplicate:
                    seen_word_sets.append(words)

            if is_duplicate:
                duplicates.append(segment)
            else:
                unique.append(segment)

        metrics = self.calculate_metrics(segments, unique, started)
        metrics.extra.update({
            "method": parsed.method,
            "duplicatesFound": len(duplicates),
            "duplicateRate": len(duplicates) / len(segments) if segments else 0,
        })

        context.logger.info(
            f"Duplicate detection completed: {len(duplicates)} duplicates, {len(unique)} unique"
        )

        return StepExecutionResult(
            success=True,
            output_segments=unique,
            duplicates=duplicates,
            metrics=metrics,
            count=len(unique),
            total_count=len(segments),
            duplicate_count=len(duplicates),
        )

    @staticmethod
    def _is_similar(words: Set[str], seen: List[Set[str]], threshold: float) -> bool:
        if threshold == 0:
            # Everything after the first segment counts as a duplicate
            return bool(seen)
        for seen_words in seen[-MAX_COMPARISONS:]:
            if jaccard_similarity(words, seen_words) >= threshold:
                return True
        return False

    def validate(self, config: Dict[str, Any]) -> ValidationResult:
        _, errors = self.parse_config(config)
        return ValidationResult.from_errors(errors)

    def format_output(self, result: StepExecutionResult, original_input: Any = None) -> Any:
        return {
            "data": result.output_segments,
            "duplicates": result.duplicates or [],
            "count": result.count,
            "totalCount": result.total_count,
            "duplicateCount": result.duplicate_count,
        }
