from typing import Any, Dict, List, Literal, Optional
import time

import anthropic
import openai
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from knowflow.engine.context import StepExecutionContext, StepExecutionResult, ValidationResult
from knowflow.engine.steps.base import BaseStep, segment_content
from knowflow.engine.steps.registry import register_step
from knowflow.integrations.llm_provider import LLMProvider

DEFAULT_PROMPT = "Summarize the following content in a few sentences:\n\n{content}"


class AiSummarizationConfig(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    provider: Literal["openai", "anthropic"] = "openai"
    model: str = "gpt-4o-mini"
    prompt: str = DEFAULT_PROMPT
    system_prompt: Optional[str] = None
    temperature: float = Field(0.3, ge=0, le=2)
    max_tokens: int = Field(500, gt=0)
    content_field: Optional[str] = None
    output_field: str = "summary"
    skip_empty: bool = True


@register_step
class AiSummarizationStep(BaseStep):
    type = "ai_summarization"
    name = "AI Summarization"
    description = "Summarize each segment with an LLM provider"
    categories = ("ai", "transform")
    config_model = AiSummarizationConfig

    async def execute(
        self, input: Any, config: Dict[str, Any], context: StepExecutionContext
    ) -> StepExecutionResult:
        started = time.perf_counter()
        segments = self.unwrap_input(input)
        parsed, errors = self.parse_config(config)
        if errors:
            return self.error_result(segments, started, "; ".join(errors))

        context.logger.info(f"Summarizing {len(segments)} segments with {parsed.provider}/{parsed.model}")

        output: List[Any] = []
        skipped = 0
        for segment in segments:
            content = segment_content(segment, parsed.content_field)
            if not content.strip() and parsed.skip_empty:
                skipped += 1
                continue
            try:
                summary = await LLMProvider.chat_completion(
                    provider=parsed.provider,
                    model=parsed.model,
                    user_prompt=parsed.prompt.replace("{content}", content),
                    system_prompt=parsed.system_prompt,
                    temperature=parsed.temperature,
                    max_tokens=parsed.max_tokens,
                )
            except (openai.OpenAIError, anthropic.AnthropicError) as e:
                return self.error_result(segments, started, f"LLM request failed: {e}")

            base = dict(segment) if isinstance(segment, dict) else {"content": content}
            base[parsed.output_field] = summary
            output.append(base)

        metrics = self.calculate_metrics(segments, output, started)
        metrics.extra["skippedEmpty"] = skipped
        return StepExecutionResult(
            success=True,
            output_segments=output,
            metrics=metrics,
            count=len(output),
            total_count=len(segments),
        )

    def validate(self, config: Dict[str, Any]) -> ValidationResult:
        parsed, errors = self.parse_config(config)
        warnings = []
        if parsed is not None and "{content}" not in parsed.prompt:
            warnings.append("prompt does not contain {content}; segment text will not be sent")
        return ValidationResult.from_errors(errors, warnings)
