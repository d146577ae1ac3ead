import httpx
import json
import time
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from knowflow.engine.context import StepExecutionContext, StepExecutionResult, ValidationResult
from knowflow.engine.steps.base import BaseStep
from knowflow.engine.steps.registry import register_step
from knowflow.integrations.http_client import get_http_client


class ApiDataSourceConfig(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    url: str = Field(..., min_length=1)
    method: Literal["GET", "POST"] = "GET"
    headers: Dict[str, str] = Field(default_factory=dict)
    params: Dict[str, Any] = Field(default_factory=dict)
    body: Optional[Dict[str, Any]] = None
    # Dotted path to the list of items inside the JSON response
    data_path: Optional[str] = None
    max_items: Optional[int] = Field(None, gt=0)


def extract_path(payload: Any, path: Optional[str]) -> Any:
    if not path:
        return payload
    value = payload
    for part in path.split("."):
        if isinstance(value, dict):
            value = value.get(part)
        elif isinstance(value, list) and part.isdigit() and int(part) < len(value):
            value = value[int(part)]
        else:
            return None
    return value


@register_step
class ApiDataSourceStep(BaseStep):
    type = "api_datasource"
    name = "API Data Source"
    description = "Fetch items from an HTTP JSON endpoint"
    input_types = ()
    output_types = ("json_item",)
    categories = ("datasource",)
    config_model = ApiDataSourceConfig

    async def execute(
        self, input: Any, config: Dict[str, Any], context: StepExecutionContext
    ) -> StepExecutionResult:
        started = time.perf_counter()
        parsed, errors = self.parse_config(config)
        if errors:
            return self.error_result([], started, "; ".join(errors))

        context.logger.info(f"Fetching data source: {parsed.method} {parsed.url}")
        client = await get_http_client()
        try:
            response = await client.request(
                method=parsed.method,
                url=parsed.url,
                headers=parsed.headers,
                params=parsed.params,
                json=parsed.body,
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as e:
            return self.error_result([], started, f"Data source returned HTTP {e.response.status_code}")
        except httpx.HTTPError as e:
            return self.error_result([], started, f"Data source request failed: {e}")
        except json.JSONDecodeError:
            return self.error_result([], started, "Data source did not return JSON")

        items = extract_path(payload, parsed.data_path)
        if items is None:
            return self.error_result([], started, f"No data found at path '{parsed.data_path}'")
        items = items if isinstance(items, list) else [items]
        if parsed.max_items:
            items = items[:parsed.max_items]

        metrics = self.calculate_metrics(items, items, started)
        metrics.extra["statusCode"] = response.status_code
        return StepExecutionResult(
            success=True,
            output_segments=items,
            metrics=metrics,
            count=len(items),
            total_count=len(items),
        )

    def validate(self, config: Dict[str, Any]) -> ValidationResult:
        parsed, errors = self.parse_config(config)
        if parsed is not None and not parsed.url.startswith(("http://", "https://")):
            errors.append("url: must start with http:// or https://")
        return ValidationResult.from_errors(errors)
