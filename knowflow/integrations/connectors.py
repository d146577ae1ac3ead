from typing import Any, Dict

from knowflow.engine.context import StepExecutionContext
from knowflow.engine.inputs import register_connector
from knowflow.engine.steps.api_datasource import extract_path
from knowflow.integrations.http_client import get_http_client


@register_connector("http")
async def http_connector(params: Dict[str, Any], context: StepExecutionContext) -> Any:
    """
    Fetch JSON for an `external` input source.
    params: url, method (GET/POST), headers, query, body, dataPath
    """
    client = await get_http_client()
    method = params.get("method", "GET").upper()
    context.logger.info(f"Loading external input: {method} {params['url']}")
    response = await client.request(
        method,
        params["url"],
        headers=params.get("headers") or {},
        params=params.get("query") or {},
        json=params.get("body") if method == "POST" else None,
    )
    response.raise_for_status()
    return extract_path(response.json(), params.get("dataPath"))
