import httpx
import openai
import pytest
from knowflow.engine.steps.ai_summarization import AiSummarizationStep
from knowflow.engine.steps.api_datasource import ApiDataSourceStep, extract_path
from knowflow.engine.steps.trigger_manual import TriggerManualStep
from knowflow.integrations.http_client import HttpClient
from knowflow.integrations.llm_provider import LLMProvider

@pytest.fixture
async def mock_http():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if request.url.path == "/missing":
            return httpx.Response(404, json={"detail": "nope"})
        return httpx.Response(200, json={"result": {"items": [{"id": 1}, {"id": 2}, {"id": 3}]}})

    HttpClient.set_client(httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    yield requests
    await HttpClient.close_client()

@pytest.mark.asyncio
async def test_trigger_passes_input_through(step_context):
    step = TriggerManualStep()
    result = await step.execute({"segments": ["a", "b"]}, {"triggerName": "Import"}, step_context)
    assert result.success
    assert result.output_segments == ["a", "b"]
    assert result.metrics.extra["triggerName"] == "Import"

def test_extract_path():
    payload = {"data": {"rows": [{"id": 1}]}}
    assert extract_path(payload, "data.rows") == [{"id": 1}]
    assert extract_path(payload, "data.rows.0.id") == 1
    assert extract_path(payload, "data.missing") is None
    assert extract_path(payload, None) is payload

@pytest.mark.asyncio
async def test_api_datasource_fetches_items(mock_http, step_context):
    config = {"url": "https://api.test/items", "params": {"page": 1}, "dataPath": "result.items", "maxItems": 2}
    result = await ApiDataSourceStep().execute(None, config, step_context)

    assert result.success
    assert result.output_segments == [{"id": 1}, {"id": 2}]
    assert result.metrics.extra["statusCode"] == 200
    assert mock_http[0].url.params["page"] == "1"

@pytest.mark.asyncio
async def test_api_datasource_http_error(mock_http, step_context):
    result = await ApiDataSourceStep().execute(None, {"url": "https://api.test/missing"}, step_context)
    assert not result.success
    assert result.error == "Data source returned HTTP 404"

@pytest.mark.asyncio
async def test_api_datasource_bad_path(mock_http, step_context):
    config = {"url": "https://api.test/items", "dataPath": "result.nothing"}
    result = await ApiDataSourceStep().execute(None, config, step_context)
    assert not result.success
    assert "result.nothing" in result.error

def test_api_datasource_validate():
    step = ApiDataSourceStep()
    assert step.validate({"url": "https://example.com"}).is_valid
    assert not step.validate({"url": "ftp://example.com"}).is_valid
    assert not step.validate({}).is_valid

@pytest.mark.asyncio
async def test_ai_summarization(monkeypatch, step_context):
    prompts = []

    async def fake_completion(**kwargs):
        prompts.append(kwargs["user_prompt"])
        return f"summary of {len(prompts)}"

    monkeypatch.setattr(LLMProvider, "chat_completion", fake_completion)
    segments = [{"content": "first text", "id": 1}, {"content": "   "}, "plain text"]
    result = await AiSummarizationStep().execute(segments, {"prompt": "TL;DR: {content}"}, step_context)

    assert result.success
    assert prompts == ["TL;DR: first text", "TL;DR: plain text"]
    assert result.output_segments == [
        {"content": "first text", "id": 1, "summary": "summary of 1"},
        {"content": "plain text", "summary": "summary of 2"},
    ]
    assert result.metrics.extra["skippedEmpty"] == 1

@pytest.mark.asyncio
async def test_ai_summarization_provider_error(monkeypatch, step_context):
    async def failing_completion(**kwargs):
        raise openai.OpenAIError("quota exceeded")

    monkeypatch.setattr(LLMProvider, "chat_completion", failing_completion)
    result = await AiSummarizationStep().execute(["text"], {}, step_context)
    assert not result.success
    assert "quota exceeded" in result.error

def test_ai_summarization_prompt_warning():
    result = AiSummarizationStep().validate({"prompt": "Summarize please"})
    assert result.is_valid
    assert result.warnings
