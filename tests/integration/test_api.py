import httpx
import pytest
from types import SimpleNamespace
from knowflow.api import executions
from knowflow.database import get_db
from knowflow.main import app
from knowflow.services.cancel_registry import InMemoryCancelRegistry, get_cancel_registry
from knowflow.services.execution_service import run_execution

API = "/api/v1"

WORKFLOW = {
    "name": "Clean segments",
    "description": "Strip markup",
    "tags": ["cleanup"],
    "nodes": [
        {"id": "trigger", "type": "trigger_manual", "name": "Start"},
        {
            "id": "filter",
            "type": "rule_based_filter",
            "name": "Remove HTML",
            "config": {
                "rules": [{"id": "r1", "name": "rm-html", "pattern": "<[^>]*>", "flags": "g", "action": "remove"}],
                "defaultAction": "keep",
            },
        },
    ],
    "edges": [{"source": "trigger", "target": "filter"}],
}

@pytest.fixture
def registry():
    return InMemoryCancelRegistry()

@pytest.fixture
def queued(monkeypatch):
    calls = []
    monkeypatch.setattr(executions, "execute_workflow_task", SimpleNamespace(delay=lambda *args: calls.append(args)))
    return calls

@pytest.fixture
async def client(session_factory, registry, queued):
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_cancel_registry] = lambda: registry
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()

async def create_workflow(client, body=WORKFLOW, user="user-1"):
    response = await client.post(f"{API}/workflows", json=body, headers={"X-User-Id": user})
    assert response.status_code == 201, response.text
    return response.json()

@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}

@pytest.mark.asyncio
async def test_workflow_crud(client):
    created = await create_workflow(client)
    workflow_id = created["id"]
    assert created["version"] == 1
    assert created["userId"] == "user-1"
    assert created["nodes"][1]["config"]["defaultAction"] == "keep"

    listing = await client.get(f"{API}/workflows", headers={"X-User-Id": "user-1"})
    assert [w["id"] for w in listing.json()] == [workflow_id]
    other_user = await client.get(f"{API}/workflows", headers={"X-User-Id": "someone-else"})
    assert other_user.json() == []

    renamed = await client.put(f"{API}/workflows/{workflow_id}", json={"name": "Renamed"})
    assert renamed.json()["name"] == "Renamed"
    assert renamed.json()["version"] == 1

    regraphed = await client.put(f"{API}/workflows/{workflow_id}", json={"edges": []})
    assert regraphed.json()["version"] == 2

    copy = await client.post(f"{API}/workflows/{workflow_id}/duplicate")
    assert copy.status_code == 201
    assert copy.json()["name"] == "Renamed (Copy)"

    deleted = await client.delete(f"{API}/workflows/{workflow_id}")
    assert deleted.status_code == 204
    assert (await client.get(f"{API}/workflows/{workflow_id}")).status_code == 404

@pytest.mark.asyncio
async def test_save_rejects_cyclic_graph(client):
    body = {**WORKFLOW, "edges": WORKFLOW["edges"] + [{"source": "filter", "target": "trigger"}]}
    response = await client.post(f"{API}/workflows", json=body)
    assert response.status_code == 422
    assert any("circular" in e for e in response.json()["errors"])

@pytest.mark.asyncio
async def test_delete_node_removes_its_edges(client):
    workflow_id = (await create_workflow(client))["id"]
    response = await client.delete(f"{API}/workflows/{workflow_id}/nodes/trigger")
    assert response.status_code == 200
    body = response.json()
    assert [n["id"] for n in body["nodes"]] == ["filter"]
    assert body["edges"] == []
    assert body["version"] == 2

@pytest.mark.asyncio
async def test_delete_node_keeps_graph_valid(client):
    reads_start = [{"type": "previous_node", "nodeId": "start"}]
    body = {
        "name": "Chain",
        "nodes": [
            {"id": "start", "type": "trigger_manual"},
            {"id": "middle", "type": "trigger_manual"},
            {"id": "end", "type": "trigger_manual", "inputSources": reads_start},
        ],
        "edges": [{"source": "start", "target": "middle"}, {"source": "middle", "target": "end"}],
    }
    workflow_id = (await create_workflow(client, body))["id"]

    # end would read from a node that is no longer upstream of it
    rejected = await client.delete(f"{API}/workflows/{workflow_id}/nodes/middle")
    assert rejected.status_code == 422
    assert rejected.json()["errors"] == ["Node 'end' reads from 'start', which is not one of its predecessors"]
    unchanged = (await client.get(f"{API}/workflows/{workflow_id}")).json()
    assert [n["id"] for n in unchanged["nodes"]] == ["start", "middle", "end"]

    response = await client.delete(f"{API}/workflows/{workflow_id}/nodes/start")
    assert response.status_code == 200
    body = response.json()
    assert body["nodes"][1]["inputSources"] == []
    assert [(e["source"], e["target"]) for e in body["edges"]] == [("middle", "end")]

@pytest.mark.asyncio
async def test_validate_endpoint(client):
    body = {**WORKFLOW, "nodes": [{"id": "x", "type": "missing_type", "name": "X"}], "edges": []}
    workflow_id = (await create_workflow(client, body))["id"]
    response = await client.post(f"{API}/workflows/{workflow_id}/validate")
    assert response.json() == {"valid": False, "errors": ["Node 'X': Unknown step type: missing_type"]}

@pytest.mark.asyncio
async def test_execute_queues_and_worker_completes(client, session_factory, registry, queued):
    workflow_id = (await create_workflow(client))["id"]

    response = await client.post(
        f"{API}/workflows/{workflow_id}/execute",
        json={"inputData": ["<p>hi</p>", "hello world"], "documentId": "doc-1"},
        headers={"X-User-Id": "user-2"},
    )
    assert response.status_code == 202
    body = response.json()
    assert body["status"] == "pending"
    execution_id = body["executionId"]
    assert queued == [(execution_id, workflow_id, ["<p>hi</p>", "hello world"], "user-2", "doc-1", None)]

    async with session_factory() as session:
        await run_execution(session, registry, execution_id)

    status = (await client.get(f"{API}/executions/{execution_id}")).json()
    assert status["status"] == "completed"
    assert status["userId"] == "user-2"
    assert status["progress"]["overallProgress"] == 100
    snapshots = {s["nodeId"]: s for s in status["nodeSnapshots"]}
    assert snapshots["filter"]["metrics"]["ruleMatches"] == {"r1": 1}
    assert snapshots["filter"]["output"]["data"] == ["hello world"]

    history = (await client.get(f"{API}/workflows/{workflow_id}/executions")).json()
    assert [h["id"] for h in history] == [execution_id]

@pytest.mark.asyncio
async def test_execute_rejects_invalid_config_without_record(client, queued):
    body = {
        **WORKFLOW,
        "nodes": [{"id": "filter", "type": "rule_based_filter", "config": {"rules": [], "defaultAction": "maybe"}}],
        "edges": [],
    }
    workflow_id = (await create_workflow(client, body))["id"]

    response = await client.post(f"{API}/workflows/{workflow_id}/execute", json={})
    assert response.status_code == 422
    assert response.json()["errors"]
    assert queued == []
    assert (await client.get(f"{API}/workflows/{workflow_id}/executions")).json() == []

@pytest.mark.asyncio
async def test_execute_unknown_workflow(client):
    response = await client.post(f"{API}/workflows/missing/execute", json={})
    assert response.status_code == 404

@pytest.mark.asyncio
async def test_cancel_execution(client, registry):
    workflow_id = (await create_workflow(client))["id"]
    execution_id = (await client.post(f"{API}/workflows/{workflow_id}/execute", json={})).json()["executionId"]

    response = await client.post(f"{API}/executions/{execution_id}/cancel", json={"reason": "no longer needed"})
    assert response.status_code == 200
    assert response.json()["status"] == "cancelled"
    assert response.json()["cancellationReason"] == "no longer needed"
    assert (await registry.get(execution_id)).cancel_requested

    again = await client.post(f"{API}/executions/{execution_id}/cancel")
    assert again.status_code == 409

@pytest.mark.asyncio
async def test_pause_requires_running_execution(client):
    workflow_id = (await create_workflow(client))["id"]
    execution_id = (await client.post(f"{API}/workflows/{workflow_id}/execute", json={})).json()["executionId"]
    response = await client.post(f"{API}/executions/{execution_id}/pause")
    assert response.status_code == 409

@pytest.mark.asyncio
async def test_unknown_execution(client):
    assert (await client.get(f"{API}/executions/nope")).status_code == 404

@pytest.mark.asyncio
async def test_steps_endpoints(client):
    listing = (await client.get(f"{API}/steps")).json()
    types = {s["type"] for s in listing}
    assert {"rule_based_filter", "trigger_manual", "duplicate_segment"} <= types

    detail = await client.get(f"{API}/steps/rule_based_filter")
    assert detail.json()["name"] == "Rule-Based Content Filtering"
    assert "rules" in detail.json()["configSchema"]["properties"]

    assert (await client.get(f"{API}/steps/nope")).status_code == 404

    invalid = await client.post(
        f"{API}/steps/rule_based_filter/validate",
        json={"rules": [{"id": "r1", "name": "bad", "pattern": "(", "action": "remove"}], "defaultAction": "keep"},
    )
    assert invalid.json()["isValid"] is False
    assert invalid.json()["errors"][0].startswith("Rule 0: Invalid regex pattern")

@pytest.mark.asyncio
async def test_step_dry_run(client):
    config = {
        "rules": [{"id": "r1", "name": "rm-html", "pattern": "<[^>]*>", "action": "remove"}],
        "defaultAction": "keep",
    }
    response = await client.post(
        f"{API}/steps/test",
        json={"stepType": "rule_based_filter", "config": config, "inputSegments": ["<b>x</b>", "plain text"]},
    )
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["stepName"] == "Rule-Based Content Filtering"
    assert body["output"]["data"] == ["plain text"]
    assert body["output"]["filtered"] == ["<b>x</b>"]
    assert body["metrics"]["ruleMatches"] == {"r1": 1}

@pytest.mark.asyncio
async def test_step_dry_run_rejects_bad_config(client):
    invalid = await client.post(
        f"{API}/steps/test", json={"stepType": "rule_based_filter", "config": {"rules": [], "defaultAction": "maybe"}}
    )
    assert invalid.status_code == 422
    assert invalid.json()["errors"]

    unknown = await client.post(f"{API}/steps/test", json={"stepType": "nope", "config": {}})
    assert unknown.status_code == 422

@pytest.mark.asyncio
async def test_execute_sync_returns_finished_record(client, queued):
    workflow_id = (await create_workflow(client))["id"]

    response = await client.post(
        f"{API}/workflows/{workflow_id}/execute/sync",
        json={"inputData": ["<p>hi</p>", "hello world"]},
        headers={"X-User-Id": "user-3"},
    )
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "completed"
    assert body["userId"] == "user-3"
    assert [s["nodeId"] for s in body["nodeSnapshots"]] == ["trigger", "filter"]
    assert queued == []

    stored = (await client.get(f"{API}/executions/{body['id']}")).json()
    assert stored["status"] == "completed"

@pytest.mark.asyncio
async def test_execution_snapshots(client):
    workflow_id = (await create_workflow(client))["id"]
    execution_id = (
        await client.post(f"{API}/workflows/{workflow_id}/execute/sync", json={"inputData": ["<i>a</i>", "b c"]})
    ).json()["id"]

    snapshots = (await client.get(f"{API}/executions/{execution_id}/snapshots")).json()
    assert [(s["nodeId"], s["status"]) for s in snapshots] == [("trigger", "succeeded"), ("filter", "succeeded")]

    single = await client.get(f"{API}/executions/{execution_id}/snapshots/filter")
    assert single.status_code == 200
    assert single.json()["output"]["data"] == ["b c"]

    assert (await client.get(f"{API}/executions/{execution_id}/snapshots/ghost")).status_code == 404
    assert (await client.get(f"{API}/executions/nope/snapshots")).status_code == 404

@pytest.mark.asyncio
async def test_workflow_stats(client):
    workflow_id = (await create_workflow(client))["id"]
    empty = (await client.get(f"{API}/workflows/{workflow_id}/stats")).json()
    assert empty == {
        "totalExecutions": 0,
        "successfulExecutions": 0,
        "failedExecutions": 0,
        "averageDurationMs": 0.0,
        "lastExecutionAt": None,
    }

    for _ in range(2):
        await client.post(f"{API}/workflows/{workflow_id}/execute/sync", json={"inputData": ["x y z"]})
    # Queued but never picked up by a worker
    await client.post(f"{API}/workflows/{workflow_id}/execute", json={})

    stats = (await client.get(f"{API}/workflows/{workflow_id}/stats")).json()
    assert stats["totalExecutions"] == 3
    assert stats["successfulExecutions"] == 2
    assert stats["failedExecutions"] == 0
    assert stats["averageDurationMs"] >= 0
    assert stats["lastExecutionAt"] is not None

    assert (await client.get(f"{API}/workflows/missing/stats")).status_code == 404
