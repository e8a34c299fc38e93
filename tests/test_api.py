import asyncio

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from deepsearch.errors import GenerationError
from tests.fakes import FRANCE_QUERY, FRANCE_STEPS, FakeProviderClient


async def wait_for_plan(app, plan_id: str, timeout: float = 5.0) -> None:
    task = app.state.service.tasks.get(plan_id)
    if task is not None:
        await asyncio.wait_for(task, timeout=timeout)


@pytest.mark.asyncio
async def test_deep_search_returns_plan_json(client):
    client.app.state.service.clock = lambda: 1700000000.7
    res = await client.post("/api/deep-search", json={"query": FRANCE_QUERY, "executeAll": False})
    assert res.status_code == 200
    data = res.json()
    assert data["id"] == "plan-1700000000000"
    assert data["query"] == FRANCE_QUERY
    assert data["complexity"] == "medium"
    assert [s["description"] for s in data["steps"]] == FRANCE_STEPS
    assert [s["status"] for s in data["steps"]] == ["pending", "pending"]
    assert "summary" not in data


@pytest.mark.asyncio
@pytest.mark.parametrize("body", [{}, {"query": ""}, {"query": "  "}, {"query": 7}])
async def test_deep_search_rejects_bad_query(client, body):
    res = await client.post("/api/deep-search", json=body)
    assert res.status_code == 400
    assert res.json()["detail"] == "A valid query string is required."


@pytest.mark.asyncio
async def test_deep_search_unknown_model_is_503(client):
    res = await client.post("/api/deep-search", json={"query": FRANCE_QUERY, "orchestratorModel": "gemini-flash"})
    assert res.status_code == 503


@pytest.mark.asyncio
async def test_deep_search_plan_failure_is_502(app_factory):
    app, _, _, _ = app_factory(fake_provider=FakeProviderClient(plan_error=GenerationError("no JSON")))
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            res = await client.post("/api/deep-search", json={"query": FRANCE_QUERY})
            assert res.status_code == 502
            assert "Failed to create search plan" in res.json()["detail"]


@pytest.mark.asyncio
async def test_full_run_is_visible_through_status_endpoints(client):
    res = await client.post("/api/deep-search", json={"query": FRANCE_QUERY})
    plan_id = res.json()["id"]
    await wait_for_plan(client.app, plan_id)

    status = await client.post("/api/deep-search-status", json={"planId": plan_id})
    assert status.status_code == 200
    data = status.json()
    assert [s["status"] for s in data["steps"]] == ["completed", "completed"]
    assert data["summary"] == client.fake_provider.summary

    same = await client.get(f"/api/deep-search/{plan_id}")
    assert same.json() == data


@pytest.mark.asyncio
async def test_status_endpoint_errors_and_fuzzy_ids(client):
    missing = await client.post("/api/deep-search-status", json={})
    assert missing.status_code == 400
    unknown = await client.get("/api/deep-search/plan-1")
    assert unknown.status_code == 404

    res = await client.post("/api/deep-search", json={"query": FRANCE_QUERY, "executeAll": False})
    plan_id = res.json()["id"]
    truncated = await client.post("/api/deep-search-status", json={"planId": plan_id[:-3]})
    assert truncated.status_code == 200
    assert truncated.json()["id"] == plan_id
    exact_only = await client.get(f"/api/deep-search/{plan_id[:-3]}")
    assert exact_only.status_code == 404
    stop_truncated = await client.post(f"/api/deep-search/{plan_id[:-3]}/stop")
    assert stop_truncated.status_code == 404


@pytest.mark.asyncio
async def test_execute_deep_search_endpoint(client):
    res = await client.post("/api/deep-search", json={"query": FRANCE_QUERY, "executeAll": False})
    plan_id = res.json()["id"]

    started = await client.post("/api/execute-deep-search", json={"planId": plan_id})
    assert started.status_code == 200
    body = started.json()
    assert body["planId"] == plan_id
    assert body["modelProvider"] == "GPT-4o Mini (OpenAI)"
    await wait_for_plan(client.app, plan_id)

    again = await client.post("/api/execute-deep-search", json={"planId": plan_id})
    assert again.status_code == 409
    missing = await client.post("/api/execute-deep-search", json={"planId": "plan-404"})
    assert missing.status_code == 404
    invalid = await client.post("/api/execute-deep-search", json={})
    assert invalid.status_code == 400


@pytest.mark.asyncio
async def test_stop_endpoint(app_factory):
    fake = FakeProviderClient(step_delays={FRANCE_STEPS[0]: 5.0})
    app, _, _, _ = app_factory(fake_provider=fake)
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            res = await client.post("/api/deep-search", json={"query": FRANCE_QUERY})
            plan_id = res.json()["id"]
            stop = await client.post(f"/api/deep-search/{plan_id}/stop")
            assert stop.status_code == 200
            assert stop.json() == {"ok": True, "status": "stopping"}
            await wait_for_plan(app, plan_id)

            data = (await client.get(f"/api/deep-search/{plan_id}")).json()
            assert [s["status"] for s in data["steps"]] == ["error", "error"]
            missing = await client.post("/api/deep-search/missing-plan/stop")
            assert missing.status_code == 404


@pytest.mark.asyncio
async def test_models_lists_only_available_providers(client):
    res = await client.get("/api/models")
    assert res.status_code == 200
    ids = [m["id"] for m in res.json()]
    assert ids == ["gpt-4o-mini", "gpt-4o", "gpt-4.5-preview"]
    assert res.json()[0] == {"id": "gpt-4o-mini", "name": "GPT-4o Mini (OpenAI)"}
