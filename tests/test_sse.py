import asyncio
import json

import pytest
from asgi_lifespan import LifespanManager
from fastapi import HTTPException

from deepsearch.main import stream_events
from tests.fakes import FRANCE_QUERY


def _payload(chunk) -> dict:
    line = chunk.decode("utf-8") if isinstance(chunk, (bytes, bytearray)) else chunk
    return json.loads(line.replace("data:", "").strip())


@pytest.mark.asyncio
async def test_plan_sse_stream_replays_past_events(app_factory):
    app, _, _, _ = app_factory()
    async with LifespanManager(app):
        service = app.state.service
        plan = await service.start_search(FRANCE_QUERY, execute_all=False)
        response = await stream_events(plan.id, db=app.state.db, bus=app.state.bus, service=service)
        chunk = await asyncio.wait_for(response.body_iterator.__anext__(), timeout=1)
        payload = _payload(chunk)
        assert payload["event_type"] == "plan_created"
        assert payload["payload"]["steps"] == 2
        await response.body_iterator.aclose()


@pytest.mark.asyncio
async def test_plan_sse_stream_follows_live_events(app_factory):
    app, _, _, _ = app_factory()
    async with LifespanManager(app):
        service = app.state.service
        plan = await service.start_search(FRANCE_QUERY, execute_all=False)
        response = await stream_events(plan.id, after_seq=1, db=app.state.db, bus=app.state.bus, service=service)

        async def run_plan():
            await asyncio.sleep(0.01)
            await service.execute_plan(plan.id)
            await service.wait(plan.id, timeout=5)

        task = asyncio.create_task(run_plan())
        seen = []
        while "summary_ready" not in seen:
            chunk = await asyncio.wait_for(response.body_iterator.__anext__(), timeout=5)
            seen.append(_payload(chunk)["event_type"])
        await task
        await response.body_iterator.aclose()

        assert seen[0] == "step_started"
        assert seen.count("step_completed") == 2
        assert "plan_created" not in seen


@pytest.mark.asyncio
async def test_plan_sse_stream_unknown_plan(app_factory):
    app, _, _, _ = app_factory()
    async with LifespanManager(app):
        with pytest.raises(HTTPException) as exc_info:
            await stream_events("missing-plan", db=app.state.db, bus=app.state.bus, service=app.state.service)
        assert exc_info.value.status_code == 404
