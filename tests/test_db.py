import asyncio

import pytest

from deepsearch.db import Database


@pytest.mark.asyncio
async def test_events_are_numbered_per_plan(tmp_path):
    db = Database(str(tmp_path / "events.db"))
    await db.init()
    await asyncio.gather(*(db.add_event("plan-1", "step_started", {"index": i}) for i in range(5)))
    await db.add_event("plan-2", "plan_created", {})

    events = await db.list_events("plan-1")
    assert [ev["seq"] for ev in events] == [1, 2, 3, 4, 5]
    assert (await db.list_events("plan-2"))[0]["seq"] == 1
    assert [ev["seq"] for ev in await db.list_events("plan-1", after_seq=3)] == [4, 5]


@pytest.mark.asyncio
async def test_plan_snapshot_upsert(tmp_path):
    db = Database(str(tmp_path / "plans.db"))
    await db.init()
    await db.save_plan_snapshot("plan-1", "q", {"id": "plan-1", "steps": []})
    await db.save_plan_snapshot("plan-1", "q", {"id": "plan-1", "steps": [], "summary": "done"})

    assert (await db.load_plan_snapshot("plan-1"))["summary"] == "done"
    assert await db.load_plan_snapshot("plan-2") is None
    assert await db.list_plan_ids() == ["plan-1"]
