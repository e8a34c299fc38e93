import asyncio

import pytest

from deepsearch.db import Database
from deepsearch.plan_store import PlanStore, match_plan_id
from deepsearch.schemas import PlanStep, SearchPlan


def _plan(plan_id: str = "plan-1700000000000") -> SearchPlan:
    return SearchPlan(
        id=plan_id,
        query="What is the capital of France?",
        complexity="low",
        steps=[PlanStep(id=f"{plan_id}-step-0", description="Find the capital")],
    )


@pytest.mark.asyncio
async def test_get_returns_independent_copies():
    store = PlanStore()
    plan = _plan()
    await store.put(plan.id, plan)
    plan.steps[0].status = "completed"

    first = await store.get(plan.id)
    assert first.steps[0].status == "pending"
    first.steps[0].status = "error"
    first.steps.append(PlanStep(id="extra", description="extra"))

    second = await store.get(plan.id)
    assert second.steps[0].status == "pending"
    assert len(second.steps) == 1


@pytest.mark.asyncio
async def test_missing_plan_is_none():
    store = PlanStore()
    assert await store.get("plan-42") is None
    assert await store.has("plan-42") is False
    assert await store.resolve("unrelated") is None


@pytest.mark.asyncio
async def test_put_replaces_whole_snapshot():
    store = PlanStore()
    plan = _plan()
    await store.put(plan.id, plan)
    running = plan.with_step(0, plan.steps[0].transition("running"))
    await store.put(plan.id, running)
    assert (await store.get(plan.id)).steps[0].status == "running"


@pytest.mark.asyncio
async def test_concurrent_puts_keep_a_complete_snapshot():
    store = PlanStore()
    plans = [_plan().model_copy(update={"query": f"q{i}"}) for i in range(20)]
    await asyncio.gather(*(store.put(p.id, p) for p in plans))
    stored = await store.get(plans[0].id)
    assert stored.query in {p.query for p in plans}
    assert len(stored.steps) == 1


def test_match_plan_id_prefix_and_number():
    known = ["plan-1700000000000", "plan-1700000500000"]
    assert match_plan_id("plan-1700000000000", known) == "plan-1700000000000"
    assert match_plan_id("plan-17000000000", known) == "plan-1700000000000"
    assert match_plan_id("plan-1700000000000-step-0", known) == "plan-1700000000000"
    assert match_plan_id("plan-1700000500000x", known) == "plan-1700000500000"


def test_match_plan_id_nearest_within_tolerance():
    known = ["plan-1700000000000", "plan-1700000500000"]
    assert match_plan_id("plan-1700000040000x", ["plan-1700000000000"]) == "plan-1700000000000"
    assert match_plan_id("1700000499000", known) == "plan-1700000500000"
    assert match_plan_id("1700009000000", known) is None
    assert match_plan_id("banana", known) is None
    assert match_plan_id("", known) is None


@pytest.mark.asyncio
async def test_resolve_uses_fuzzy_match():
    store = PlanStore()
    plan = _plan()
    await store.put(plan.id, plan)
    resolved = await store.resolve("plan-1700000000")
    assert resolved is not None
    assert resolved.id == plan.id


@pytest.mark.asyncio
async def test_archive_survives_new_store(tmp_path):
    db = Database(str(tmp_path / "archive.db"))
    await db.init()
    plan = _plan()
    await PlanStore(archive=db).put(plan.id, plan.model_copy(update={"summary": "Paris"}))

    fresh = PlanStore(archive=db)
    loaded = await fresh.get(plan.id)
    assert loaded is not None
    assert loaded.summary == "Paris"
    assert await fresh.ids() == [plan.id]


@pytest.mark.asyncio
async def test_archive_failure_does_not_break_put(tmp_path):
    class BrokenDatabase(Database):
        async def save_plan_snapshot(self, plan_id, query, snapshot):
            raise RuntimeError("disk full")

    store = PlanStore(archive=BrokenDatabase(str(tmp_path / "broken.db")))
    plan = _plan()
    await store.put(plan.id, plan)
    assert (await store.get(plan.id)).id == plan.id
