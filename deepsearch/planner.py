import logging
import math
import time
from datetime import datetime, timezone
from typing import Callable, Optional

from .errors import PlanCreationError
from .llm import StructuredGenerationService
from .prompts import PLANNER_PROMPT, PLANNER_SYSTEM
from .providers import ModelProvider
from .schemas import PlanDraft, PlanStep, SearchPlan

logger = logging.getLogger("uvicorn.error")

PLAN_ID_PREFIX = "plan-"


def make_plan_id(now: float) -> str:
    # Second granularity so re-deriving the id within the same second yields the same value.
    return f"{PLAN_ID_PREFIX}{math.floor(now) * 1000}"


def make_step_id(plan_id: str, index: int) -> str:
    return f"{plan_id}-step-{index}"


def with_plan_id(plan: SearchPlan, plan_id: str) -> SearchPlan:
    steps = [
        step.model_copy(update={"id": make_step_id(plan_id, index)})
        for index, step in enumerate(plan.steps)
    ]
    return plan.model_copy(update={"id": plan_id, "steps": steps}, deep=True)


async def build_plan(
    query: str,
    provider: ModelProvider,
    generator: StructuredGenerationService,
    *,
    clock: Callable[[], float] = time.time,
    conversation_turn: Optional[int] = None,
) -> SearchPlan:
    logger.info("Creating search plan for %r with orchestrator %s", query, provider.model)
    try:
        draft = await generator.generate_object(
            provider,
            system=PLANNER_SYSTEM,
            prompt=PLANNER_PROMPT.format(query=query),
            schema=PlanDraft,
        )
    except Exception as exc:
        logger.error("Plan creation failed for %r: %s", query, exc)
        raise PlanCreationError(f"Failed to create search plan: {exc}") from exc
    if not isinstance(draft, PlanDraft):
        raise PlanCreationError("Failed to create search plan: generator returned an unexpected result")
    if not draft.steps:
        raise PlanCreationError("Failed to create search plan: the orchestrator returned no steps")

    now = clock()
    plan_id = make_plan_id(now)
    plan = SearchPlan(
        id=plan_id,
        query=query,
        complexity=draft.complexity,
        steps=[
            PlanStep(id=make_step_id(plan_id, index), description=step.description, status="pending")
            for index, step in enumerate(draft.steps)
        ],
        conversation_turn=conversation_turn,
        created_at=datetime.fromtimestamp(now, tz=timezone.utc).isoformat().replace("+00:00", "Z"),
    )
    logger.info("Created plan %s with %d steps (complexity=%s)", plan.id, len(plan.steps), plan.complexity)
    return plan
