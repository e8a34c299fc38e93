import logging
from typing import Any, Dict, List, Optional

from .errors import SummaryGenerationError
from .events import EventBus
from .llm import StructuredGenerationService
from .plan_store import PlanStore
from .prompts import STEP_RESULT_TEMPLATE, SUMMARIZER_SYSTEM, SUMMARY_PROMPT
from .providers import ModelProvider
from .schemas import PlanStep, SearchPlan, SummaryResult

logger = logging.getLogger("uvicorn.error")

NO_COMPLETED_STEPS_SUMMARY = "Unable to generate summary as no search steps were completed successfully."


def format_step_results(steps: List[PlanStep]) -> str:
    blocks = []
    for number, step in enumerate(steps, start=1):
        if step.status == "completed":
            detail = f"Output: {step.output or ''}"
        else:
            detail = f"Error: {step.error or ''}"
        blocks.append(
            STEP_RESULT_TEMPLATE.format(
                number=number,
                description=step.description,
                status=step.status,
                detail=detail,
            )
        )
    return "\n\n".join(blocks)


class Summarizer:
    """Turns finished step outputs into the plan's final summary."""

    def __init__(
        self,
        store: PlanStore,
        generator: StructuredGenerationService,
        bus: Optional[EventBus] = None,
    ) -> None:
        self.store = store
        self.generator = generator
        self._bus = bus

    async def _emit(self, plan_id: str, event_type: str, payload: Dict[str, Any]) -> None:
        if not self._bus:
            return
        try:
            await self._bus.emit(plan_id, event_type, payload)
        except Exception as exc:
            logger.warning("Plan %s event %s not recorded: %s", plan_id, event_type, exc)

    async def _generate(self, plan: SearchPlan, steps: List[PlanStep], provider: ModelProvider) -> str:
        try:
            result = await self.generator.generate_object(
                provider,
                system=SUMMARIZER_SYSTEM,
                prompt=SUMMARY_PROMPT.format(query=plan.query, step_results=format_step_results(steps)),
                schema=SummaryResult,
            )
        except Exception as exc:
            raise SummaryGenerationError(str(exc) or exc.__class__.__name__) from exc
        summary = (getattr(result, "summary", "") or "").strip()
        if not summary:
            raise SummaryGenerationError("the model returned an empty summary")
        return summary

    async def compose(self, plan: SearchPlan, provider: ModelProvider) -> str:
        finished = [step for step in plan.steps if step.status in ("completed", "error")]
        if not any(step.status == "completed" for step in finished):
            logger.info("No completed steps to summarize for plan %s", plan.id)
            return NO_COMPLETED_STEPS_SUMMARY
        try:
            return await self._generate(plan, finished, provider)
        except SummaryGenerationError as exc:
            logger.error("Error generating summary for plan %s: %s", plan.id, exc)
            return f"Error generating summary: {exc}"

    async def run(self, plan: SearchPlan, provider: ModelProvider) -> SearchPlan:
        logger.info("Generating summary for plan %s", plan.id)
        summary = await self.compose(plan, provider)
        final = plan.with_summary(summary)
        await self.store.put(final.id, final)
        await self._emit(final.id, "summary_ready", {"summary": summary})
        return final
