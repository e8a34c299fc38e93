import asyncio
import logging
from typing import Any, Dict, Optional

from .errors import StepExecutionError
from .events import EventBus
from .llm import ChatCompletionService
from .plan_store import PlanStore
from .prompts import STEP_PROMPT
from .providers import ModelProvider
from .schemas import ChatResult, SearchPlan, StepStatus, ToolCall
from .tools import ToolSet

logger = logging.getLogger("uvicorn.error")

CANCELLED_MESSAGE = "Cancelled before completion."


def _error_message(exc: BaseException) -> str:
    return str(exc) or exc.__class__.__name__


class StepExecutor:
    """Runs plan steps in order against the worker model, persisting every transition."""

    def __init__(
        self,
        store: PlanStore,
        chat: ChatCompletionService,
        tools: Optional[ToolSet] = None,
        bus: Optional[EventBus] = None,
        *,
        step_timeout_s: float = 120.0,
        verify_writes: bool = True,
    ) -> None:
        self.store = store
        self.chat = chat
        self.tools = tools
        self._bus = bus
        self.step_timeout_s = step_timeout_s
        self.verify_writes = verify_writes

    async def _emit(self, plan_id: str, event_type: str, payload: Dict[str, Any]) -> None:
        if not self._bus:
            return
        try:
            await self._bus.emit(plan_id, event_type, payload)
        except Exception as exc:
            logger.warning("Plan %s event %s not recorded: %s", plan_id, event_type, exc)

    async def _persist(self, plan: SearchPlan, index: int, expected: StepStatus) -> None:
        await self.store.put(plan.id, plan)
        if not self.verify_writes:
            return
        stored = await self.store.get(plan.id)
        if stored is None:
            logger.error("Plan %s not found after update", plan.id)
        elif stored.steps[index].status != expected:
            logger.error(
                "Status verification failed for %s: expected %s, got %s",
                stored.steps[index].id,
                expected,
                stored.steps[index].status,
            )

    async def _call_worker(self, plan: SearchPlan, description: str, worker: ModelProvider) -> ChatResult:
        messages = [
            {"role": "user", "content": STEP_PROMPT.format(description=description, query=plan.query)},
        ]
        try:
            return await asyncio.wait_for(
                self.chat.chat(worker, messages, tools=self.tools, stream=False),
                timeout=self.step_timeout_s,
            )
        except (asyncio.TimeoutError, TimeoutError) as exc:
            raise StepExecutionError(f"Worker call timed out after {self.step_timeout_s:g}s") from exc
        except Exception as exc:
            raise StepExecutionError(_error_message(exc)) from exc

    async def _call_until_stopped(
        self,
        plan: SearchPlan,
        description: str,
        worker: ModelProvider,
        stop_event: Optional[asyncio.Event],
    ) -> ChatResult:
        if stop_event is None:
            return await self._call_worker(plan, description, worker)
        call = asyncio.ensure_future(self._call_worker(plan, description, worker))
        stopper = asyncio.ensure_future(stop_event.wait())
        try:
            done, _ = await asyncio.wait({call, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (call, stopper):
                if not task.done():
                    task.cancel()
            await asyncio.gather(call, stopper, return_exceptions=True)
        if call in done:
            return call.result()
        raise StepExecutionError(CANCELLED_MESSAGE)

    async def _run_step(
        self,
        working: SearchPlan,
        index: int,
        worker: ModelProvider,
        stop_event: Optional[asyncio.Event],
    ) -> SearchPlan:
        step = working.steps[index]
        if step.is_terminal:
            return working
        payload = {"step_id": step.id, "index": index, "description": step.description}
        if stop_event is not None and stop_event.is_set():
            working = working.with_step(index, step.transition("error", error=CANCELLED_MESSAGE))
            await self._persist(working, index, "error")
            await self._emit(working.id, "step_error", {**payload, "message": CANCELLED_MESSAGE})
            return working

        running = step if step.status == "running" else step.transition("running")
        working = working.with_step(index, running)
        logger.info(
            "Executing step %d/%d of plan %s: %r",
            index + 1,
            len(working.steps),
            working.id,
            step.description,
        )
        await self._persist(working, index, "running")
        await self._emit(working.id, "step_started", payload)

        try:
            result = await self._call_until_stopped(working, step.description, worker, stop_event)
        except StepExecutionError as exc:
            message = _error_message(exc)
            logger.warning("Step %s failed: %s", step.id, message)
            working = working.with_step(index, running.transition("error", error=message))
            await self._persist(working, index, "error")
            await self._emit(working.id, "step_error", {**payload, "message": message})
            return working

        tool_calls = [
            ToolCall(name=item.tool_name or "unknown", output=item.result or "")
            for item in result.tool_results
        ]
        if tool_calls:
            logger.info("Step %s used %d tool calls", step.id, len(tool_calls))
        working = working.with_step(
            index,
            running.transition("completed", output=result.text, tool_calls=tool_calls),
        )
        await self._persist(working, index, "completed")
        await self._emit(working.id, "step_completed", {**payload, "tool_calls": len(tool_calls)})
        return working

    async def run(
        self,
        plan: SearchPlan,
        worker: ModelProvider,
        stop_event: Optional[asyncio.Event] = None,
    ) -> SearchPlan:
        working = plan.model_copy(deep=True)
        if not await self.store.has(working.id):
            logger.error("Plan %s not found in store before execution; storing working copy", working.id)
            await self.store.put(working.id, working)
        logger.info(
            "Starting plan %s with %d steps on worker %s",
            working.id,
            len(working.steps),
            worker.name,
        )
        for index in range(len(working.steps)):
            working = await self._run_step(working, index, worker, stop_event)

        final = await self.store.get(working.id)
        if final is None:
            logger.error("Plan %s not found after execution; restoring last working copy", working.id)
            await self.store.put(working.id, working)
            final = working
        logger.info("Plan %s finished steps: %s", final.id, final.status_counts())
        return final
