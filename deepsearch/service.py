import asyncio
import logging
import time
from typing import Any, Callable, Dict, Optional

from .config import AppSettings
from .errors import (
    InvalidQueryError,
    PlanAlreadyRunningError,
    PlanNotFoundError,
    ProviderUnavailableError,
)
from .events import EventBus
from .executor import StepExecutor
from .llm import ChatCompletionService, StructuredGenerationService
from .plan_store import PlanStore
from .planner import build_plan, make_plan_id, with_plan_id
from .providers import ModelProvider, ProviderRegistry
from .schemas import SearchPlan
from .summarizer import Summarizer
from .tools import ToolSet

logger = logging.getLogger("uvicorn.error")


class DeepSearchService:
    """Starts deep searches, runs them in the background and answers progress polls."""

    def __init__(
        self,
        settings: AppSettings,
        registry: ProviderRegistry,
        store: PlanStore,
        chat: ChatCompletionService,
        generator: StructuredGenerationService,
        tools: Optional[ToolSet] = None,
        bus: Optional[EventBus] = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.registry = registry
        self.store = store
        self.generator = generator
        self._bus = bus
        self.clock = clock
        self.executor = StepExecutor(
            store,
            chat,
            tools,
            bus,
            step_timeout_s=settings.step_timeout_s,
        )
        self.summarizer = Summarizer(store, generator, bus)
        self.tasks: Dict[str, asyncio.Task] = {}
        self.stop_events: Dict[str, asyncio.Event] = {}
        self._id_lock = asyncio.Lock()

    async def _emit(self, plan_id: str, event_type: str, payload: Dict[str, Any]) -> None:
        if not self._bus:
            return
        try:
            await self._bus.emit(plan_id, event_type, payload)
        except Exception as exc:
            logger.warning("Plan %s event %s not recorded: %s", plan_id, event_type, exc)

    def resolve_provider(self, model_id: Optional[str], role: str) -> ModelProvider:
        provider = self.registry.get(model_id)
        if provider is None:
            raise ProviderUnavailableError(f"Model provider '{model_id}' for the {role} was not found.")
        if not provider.available:
            raise ProviderUnavailableError(
                f"Model provider '{model_id}' for the {role} is not available. API key might be missing."
            )
        return provider

    async def _store_new_plan(self, plan: SearchPlan) -> SearchPlan:
        # Ids have second granularity; a second plan created in the same second takes the next free slot.
        async with self._id_lock:
            while await self.store.has(plan.id):
                taken = plan.id
                plan = with_plan_id(plan, make_plan_id(int(taken.rsplit("-", 1)[1]) / 1000 + 1))
                logger.warning("Plan id %s already in use; using %s", taken, plan.id)
            await self.store.put(plan.id, plan)
        if await self.store.has(plan.id):
            logger.info("Stored plan %s", plan.id)
        else:
            logger.error("Failed to store plan %s", plan.id)
        return plan

    async def start_search(
        self,
        query: Any,
        orchestrator_model_id: Optional[str] = None,
        worker_model_id: Optional[str] = None,
        *,
        execute_all: bool = True,
        conversation_turn: Optional[int] = None,
    ) -> SearchPlan:
        if not isinstance(query, str) or not query.strip():
            raise InvalidQueryError("A valid query string is required.")
        orchestrator = self.resolve_provider(
            orchestrator_model_id or self.settings.default_orchestrator_model, "orchestrator"
        )
        worker = self.resolve_provider(worker_model_id or self.settings.default_worker_model, "worker")

        plan = await build_plan(
            query,
            orchestrator,
            self.generator,
            clock=self.clock,
            conversation_turn=conversation_turn,
        )
        plan = await self._store_new_plan(plan)
        await self._emit(
            plan.id,
            "plan_created",
            {"steps": len(plan.steps), "complexity": plan.complexity, "query": plan.query},
        )
        if execute_all:
            logger.info("Executing plan %s with %d steps in the background", plan.id, len(plan.steps))
            self._launch(plan, worker)
        return plan

    async def get_search(self, plan_id: str) -> Optional[SearchPlan]:
        if not plan_id:
            return None
        return await self.store.get(plan_id)

    async def find_search(self, plan_id: str) -> Optional[SearchPlan]:
        """Like get_search, but accepts ids the UI truncated or reformatted."""
        if not plan_id:
            return None
        return await self.store.resolve(plan_id)

    async def execute_plan(self, plan_id: Any, model_id: Optional[str] = None) -> ModelProvider:
        if not isinstance(plan_id, str) or not plan_id.strip():
            raise InvalidQueryError("A valid plan ID is required.")
        plan = await self.store.get(plan_id)
        if plan is None:
            raise PlanNotFoundError(f"Plan {plan_id} not found.")
        if plan.id in self.tasks:
            raise PlanAlreadyRunningError(f"Plan {plan.id} is already running.")
        if plan.summary is not None:
            raise PlanAlreadyRunningError(f"Plan {plan.id} has already been executed.")
        available = self.registry.available()
        if not available:
            raise ProviderUnavailableError(
                "No model providers available. Please add an API key for at least one provider."
            )
        provider = self.registry.get(model_id)
        if provider is None or not provider.available:
            provider = available[0]
        logger.info("Executing plan %s with %s", plan.id, provider.name)
        self._launch(plan, provider)
        return provider

    async def run_pipeline(
        self,
        plan: SearchPlan,
        worker: ModelProvider,
        stop_event: Optional[asyncio.Event] = None,
    ) -> SearchPlan:
        executed = await self.executor.run(plan, worker, stop_event=stop_event)
        final = await self.summarizer.run(executed, worker)
        await self._emit(final.id, "plan_completed", {"statuses": final.status_counts()})
        logger.info("Plan execution complete for %s", final.id)
        return final

    def _launch(self, plan: SearchPlan, worker: ModelProvider) -> asyncio.Task:
        if plan.id in self.tasks:
            raise PlanAlreadyRunningError(f"Plan {plan.id} is already running.")
        stop_event = asyncio.Event()
        self.stop_events[plan.id] = stop_event

        async def run_and_cleanup() -> None:
            try:
                await self.run_pipeline(plan, worker, stop_event)
            except Exception as exc:
                logger.exception("Background execution error for plan %s", plan.id)
                await self._emit(plan.id, "execution_failed", {"message": str(exc)})
            finally:
                self.tasks.pop(plan.id, None)
                self.stop_events.pop(plan.id, None)

        task = asyncio.create_task(run_and_cleanup())
        self.tasks[plan.id] = task
        return task

    async def cancel(self, plan_id: str) -> str:
        stop_event = self.stop_events.get(plan_id)
        if stop_event is not None:
            if not stop_event.is_set():
                stop_event.set()
                logger.info("Stop requested for plan %s", plan_id)
            return "stopping"
        plan = await self.store.get(plan_id)
        if plan is None:
            raise PlanNotFoundError(f"Plan {plan_id} not found.")
        if plan.summary is not None:
            return "completed"
        return "idle"

    async def wait(self, plan_id: str, timeout: Optional[float] = None) -> Optional[SearchPlan]:
        task = self.tasks.get(plan_id)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        return await self.store.get(plan_id)

    async def shutdown(self, grace_s: float = 5.0) -> None:
        for stop_event in list(self.stop_events.values()):
            stop_event.set()
        running = dict(self.tasks)
        if not running:
            return
        # Stopped pipelines still write their cancelled steps and summary.
        _, pending = await asyncio.wait(list(running.values()), timeout=grace_s)
        for plan_id, task in running.items():
            if task in pending:
                logger.warning("Plan %s did not stop within %.1fs; cancelling", plan_id, grace_s)
                task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
