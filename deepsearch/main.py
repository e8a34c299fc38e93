import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse

from .config import AppSettings, load_settings
from .db import Database
from .errors import (
    DeepSearchError,
    InvalidQueryError,
    PlanAlreadyRunningError,
    PlanCreationError,
    PlanNotFoundError,
    ProviderUnavailableError,
)
from .events import EventBus
from .llm import ProviderClient
from .plan_store import PlanStore
from .providers import ProviderRegistry, build_registry
from .schemas import DeepSearchRequest, ExecutePlanRequest, PlanStatusRequest
from .service import DeepSearchService
from .tools import TavilyClient, build_toolset

logger = logging.getLogger("uvicorn.error")

ERROR_STATUS = (
    (InvalidQueryError, 400),
    (PlanNotFoundError, 404),
    (PlanAlreadyRunningError, 409),
    (PlanCreationError, 502),
    (ProviderUnavailableError, 503),
)


def http_error(exc: DeepSearchError) -> HTTPException:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_db(request: Request) -> Database:
    return request.app.state.db


def get_event_bus(request: Request) -> EventBus:
    return request.app.state.bus


def get_registry(request: Request) -> ProviderRegistry:
    return request.app.state.registry


def get_service(request: Request) -> DeepSearchService:
    return request.app.state.service


def sse_format(event: dict) -> str:
    return f"data: {json.dumps(event)}\n\n"


router = APIRouter()


@router.get("/settings")
async def get_settings_route(settings: AppSettings = Depends(get_settings)):
    return {"settings": settings.to_safe_dict()}


@router.get("/api/models")
async def list_models(registry: ProviderRegistry = Depends(get_registry)) -> List[Dict[str, Any]]:
    return [{"id": p.id, "name": p.name} for p in registry.available()]


@router.post("/api/deep-search")
async def start_deep_search(
    body: DeepSearchRequest,
    service: DeepSearchService = Depends(get_service),
):
    try:
        plan = await service.start_search(
            body.query,
            body.orchestrator_model,
            body.worker_model,
            execute_all=body.execute_all,
            conversation_turn=body.conversation_turn,
        )
    except DeepSearchError as exc:
        logger.warning("Deep search request rejected: %s", exc)
        raise http_error(exc) from exc
    return plan.to_wire()


@router.post("/api/execute-deep-search")
async def execute_deep_search(
    body: ExecutePlanRequest,
    service: DeepSearchService = Depends(get_service),
):
    try:
        provider = await service.execute_plan(body.plan_id, body.orchestrator_model)
    except DeepSearchError as exc:
        raise http_error(exc) from exc
    return {
        "message": "Plan execution started",
        "planId": body.plan_id,
        "modelProvider": provider.name,
    }


async def _plan_or_404(service: DeepSearchService, plan_id: Any, *, fuzzy: bool = False) -> Dict[str, Any]:
    if not isinstance(plan_id, str) or not plan_id.strip():
        raise HTTPException(status_code=400, detail="A valid plan ID is required.")
    lookup = service.find_search if fuzzy else service.get_search
    plan = await lookup(plan_id)
    if plan is None:
        raise HTTPException(status_code=404, detail="Plan not found")
    return plan.to_wire()


@router.post("/api/deep-search-status")
async def deep_search_status(
    body: PlanStatusRequest,
    service: DeepSearchService = Depends(get_service),
):
    return await _plan_or_404(service, body.plan_id, fuzzy=True)


@router.get("/api/deep-search/{plan_id}")
async def get_deep_search(plan_id: str, service: DeepSearchService = Depends(get_service)):
    return await _plan_or_404(service, plan_id)


@router.post("/api/deep-search/{plan_id}/stop")
async def stop_deep_search(plan_id: str, service: DeepSearchService = Depends(get_service)):
    try:
        status = await service.cancel(plan_id)
    except DeepSearchError as exc:
        raise http_error(exc) from exc
    return {"ok": True, "status": status}


@router.get("/api/deep-search/{plan_id}/events")
async def stream_events(
    plan_id: str,
    after_seq: int = 0,
    db: Database = Depends(get_db),
    bus: EventBus = Depends(get_event_bus),
    service: DeepSearchService = Depends(get_service),
):
    plan = await service.get_search(plan_id)
    if plan is None:
        raise HTTPException(status_code=404, detail="Plan not found")
    resolved_id = plan.id

    # Replay stored events, then follow live ones.
    async def event_generator():
        queue = await bus.subscribe(resolved_id)
        try:
            last_seq = after_seq
            for ev in await db.list_events(resolved_id, after_seq=after_seq):
                last_seq = max(last_seq, ev.get("seq", 0))
                yield sse_format(ev)
            while True:
                ev = await queue.get()
                if ev.get("seq", 0) <= last_seq:
                    continue
                yield sse_format(ev)
        except asyncio.CancelledError:
            pass
        finally:
            await bus.unsubscribe(resolved_id, queue)

    return StreamingResponse(event_generator(), media_type="text/event-stream")


def create_app(
    settings: AppSettings,
    *,
    db: Optional[Database] = None,
    provider_client: Optional[ProviderClient] = None,
    tavily_client: Optional[TavilyClient] = None,
    registry: Optional[ProviderRegistry] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.db.init()
        await app.state.db.save_config(app.state.settings.to_safe_dict())
        try:
            yield
        finally:
            await app.state.service.shutdown()
            await app.state.provider_client.close()
            await app.state.tavily_client.close()

    app = FastAPI(title="Deep Search Orchestrator", lifespan=lifespan)
    app.state.settings = settings
    app.state.db = db or Database(settings.database_path)
    app.state.provider_client = provider_client or ProviderClient(
        timeout=settings.request_timeout_s,
        max_output_tokens=settings.max_output_tokens,
        max_tool_steps=settings.max_tool_steps,
    )
    app.state.tavily_client = tavily_client or TavilyClient(settings.tavily_api_key)
    app.state.registry = registry or build_registry(settings)
    app.state.bus = EventBus(app.state.db)
    app.state.store = PlanStore(archive=app.state.db if settings.archive_plans else None)
    app.state.service = DeepSearchService(
        settings,
        app.state.registry,
        app.state.store,
        app.state.provider_client,
        app.state.provider_client,
        build_toolset(app.state.tavily_client, max_results=settings.web_search_max_results),
        app.state.bus,
    )
    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import uvicorn

    settings = app.state.settings
    try:
        uvicorn.run(
            "deepsearch.main:app",
            host=settings.host,
            port=settings.port,
            log_level=settings.log_level,
        )
    except KeyboardInterrupt:
        pass
