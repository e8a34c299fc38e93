from pathlib import Path

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from deepsearch.config import AppSettings
from deepsearch.main import create_app
from deepsearch.plan_store import PlanStore
from deepsearch.providers import build_registry
from deepsearch.service import DeepSearchService
from tests.fakes import FakeProviderClient, FakeTavilyClient

FIXED_NOW = 1700000000.25


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    settings = AppSettings(
        openai_api_key="test-openai-key",
        tavily_api_key=None,
        default_orchestrator_model="gpt-4o-mini",
        default_worker_model="gpt-4o-mini",
        step_timeout_s=5.0,
        database_path=str(tmp_path / "test.db"),
        host="127.0.0.1",
        port=8000,
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@pytest.fixture
def service_factory(tmp_path: Path):
    def _factory(
        *,
        fake: FakeProviderClient | None = None,
        store: PlanStore | None = None,
        bus=None,
        clock=None,
        **settings_overrides,
    ):
        settings = make_settings(tmp_path, **settings_overrides)
        fake = fake or FakeProviderClient()
        service = DeepSearchService(
            settings,
            build_registry(settings),
            store or PlanStore(),
            fake,
            fake,
            None,
            bus,
            clock=clock or (lambda: FIXED_NOW),
        )
        return service, fake

    return _factory


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(
        *,
        fake_provider: FakeProviderClient | None = None,
        fake_tavily: FakeTavilyClient | None = None,
        **settings_overrides,
    ):
        settings = make_settings(tmp_path, **settings_overrides)
        provider_client = fake_provider or FakeProviderClient()
        tavily_client = fake_tavily or FakeTavilyClient(api_key=settings.tavily_api_key)
        app = create_app(
            settings,
            provider_client=provider_client,
            tavily_client=tavily_client,
        )
        return app, settings, provider_client, tavily_client

    return _factory


@pytest.fixture
async def client(app_factory):
    app, settings, provider_client, tavily_client = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.settings = settings  # type: ignore[attr-defined]
            http_client.fake_provider = provider_client  # type: ignore[attr-defined]
            http_client.fake_tavily = tavily_client  # type: ignore[attr-defined]
            yield http_client
