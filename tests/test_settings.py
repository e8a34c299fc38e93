import json

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from deepsearch.config import AppSettings, load_settings, save_settings


@pytest.mark.asyncio
async def test_get_settings_masks_api_keys(app_factory):
    app, _, _, _ = app_factory(tavily_api_key="secret-key")
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            res = await client.get("/settings")
            assert res.status_code == 200
            data = res.json()["settings"]
            assert data["tavily_api_key"] == "********"
            assert data["openai_api_key"] == "********"
            assert data["anthropic_api_key"] is None
            assert data["default_worker_model"] == "gpt-4o-mini"


@pytest.mark.asyncio
async def test_startup_records_masked_config(app_factory):
    app, _, _, _ = app_factory()
    async with LifespanManager(app):
        row = await app.state.db.fetchone("SELECT config_json FROM configs ORDER BY id DESC LIMIT 1")
        saved = json.loads(row["config_json"])
        assert saved["openai_api_key"] == "********"


def test_config_precedence_configjson_wins_by_default(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"default_worker_model": "gpt-4o"}))
    monkeypatch.setenv("WORKER_MODEL", "deepseek-chat")
    monkeypatch.delenv("DEEPSEARCH_ENV_OVERRIDES_CONFIG", raising=False)
    settings = load_settings(config_path=config_path)
    assert settings.default_worker_model == "gpt-4o"


def test_env_override_when_enabled(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"default_worker_model": "gpt-4o"}))
    monkeypatch.setenv("WORKER_MODEL", "deepseek-chat")
    monkeypatch.setenv("DEEPSEARCH_ENV_OVERRIDES_CONFIG", "1")
    settings = load_settings(config_path=config_path)
    assert settings.default_worker_model == "deepseek-chat"


def test_blank_secret_in_config_falls_back_to_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"groq_api_key": ""}))
    monkeypatch.setenv("GROQ_API_KEY", "from-env")
    monkeypatch.setenv("STEP_TIMEOUT_S", "30")
    monkeypatch.delenv("DEEPSEARCH_ENV_OVERRIDES_CONFIG", raising=False)
    settings = load_settings(config_path=config_path)
    assert settings.groq_api_key == "from-env"
    assert settings.step_timeout_s == 30.0


def test_save_settings_round_trips(tmp_path):
    config_path = tmp_path / "config.json"
    save_settings(AppSettings(step_timeout_s=45.0, archive_plans=False), config_path=config_path)
    loaded = load_settings(config_path=config_path)
    assert loaded.step_timeout_s == 45.0
    assert loaded.archive_plans is False
