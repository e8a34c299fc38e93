import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "DEEPSEARCH_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}
SECRET_FIELDS = (
    "openai_api_key",
    "anthropic_api_key",
    "groq_api_key",
    "deepseek_api_key",
    "cerebras_api_key",
    "google_api_key",
    "tavily_api_key",
)

logger = logging.getLogger("uvicorn.error")


class ProviderOverride(BaseModel):
    base_url: Optional[str] = None
    model: Optional[str] = None
    enabled: bool = True

    model_config = {"protected_namespaces": ()}


class AppSettings(BaseModel):
    openai_api_key: Optional[str] = None
    anthropic_api_key: Optional[str] = None
    groq_api_key: Optional[str] = None
    deepseek_api_key: Optional[str] = None
    cerebras_api_key: Optional[str] = None
    google_api_key: Optional[str] = None
    tavily_api_key: Optional[str] = None

    default_orchestrator_model: str = "gpt-4o-mini"
    default_worker_model: str = "gpt-4o-mini"
    provider_overrides: Dict[str, ProviderOverride] = Field(default_factory=dict)

    step_timeout_s: float = 120.0
    request_timeout_s: float = 60.0
    max_output_tokens: int = 5000
    max_tool_steps: int = 10
    web_search_max_results: int = 5

    database_path: str = "deepsearch.db"
    archive_plans: bool = True
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "info"

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        for key in SECRET_FIELDS:
            if data.get(key):
                data[key] = "********"
        return data

    model_config = {"protected_namespaces": ()}


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "openai_api_key": os.getenv("OPENAI_API_KEY"),
        "anthropic_api_key": os.getenv("ANTHROPIC_API_KEY"),
        "groq_api_key": os.getenv("GROQ_API_KEY"),
        "deepseek_api_key": os.getenv("DEEPSEEK_API_KEY"),
        "cerebras_api_key": os.getenv("CEREBRAS_API_KEY"),
        "google_api_key": os.getenv("GOOGLE_GENERATIVE_AI_API_KEY"),
        "tavily_api_key": os.getenv("TAVILY_API_KEY"),
        "default_orchestrator_model": os.getenv("ORCHESTRATOR_MODEL"),
        "default_worker_model": os.getenv("WORKER_MODEL"),
        "step_timeout_s": os.getenv("STEP_TIMEOUT_S"),
        "request_timeout_s": os.getenv("REQUEST_TIMEOUT_S"),
        "max_output_tokens": os.getenv("MAX_OUTPUT_TOKENS"),
        "max_tool_steps": os.getenv("MAX_TOOL_STEPS"),
        "database_path": os.getenv("DATABASE_PATH"),
        "archive_plans": os.getenv("ARCHIVE_PLANS"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
        "log_level": os.getenv("LOG_LEVEL"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    for key in ("step_timeout_s", "request_timeout_s"):
        if key in cleaned:
            cleaned[key] = float(cleaned[key])
    for key in ("max_output_tokens", "max_tool_steps", "port"):
        if key in cleaned:
            cleaned[key] = int(cleaned[key])
    if "archive_plans" in cleaned:
        cleaned["archive_plans"] = str(cleaned["archive_plans"]).lower() in ENV_OVERRIDE_TRUE
    return cleaned


def _env_overrides_config() -> bool:
    return str(os.getenv(ENV_OVERRIDE_KEY, "")).strip().lower() in ENV_OVERRIDE_TRUE


def load_settings(config_path: Optional[Path] = None) -> AppSettings:
    env_data = _load_from_env()
    path = config_path or CONFIG_PATH
    file_data: Dict[str, Any] = {}
    if path.exists():
        try:
            file_data = json.loads(path.read_text())
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable config file %s: %s", path, exc)
            file_data = {}
    # Config wins by default; allow env overrides only when explicitly enabled.
    if _env_overrides_config():
        merged = {**file_data, **env_data}
    else:
        merged = {**env_data, **file_data}
    # Secrets left blank in config.json still come from the environment.
    for key in SECRET_FIELDS:
        if not merged.get(key) and env_data.get(key):
            merged[key] = env_data[key]
    return AppSettings(**merged)


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))
