import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .config import AppSettings
from .prompts import DEFAULT_SYSTEM_PROMPT

logger = logging.getLogger("uvicorn.error")

# vendor -> (settings attribute holding the key, env var name, OpenAI-compatible base URL)
VENDORS: Dict[str, tuple] = {
    "openai": ("openai_api_key", "OPENAI_API_KEY", "https://api.openai.com/v1"),
    "anthropic": ("anthropic_api_key", "ANTHROPIC_API_KEY", "https://api.anthropic.com/v1"),
    "groq": ("groq_api_key", "GROQ_API_KEY", "https://api.groq.com/openai/v1"),
    "deepseek": ("deepseek_api_key", "DEEPSEEK_API_KEY", "https://api.deepseek.com/v1"),
    "cerebras": ("cerebras_api_key", "CEREBRAS_API_KEY", "https://api.cerebras.ai/v1"),
    "google": (
        "google_api_key",
        "GOOGLE_GENERATIVE_AI_API_KEY",
        "https://generativelanguage.googleapis.com/v1beta/openai",
    ),
}

# (id, display name, vendor, vendor model id)
MODEL_CATALOG = [
    ("gpt-4o-mini", "GPT-4o Mini (OpenAI)", "openai", "gpt-4o-mini"),
    ("gpt-4o", "GPT-4o (OpenAI)", "openai", "gpt-4o"),
    ("gpt-4.5-preview", "GPT-4.5 Preview (OpenAI)", "openai", "gpt-4.5-preview"),
    ("claude-3-5-sonnet", "Claude 3.5 Sonnet (Anthropic)", "anthropic", "claude-3-5-sonnet-latest"),
    ("claude-3-7-sonnet", "Claude 3.7 Sonnet (Anthropic)", "anthropic", "claude-3-7-sonnet-latest"),
    ("groq-llama-3-8b-8192", "Llama 3.8B (Groq)", "groq", "llama3-8b-8192"),
    ("groq-qwen-2.5-32b", "Qwen 2.5 32B (Groq)", "groq", "qwen-2.5-32b"),
    ("groq-gemma-2-9b-it", "Gemma 2 9B (Groq)", "groq", "gemma2-9b-it"),
    ("deepseek-chat", "DeepSeek Chat (DeepSeek)", "deepseek", "deepseek-chat"),
    ("cerebras-llama-3-3-70b", "Llama 3.3 70B (Cerebras)", "cerebras", "llama-3.3-70b"),
    ("gemini-flash", "Gemini 2.0 Flash (Google)", "google", "gemini-2.0-flash"),
]

DEEPSEEK_SYSTEM_PROMPT = (
    "You are a helpful AI assistant powered by DeepSeek. You can search the web for current "
    "information when a question needs it."
)


@dataclass
class ModelProvider:
    id: str
    name: str
    vendor: str
    model: str
    base_url: str
    api_key: Optional[str] = field(default=None, repr=False)
    system_prompt: str = DEFAULT_SYSTEM_PROMPT

    @property
    def available(self) -> bool:
        return bool(self.api_key)

    def describe(self) -> Dict[str, object]:
        return {"id": self.id, "name": self.name, "available": self.available}


class ProviderRegistry:
    """Catalogue of chat models keyed by the ids the UI sends."""

    def __init__(self, providers: List[ModelProvider]):
        self._providers: Dict[str, ModelProvider] = {p.id: p for p in providers}

    def get(self, provider_id: Optional[str]) -> Optional[ModelProvider]:
        if not provider_id:
            return None
        return self._providers.get(provider_id)

    def all(self) -> List[ModelProvider]:
        return list(self._providers.values())

    def available(self) -> List[ModelProvider]:
        return [p for p in self._providers.values() if p.available]


def build_registry(settings: AppSettings) -> ProviderRegistry:
    providers: List[ModelProvider] = []
    warned: set = set()
    for provider_id, name, vendor, model in MODEL_CATALOG:
        key_attr, env_name, base_url = VENDORS[vendor]
        override = settings.provider_overrides.get(provider_id)
        if override is not None and not override.enabled:
            continue
        api_key = getattr(settings, key_attr, None)
        if not api_key and vendor not in warned:
            logger.warning("%s is not set; %s models are unavailable", env_name, vendor)
            warned.add(vendor)
        providers.append(
            ModelProvider(
                id=provider_id,
                name=name,
                vendor=vendor,
                model=(override.model if override and override.model else model),
                base_url=(override.base_url if override and override.base_url else base_url),
                api_key=api_key,
                system_prompt=DEEPSEEK_SYSTEM_PROMPT if vendor == "deepseek" else DEFAULT_SYSTEM_PROMPT,
            )
        )
    return ProviderRegistry(providers)
