from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

DEFAULT_PROVIDERS: Dict[str, Dict[str, Any]] = {
    "Gemini": {
        "provider_type": "gemini",
        "base_url": "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent",
    },
    "OpenAI": {
        "provider_type": "openai_compatible",
        "base_url": "https://api.openai.com/v1/chat/completions",
    },
    "Groq": {
        "provider_type": "openai_compatible",
        "base_url": "https://api.groq.com/openai/v1/chat/completions",
    },
    "Mistral": {
        "provider_type": "openai_compatible",
        "base_url": "https://api.mistral.ai/v1/chat/completions",
    },
    "OpenRouter": {
        "provider_type": "openai_compatible",
        "base_url": "https://openrouter.ai/api/v1/chat/completions",
    },
    "Anthropic": {
        "provider_type": "anthropic",
        "base_url": "https://api.anthropic.com/v1/messages",
    },
    "Custom": {
        "provider_type": "openai_compatible",
        "base_url": None,
    },
}


class ProviderConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    provider: str
    provider_type: Literal["gemini", "openai_compatible", "anthropic"] = "openai_compatible"
    model: str
    api_key: str = ""
    base_url: Optional[str] = None
    headers: Optional[Dict[str, str]] = None
    max_tokens: int = 2048


class AppConfig(BaseModel):
    gateway: ProviderConfig
    external_api_enabled: bool = True
    completion_timeout_seconds: float = Field(default=120.0, gt=0)
    external_call_timeout_seconds: float = Field(default=30.0, gt=0)
    store_path: str = "assistants.json"
    files_dir: str = "userdata"


def resolve_provider_config(cfg: ProviderConfig) -> ProviderConfig:
    reg = DEFAULT_PROVIDERS.get(cfg.provider)
    updates: Dict[str, Any] = {}
    if reg:
        updates["provider_type"] = reg.get("provider_type", cfg.provider_type)
        updates["base_url"] = cfg.base_url or reg.get("base_url")
    return cfg.model_copy(update=updates)


def resolve_app_config(app_cfg: AppConfig) -> AppConfig:
    return app_cfg.model_copy(update={"gateway": resolve_provider_config(app_cfg.gateway)})


def load_config(path: Path) -> Optional[AppConfig]:
    if not path.exists():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8-sig"))
        return resolve_app_config(AppConfig(**data))
    except Exception as exc:
        logger.warning(f"Failed to load {path.name}: {exc}")
        return None


def save_config(path: Path, app_cfg: AppConfig) -> AppConfig:
    resolved = resolve_app_config(app_cfg)
    path.write_text(resolved.model_dump_json(indent=2), encoding="utf-8")
    return resolved
