from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from datetime import timedelta, timezone
from pathlib import Path

CONFIG_PATH = Path(__file__).resolve().parent.parent / "config.json"

DEFAULTS = {
    "llm_provider": "gemini",
    "llm_model": "",
    "db_path": "cuoti.db",
    "ollama_url": "http://localhost:11434",
    "analysis_chunk_size": 3,
    "analysis_chunk_delay_seconds": 3.0,
    "analysis_timeout_seconds": 60.0,
    "analysis_max_retries": 4,
    "rate_limit_backoff_seconds": 10.0,
    "transient_retry_delay_seconds": 3.0,
    "default_question_types": ["PINYIN", "DICTATION"],
    "utc_offset_hours": 8,
    "exam_title": "语文专项综合练习",
}

# provider -> environment variables checked for its key, in order
API_KEY_ENV = {
    "gemini": ("GEMINI_API_KEY",),
    "deepseek": ("DEEPSEEK_API_KEY",),
    "qwen": ("QWEN_API_KEY", "DASHSCOPE_API_KEY"),
    "openai": ("OPENAI_API_KEY",),
    "anthropic": ("ANTHROPIC_API_KEY",),
}


@dataclass
class Settings:
    llm_provider: str = DEFAULTS["llm_provider"]
    llm_model: str = DEFAULTS["llm_model"]
    db_path: str = DEFAULTS["db_path"]
    ollama_url: str = DEFAULTS["ollama_url"]
    analysis_chunk_size: int = DEFAULTS["analysis_chunk_size"]
    analysis_chunk_delay_seconds: float = DEFAULTS["analysis_chunk_delay_seconds"]
    analysis_timeout_seconds: float = DEFAULTS["analysis_timeout_seconds"]
    analysis_max_retries: int = DEFAULTS["analysis_max_retries"]
    rate_limit_backoff_seconds: float = DEFAULTS["rate_limit_backoff_seconds"]
    transient_retry_delay_seconds: float = DEFAULTS["transient_retry_delay_seconds"]
    default_question_types: list[str] = field(
        default_factory=lambda: list(DEFAULTS["default_question_types"])
    )
    utc_offset_hours: int = DEFAULTS["utc_offset_hours"]
    exam_title: str = DEFAULTS["exam_title"]
    # Secrets: filled from the environment by load_settings, never persisted.
    api_keys: dict[str, str] = field(default_factory=dict, repr=False)

    @property
    def project_root(self) -> Path:
        return Path(__file__).resolve().parent.parent

    @property
    def db_full_path(self) -> Path:
        return self.project_root / self.db_path

    @property
    def tz(self) -> timezone:
        return timezone(timedelta(hours=self.utc_offset_hours))

    def api_key(self, provider: str | None = None) -> str:
        return self.api_keys.get(provider or self.llm_provider, "")

    def to_dict(self) -> dict:
        return {
            "llm_provider": self.llm_provider,
            "llm_model": self.llm_model,
            "db_path": self.db_path,
            "ollama_url": self.ollama_url,
            "analysis_chunk_size": self.analysis_chunk_size,
            "analysis_chunk_delay_seconds": self.analysis_chunk_delay_seconds,
            "analysis_timeout_seconds": self.analysis_timeout_seconds,
            "analysis_max_retries": self.analysis_max_retries,
            "rate_limit_backoff_seconds": self.rate_limit_backoff_seconds,
            "transient_retry_delay_seconds": self.transient_retry_delay_seconds,
            "default_question_types": list(self.default_question_types),
            "utc_offset_hours": self.utc_offset_hours,
            "exam_title": self.exam_title,
        }


def keys_from_env(environ=None) -> dict[str, str]:
    env = os.environ if environ is None else environ
    fallback = env.get("API_KEY", "")
    keys = {}
    for provider, names in API_KEY_ENV.items():
        value = next((env[n] for n in names if env.get(n)), fallback)
        if value:
            keys[provider] = value
    return keys


def load_settings() -> Settings:
    known = set(DEFAULTS)
    if CONFIG_PATH.exists():
        raw = json.loads(CONFIG_PATH.read_text(encoding="utf-8"))
        filtered = {k: v for k, v in raw.items() if k in known}
        settings = Settings(**filtered)
    else:
        settings = Settings()
    settings.api_keys = keys_from_env()
    return settings


def save_settings(settings: Settings) -> None:
    CONFIG_PATH.write_text(
        json.dumps(settings.to_dict(), indent=4, ensure_ascii=False) + "\n",
        encoding="utf-8",
    )
