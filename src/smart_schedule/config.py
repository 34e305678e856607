from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes"}


@dataclass(frozen=True)
class Settings:
    database_url: str = ""
    llm_provider: str = "mock"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    openai_base_url: str = "https://api.openai.com/v1"
    llm_timeout_s: float = 30.0
    llm_temperature: float = 0.7
    llm_max_tokens: int = 2000
    conversion_min_confidence: float = 0.7
    notification_poll_interval_s: float = 60.0
    stale_claim_timeout_minutes: int = 10
    preferences_path: str = "data/preferences.json"
    run_workers: bool = True
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL", "").strip(),
            llm_provider=os.getenv("LLM_PROVIDER", "mock").strip().lower(),
            openai_api_key=os.getenv("OPENAI_API_KEY", "").strip(),
            openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini").strip(),
            openai_base_url=os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1").strip(),
            llm_timeout_s=float(os.getenv("LLM_TIMEOUT_S", "30")),
            llm_temperature=float(os.getenv("LLM_TEMPERATURE", "0.7")),
            llm_max_tokens=int(os.getenv("LLM_MAX_TOKENS", "2000")),
            conversion_min_confidence=float(os.getenv("CONVERSION_MIN_CONFIDENCE", "0.7")),
            notification_poll_interval_s=float(os.getenv("NOTIFICATION_POLL_INTERVAL_S", "60")),
            stale_claim_timeout_minutes=int(os.getenv("STALE_CLAIM_TIMEOUT_MINUTES", "10")),
            preferences_path=os.getenv("PREFERENCES_PATH", "data/preferences.json"),
            run_workers=_env_bool("RUN_WORKERS", "true"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )
