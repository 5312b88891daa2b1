"""Application settings."""

from functools import lru_cache
import os
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[3]


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "task-engine"
    storage_backend: Literal["postgres", "memory"] = "postgres"
    database_url: str = ""
    llm_provider: Literal["openai", "echo"] = "openai"
    llm_model: str = "gpt-4o-mini"
    llm_base_url: str = "https://api.openai.com/v1"
    openai_api_key: str = ""
    llm_trace: bool = False
    planner_timeout_s: float = Field(default=30.0, ge=0.5)
    executor_timeout_s: float = Field(default=120.0, ge=0.5)
    reviser_timeout_s: float = Field(default=30.0, ge=0.5)
    phase_max_tokens: int = Field(default=2000, ge=1)
    revision_max_tokens: int = Field(default=1000, ge=1)
    max_retries: int = Field(default=3, ge=0, le=10)
    context_window: int = Field(default=3, ge=0)
    list_page_size: int = Field(default=50, ge=1, le=500)

    model_config = SettingsConfigDict(
        env_prefix="TASK_ENGINE_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )

    def resolved_database_url(self) -> str:
        return self.database_url or os.getenv("ORCHESTRATOR_DATABASE_URL", "")

    def resolved_openai_api_key(self) -> str:
        return self.openai_api_key or os.getenv("OPENAI_API_KEY", "")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
