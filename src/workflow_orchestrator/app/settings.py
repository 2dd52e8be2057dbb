"""Application settings."""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .orchestrator import OrchestratorConfig

PROJECT_ROOT = Path(__file__).resolve().parents[3]


class WorkerConfig(BaseModel):
    """One worker persona in the static roster."""

    id: str
    name: str = ""
    role: str = "general"
    # Extra system instructions appended to the worker persona prompt.
    instructions: str = ""


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "workflow-orchestrator"
    max_concurrent_tasks: int = Field(default=3, ge=1)
    workflow_timeout_s: float = Field(default=300.0, gt=0.0)
    idle_poll_interval_s: float = Field(default=1.0, gt=0.0)
    enable_quality_gate: bool = True
    max_plan_tasks: int = Field(default=8, ge=1)
    database_url: str = ""
    llm_provider: str = "openai"
    llm_model: str = "gpt-4o-mini"
    llm_base_url: str = "https://api.openai.com/v1"
    llm_timeout_s: float = Field(default=30.0, ge=0.5)
    llm_max_retries: int = Field(default=1, ge=0)
    llm_backoff_s: float = Field(default=0.2, ge=0.0)
    openai_api_key: str = ""
    # JSON list in the environment, e.g.
    # WORKFLOW_ORCHESTRATOR_WORKERS='[{"id": "w1", "role": "developer"}]'
    workers: list[WorkerConfig] = Field(default_factory=list)
    event_history_size: int = Field(default=200, ge=1)

    model_config = SettingsConfigDict(
        env_prefix="WORKFLOW_ORCHESTRATOR_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )

    def resolved_database_url(self) -> str:
        return self.database_url or os.getenv("ORCHESTRATOR_DATABASE_URL", "")

    def resolved_openai_api_key(self) -> str:
        return self.openai_api_key or os.getenv("OPENAI_API_KEY", "")

    def to_orchestrator_config(self) -> OrchestratorConfig:
        return OrchestratorConfig(
            max_concurrent_tasks=self.max_concurrent_tasks,
            workflow_timeout_s=self.workflow_timeout_s,
            idle_poll_interval_s=self.idle_poll_interval_s,
            enable_quality_gate=self.enable_quality_gate,
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
