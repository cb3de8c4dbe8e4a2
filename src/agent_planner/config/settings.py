"""Application settings."""

from functools import lru_cache
import os
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[3]

CyclePolicyName = Literal["report", "reject", "break_lowest_confidence", "flag_for_review"]


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "agent-planner"
    app_env: str = "dev"
    planner_mode: str = "deterministic"
    executor_mode: str = "deterministic"
    database_url: str = ""

    max_reasoning_steps: int = Field(default=10, ge=1, le=10)
    session_budget_s: float = Field(default=30.0, gt=0.0)
    max_task_pool: int = Field(default=200, ge=1)
    tool_timeout_s: float = Field(default=10.0, ge=0.01)
    tool_max_retries: int = Field(default=1, ge=0)
    tool_retry_backoff_s: float = Field(default=0.0, ge=0.0)

    search_default_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    search_default_limit: int = Field(default=20, ge=1, le=100)
    relaxation_step: float = Field(default=0.2, gt=0.0, le=1.0)
    relaxation_floor: float = Field(default=0.4, ge=0.0, le=1.0)
    relaxation_max_retries: int = Field(default=2, ge=0)

    embedding_provider: str = "hash"
    embedding_model: str = "text-embedding-3-small"
    embedding_dimension: int = Field(default=1536, ge=8)
    embedding_timeout_s: float = Field(default=10.0, ge=0.5)

    cluster_default_threshold: float = Field(default=0.75, ge=0.0, le=1.0)
    document_chunk_chars: int = Field(default=4000, ge=200)

    gap_time_gap_days: int = Field(default=7, ge=1)
    gap_max_results: int = Field(default=3, ge=1)
    gap_max_workers: int = Field(default=3, ge=1)
    bridging_search_threshold: float = Field(default=0.6, ge=0.0, le=1.0)
    bridging_search_limit: int = Field(default=5, ge=1, le=20)
    bridging_timeout_s: float = Field(default=8.0, ge=0.1)
    bridging_max_attempts: int = Field(default=2, ge=1)
    bridging_degraded_confidence_factor: float = Field(default=0.6, gt=0.0, le=1.0)
    gap_analysis_max_entries: int = Field(default=500, ge=1)

    cycle_policy: CyclePolicyName = "report"
    duplicate_similarity_threshold: float = Field(default=0.9, ge=0.0, le=1.0)
    coverage_alert_threshold: int = Field(default=70, ge=0, le=100)

    trace_retention_days: int = Field(default=7, ge=1)
    trace_cleanup_interval_s: float = Field(default=3600.0, ge=0.0)

    llm_provider: str = "openai"
    llm_model: str = "gpt-4o-mini"
    llm_base_url: str = "https://api.openai.com/v1"
    llm_timeout_s: float = Field(default=8.0, ge=0.5)
    llm_max_retries: int = Field(default=1, ge=0)
    llm_backoff_s: float = Field(default=0.2, ge=0.0)
    llm_trace: bool = False
    openai_api_key: str = ""

    model_config = SettingsConfigDict(
        env_prefix="AGENT_PLANNER_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )

    def resolved_database_url(self) -> str:
        return self.database_url or os.getenv("DATABASE_URL", "")

    def resolved_openai_api_key(self) -> str:
        return self.openai_api_key or os.getenv("OPENAI_API_KEY", "")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
