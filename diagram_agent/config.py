"""
Application configuration using Pydantic Settings.
"""
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    database_path: str = "/data/diagram_agent.db"

    claude_code_oauth_token: Optional[str] = None
    model_name: Optional[str] = None
    agent_max_turns: int = 4
    tool_timeout_seconds: int = 120

    # Run orchestration timings
    stop_poll_interval_ms: int = 700
    assistant_flush_interval_ms: int = 120

    # Set to skip scheduling the driver after enqueue (tests, manual replay)
    disable_run_autorun: bool = False
    active_run_cache_size: int = 256

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )


# Global settings instance
settings = Settings()
