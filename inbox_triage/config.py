"""
Application configuration.

All settings are loaded from environment variables (or a local .env file).
Model timeouts and character budgets are tunable here rather than baked
into the pipeline.

Usage:
    from inbox_triage.config import settings
    print(settings.ollama_base_url)
"""

from pathlib import Path
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings

PROJECT_ROOT = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # --- App ---
    app_name: str = Field(default="Inbox Triage")
    app_env: Literal["development", "staging", "production"] = Field(default="development")
    log_level: str = Field(default="info")

    # --- Gmail REST API ---
    gmail_base_url: str = Field(default="https://gmail.googleapis.com/gmail/v1")
    gmail_timeout_seconds: float = Field(default=30.0)

    # --- Generation engine ---
    generation_provider: Literal["ollama", "anthropic"] = Field(default="ollama")
    ollama_base_url: str = Field(default="http://localhost:11434")
    ollama_model: str = Field(default="llama3.1:8b")
    anthropic_api_key: Optional[str] = Field(default=None, description="Only needed for the anthropic provider")
    anthropic_model: str = Field(default="claude-sonnet-4-20250514")
    anthropic_max_tokens: int = Field(default=600)
    generation_temperature: float = Field(default=0.2)
    health_timeout_seconds: float = Field(default=5.0)

    # --- Triage / summary tuning ---
    triage_timeout_seconds: float = Field(default=90.0)
    summary_timeout_seconds: float = Field(default=45.0)
    triage_max_chars: int = Field(default=2000)
    summary_max_chars: int = Field(default=4000)
    summary_threshold_chars: int = Field(
        default=1200,
        description="Messages whose clean body is longer than this also get a summary",
    )
    prompt_config_path: str = Field(default=str(PROJECT_ROOT / "config" / "prompts.yaml"))

    # --- Sync ---
    sync_max_results: int = Field(default=10)
    sync_max_workers: int = Field(default=4)

    # --- Document store ---
    store_backend: Literal["memory", "sqlite"] = Field(default="sqlite")
    store_path: str = Field(default="data/inbox_triage.db")
    store_delete_batch_size: int = Field(
        default=400,
        description="Documents deleted per batch; kept below the backend's hard batch limit",
    )

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }


settings = Settings()
